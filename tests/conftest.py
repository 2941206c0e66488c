"""
Shared fixtures: a scripted reasoning engine and fast collaborators.

Tenet #3: Explicit Over Clever - every external system is an injected fake
"""

from typing import Dict, Iterator, List, Optional, Sequence
import itertools

import pytest

from triage.assessment import AssessmentOrchestrator, RecordSynthesizer
from triage.config import RetryPolicy
from triage.conversation import ConversationDriver, ReasoningEngine, RunState
from triage.errors import EngineConflictError, EngineUnavailableError
from triage.ledger import LedgerClient, MemoryLedgerContract
from triage.records import LocalRecordStore, Observation, RiskAssessment, RiskLevel


CHEST_PAIN_MESSAGE = "I'm a 45 year old male with sharp chest pain radiating to my arm"

FOLLOW_UP_REPLY = (
    "I'm sorry you're experiencing this. How long have you had the pain, "
    "and are you short of breath or sweating?\n\n[[STAGE: gathering]]"
)

COMPLETE_REPLY = """Thank you. Chest pain that spreads to the arm can be a sign of a heart problem.
Please call emergency services now and do not drive yourself.

```triage-status
{"status": "COMPLETE",
 "risk": {"level": "high", "probability": 0.8, "condition": "Possible acute coronary syndrome"},
 "summary": "45 year old male with sharp chest pain radiating to the left arm for 30 minutes.",
 "recommendation": "Call emergency services immediately.",
 "symptoms": ["chest pain", "arm pain", "sweating"]}
```"""


class ScriptedEngine(ReasoningEngine):
    """
    In-memory reasoning engine.

    Each started run consumes the next scripted reply; the run walks
    through `run_statuses` on successive polls.
    """

    def __init__(
        self,
        replies: Sequence[str] = (),
        run_statuses: Sequence[str] = ("in_progress", "completed"),
        last_error: Optional[dict] = None,
        create_failures: int = 0,
        hang: bool = False,
        missing_message: bool = False,
    ):
        self.replies = list(replies)
        self.run_statuses = list(run_statuses)
        self.last_error = last_error
        self.create_failures = create_failures
        self.hang = hang
        self.missing_message = missing_message

        self.threads: List[str] = []
        self.messages: Dict[str, List[str]] = {}
        self.conflict_threads: set = set()
        self.calls: List[str] = []
        self._runs: Dict[str, Iterator[str]] = {}
        self._run_reply: Dict[str, str] = {}
        self._latest: Dict[str, str] = {}

    async def create_thread(self) -> str:
        self.calls.append("create_thread")
        if self.create_failures > 0:
            self.create_failures -= 1
            raise EngineUnavailableError("engine down", operation="create_thread")
        thread_id = f"thread-{len(self.threads) + 1}"
        self.threads.append(thread_id)
        return thread_id

    async def post_message(self, thread_id: str, text: str) -> None:
        self.calls.append("post_message")
        if thread_id in self.conflict_threads:
            raise EngineConflictError(
                f"Can't add messages to {thread_id} while a run is active.", operation="post_message",
            )
        self.messages.setdefault(thread_id, []).append(text)

    async def start_run(self, thread_id: str) -> RunState:
        self.calls.append("start_run")
        run_id = f"run-{len(self._runs) + 1}"
        if self.hang:
            self._runs[run_id] = itertools.repeat("in_progress")
        else:
            self._runs[run_id] = iter(self.run_statuses)
        self._run_reply[run_id] = self.replies.pop(0) if self.replies else FOLLOW_UP_REPLY
        return RunState(run_id=run_id, status="queued")

    async def get_run(self, thread_id: str, run_id: str) -> RunState:
        self.calls.append("get_run")
        status = next(self._runs[run_id], self.run_statuses[-1])
        if status == "completed" and not self.missing_message:
            self._latest[thread_id] = self._run_reply[run_id]
        last_error = self.last_error if status in ("failed", "incomplete") else None
        return RunState(run_id=run_id, status=status, last_error=last_error)

    async def latest_assistant_message(self, thread_id: str) -> Optional[str]:
        self.calls.append("latest_assistant_message")
        return self._latest.get(thread_id)


@pytest.fixture
def fast_retry():
    """Retry policy without delays."""
    return RetryPolicy(max_attempts=3, base_delay_s=0.0, max_delay_s=0.0, jitter=False)


@pytest.fixture
def engine_factory():
    return ScriptedEngine


@pytest.fixture
def make_driver(fast_retry):
    def _make(engine, max_wait_s: float = 1.0):
        return ConversationDriver(
            engine,
            retry_policy=fast_retry,
            call_timeout_s=1.0,
            poll_interval_s=0.001,
            max_wait_s=max_wait_s,
        )
    return _make


@pytest.fixture
def local_store(fast_retry):
    """Local record store on a private in-memory database."""
    return LocalRecordStore("sqlite://", retry_policy=fast_retry)


@pytest.fixture
def memory_contract():
    return MemoryLedgerContract()


@pytest.fixture
def ledger_client(memory_contract, fast_retry):
    return LedgerClient(memory_contract, retry_policy=fast_retry, timeout_s=1.0)


@pytest.fixture
def make_orchestrator(make_driver, local_store, ledger_client):
    def _make(engine, store=None, ledger=ledger_client):
        return AssessmentOrchestrator(
            driver=make_driver(engine),
            synthesizer=RecordSynthesizer(),
            store=store or local_store,
            ledger=ledger,
        )
    return _make


@pytest.fixture
def observation():
    return Observation(
        id="obs-1",
        subject_id="patient-abc",
        value="Sharp chest pain radiating to the left arm",
        created_at="2026-01-01T10:00:00.000Z",
    )


@pytest.fixture
def risk_assessment(observation):
    return RiskAssessment(
        id="risk-1",
        subject_id="patient-abc",
        value="Possible acute coronary syndrome",
        created_at="2026-01-01T10:00:00.000Z",
        risk_level=RiskLevel.HIGH,
        probability=0.8,
        mitigation="Call emergency services immediately.",
        basis_id=observation.id,
    )


@pytest.fixture
def chest_pain_message():
    return CHEST_PAIN_MESSAGE


@pytest.fixture
def follow_up_reply():
    return FOLLOW_UP_REPLY


@pytest.fixture
def complete_reply():
    return COMPLETE_REPLY
