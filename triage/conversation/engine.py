"""
Reasoning Engine - Assistant threads and runs

The driver uses exactly five primitives: create a thread, post a user
message, start a run, poll a run, read the latest assistant message.
Conversation memory lives in the engine, keyed by the opaque thread id.

Tenet #4: Fail Loud, Fail Early - every engine failure is mapped to a
typed error before it leaves this module
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from openai import (
    APIConnectionError,
    APIError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    BadRequestError,
    InternalServerError,
    RateLimitError,
)
import structlog

from triage.config import EngineConfig
from triage.errors import (
    EngineConflictError,
    EngineError,
    EngineTimeoutError,
    EngineUnavailableError,
    SafetyError,
)
from triage.observability import CORRELATION_HEADER, get_correlation_id

logger = structlog.get_logger()

TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled", "expired", "incomplete"})

_CONFLICT_PHRASES = ("while a run", "already has an active run")
_POLICY_CODES = ("content_policy_violation", "content_filter", "invalid_prompt")


@dataclass(frozen=True)
class RunState:
    """Snapshot of one run."""
    run_id: str
    status: str
    last_error: Optional[Dict[str, Any]] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class ReasoningEngine(ABC):
    """Narrow interface to a thread/run based reasoning assistant."""

    @abstractmethod
    async def create_thread(self) -> str:
        """Create an empty thread and return its id."""

    @abstractmethod
    async def post_message(self, thread_id: str, text: str) -> None:
        """
        Append a user message.

        Raises:
            EngineConflictError: A run is active on the thread
        """

    @abstractmethod
    async def start_run(self, thread_id: str) -> RunState:
        """
        Start one reasoning pass over the thread.

        Raises:
            EngineConflictError: A run is already active on the thread
        """

    @abstractmethod
    async def get_run(self, thread_id: str, run_id: str) -> RunState:
        ...

    @abstractmethod
    async def latest_assistant_message(self, thread_id: str) -> Optional[str]:
        """Text of the newest assistant message, or None if there is none."""


def _is_policy_error(error: APIStatusError) -> bool:
    code = getattr(error, "code", None) or ""
    return code in _POLICY_CODES or "content policy" in str(error).lower()


def map_openai_error(error: Exception, operation: str) -> Exception:
    """Translate an OpenAI SDK exception into the pipeline taxonomy."""
    details = {"error": str(error)}
    # APITimeoutError subclasses APIConnectionError; check it first
    if isinstance(error, APITimeoutError):
        return EngineTimeoutError(f"Engine {operation} timed out", operation=operation, details=details)
    if isinstance(error, (APIConnectionError, RateLimitError, InternalServerError)):
        return EngineUnavailableError(f"Engine unavailable during {operation}", operation=operation, details=details)
    if isinstance(error, BadRequestError):
        message = str(error).lower()
        if any(phrase in message for phrase in _CONFLICT_PHRASES):
            return EngineConflictError(f"Active run on thread during {operation}", operation=operation, details=details)
        if _is_policy_error(error):
            return SafetyError("Message rejected by the reasoning engine content policy", details=details)
    if isinstance(error, APIStatusError) and error.status_code >= 500:
        return EngineUnavailableError(f"Engine unavailable during {operation}", operation=operation, details=details)
    return EngineError(f"Engine {operation} failed", operation=operation, details=details)


class OpenAIAssistantsEngine(ReasoningEngine):
    """
    ReasoningEngine on the OpenAI Assistants API.

    SDK-level retries are disabled; retry policy is applied by the driver.
    """

    def __init__(
        self,
        api_key: str,
        assistant_id: str,
        base_url: Optional[str] = None,
        timeout_s: float = 30.0,
        additional_instructions: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        if not api_key and client is None:
            raise ValueError("OPENAI_API_KEY is required for the reasoning engine")
        if not assistant_id:
            raise ValueError("OPENAI_CONVERSATION_ASSISTANT_ID is required for the reasoning engine")

        self.assistant_id = assistant_id
        self.additional_instructions = additional_instructions
        self.client = client or AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout_s,
            max_retries=0,
        )
        logger.info("reasoning_engine_initialized", assistant_id=assistant_id)

    @classmethod
    def from_config(cls, config: EngineConfig, additional_instructions: Optional[str] = None) -> "OpenAIAssistantsEngine":
        return cls(
            api_key=config.api_key,
            assistant_id=config.assistant_id,
            base_url=config.base_url,
            timeout_s=config.call_timeout_s,
            additional_instructions=additional_instructions if config.append_protocol_instructions else None,
        )

    @staticmethod
    def _headers() -> Dict[str, str]:
        correlation_id = get_correlation_id()
        return {CORRELATION_HEADER: correlation_id} if correlation_id else {}

    async def create_thread(self) -> str:
        try:
            thread = await self.client.beta.threads.create(extra_headers=self._headers())
        except APIError as e:
            raise map_openai_error(e, "create_thread") from e
        return thread.id

    async def post_message(self, thread_id: str, text: str) -> None:
        try:
            await self.client.beta.threads.messages.create(
                thread_id=thread_id,
                role="user",
                content=text,
                extra_headers=self._headers(),
            )
        except APIError as e:
            raise map_openai_error(e, "post_message") from e

    async def start_run(self, thread_id: str) -> RunState:
        kwargs: Dict[str, Any] = {"thread_id": thread_id, "assistant_id": self.assistant_id}
        if self.additional_instructions:
            kwargs["additional_instructions"] = self.additional_instructions
        try:
            run = await self.client.beta.threads.runs.create(extra_headers=self._headers(), **kwargs)
        except APIError as e:
            raise map_openai_error(e, "start_run") from e
        return self._state(run)

    async def get_run(self, thread_id: str, run_id: str) -> RunState:
        try:
            run = await self.client.beta.threads.runs.retrieve(
                run_id, thread_id=thread_id, extra_headers=self._headers(),
            )
        except APIError as e:
            raise map_openai_error(e, "get_run") from e
        return self._state(run)

    async def latest_assistant_message(self, thread_id: str) -> Optional[str]:
        try:
            page = await self.client.beta.threads.messages.list(
                thread_id=thread_id, order="desc", limit=10, extra_headers=self._headers(),
            )
        except APIError as e:
            raise map_openai_error(e, "latest_assistant_message") from e

        for message in page.data:
            if message.role != "assistant":
                continue
            parts = [block.text.value for block in message.content if block.type == "text"]
            return "\n".join(parts)
        return None

    @staticmethod
    def _state(run) -> RunState:
        last_error = None
        if getattr(run, "last_error", None) is not None:
            last_error = {"code": run.last_error.code, "message": run.last_error.message}
        return RunState(run_id=run.id, status=run.status, last_error=last_error)
