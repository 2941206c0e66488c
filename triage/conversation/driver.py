"""
Conversation Driver - One user utterance in, one assistant reply out

Stateless between calls: the thread id is passed in and returned, never
cached. The only recovery path that changes the thread id is the fork on
an active-run conflict, attempted at most once per turn.

Tenet #3: Explicit Over Clever - the fork is a named, logged recovery
Tenet #10: Observable Systems - thread creation, fork, run outcome logged
"""

from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar
import asyncio

import structlog

from triage.config import AppConfig, RetryPolicy
from triage.conversation.engine import ReasoningEngine, RunState
from triage.errors import (
    EngineConflictError,
    EngineError,
    EngineTimeoutError,
    EngineUnavailableError,
    SafetyError,
    is_transient,
)
from triage.observability import hash_identifier
from triage.retry import retry_async, with_timeout

logger = structlog.get_logger()

T = TypeVar("T")

_POLICY_RUN_ERRORS = ("invalid_prompt", "content_policy_violation")


def _write_retryable(exc: BaseException) -> bool:
    # A timed-out post may already be on the thread; resending would duplicate it
    return isinstance(exc, EngineUnavailableError)


@dataclass(frozen=True)
class DriverReply:
    """Result of advancing a conversation by one turn."""
    thread_id: str
    text: str
    run_id: str
    forked: bool = False  # True when the turn moved to a new thread


class ConversationDriver:
    """
    Drives one reasoning pass per user turn.

    Example:
        driver = ConversationDriver(engine)
        reply = await driver.advance(None, "patient-abc", "I have a headache")
        reply = await driver.advance(reply.thread_id, "patient-abc", "Since yesterday")
    """

    def __init__(
        self,
        engine: ReasoningEngine,
        retry_policy: Optional[RetryPolicy] = None,
        call_timeout_s: float = 30.0,
        poll_interval_s: float = 1.0,
        max_wait_s: float = 120.0,
    ):
        self.engine = engine
        self.retry_policy = retry_policy or RetryPolicy()
        self.call_timeout_s = call_timeout_s
        self.poll_interval_s = poll_interval_s
        self.max_wait_s = max_wait_s

    @classmethod
    def from_config(cls, engine: ReasoningEngine, config: AppConfig) -> "ConversationDriver":
        return cls(
            engine,
            retry_policy=config.retry,
            call_timeout_s=config.engine.call_timeout_s,
            poll_interval_s=config.engine.poll_interval_s,
            max_wait_s=config.engine.max_wait_s,
        )

    async def _call(
        self,
        operation: str,
        fn: Callable[[], Awaitable[T]],
        retry_if: Callable[[BaseException], bool] = is_transient,
    ) -> T:
        return await retry_async(
            lambda: with_timeout(fn(), self.call_timeout_s, f"engine.{operation}", EngineTimeoutError),
            policy=self.retry_policy,
            operation=f"engine.{operation}",
            retry_if=retry_if,
        )

    async def _create_thread(self) -> str:
        thread_id = await self._call("create_thread", self.engine.create_thread)
        logger.info("thread_created", thread_id=thread_id)
        return thread_id

    async def _post_and_run(self, thread_id: str, user_text: str) -> RunState:
        await self._call(
            "post_message", lambda: self.engine.post_message(thread_id, user_text), retry_if=_write_retryable,
        )
        return await self._call("start_run", lambda: self.engine.start_run(thread_id), retry_if=_write_retryable)

    async def _wait_for_run(self, thread_id: str, run: RunState) -> RunState:
        """Poll until the run is terminal or the maximum wait is exceeded."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.max_wait_s
        state = run
        while not state.is_terminal:
            if state.status == "requires_action":
                raise EngineError(
                    "Run requested tool outputs, which this driver does not provide",
                    operation="run",
                    details={"run_id": state.run_id},
                )
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise EngineTimeoutError(
                    f"Run did not finish within {self.max_wait_s}s",
                    operation="run",
                    details={"run_id": state.run_id, "last_status": state.status},
                )
            await asyncio.sleep(min(self.poll_interval_s, remaining))
            state = await self._call("get_run", lambda: self.engine.get_run(thread_id, state.run_id))
        return state

    async def advance(self, thread_id: Optional[str], subject_id: str, user_text: str) -> DriverReply:
        """
        Post `user_text` and return the assistant's reply verbatim.

        Args:
            thread_id: Existing thread, or None to start one
            subject_id: Subject of the conversation (used for log context)
            user_text: Validated user message

        Returns:
            DriverReply with the thread id subsequent turns must use

        Raises:
            EngineError: Run failed, or no reply could be obtained
            EngineTimeoutError: A call or the run exceeded its time budget
            SafetyError: The engine refused the content
        """
        log = logger.bind(subject=hash_identifier(subject_id))
        forked = False

        if not thread_id:
            thread_id = await self._create_thread()

        try:
            run = await self._post_and_run(thread_id, user_text)
        except EngineConflictError:
            previous_thread_id = thread_id
            thread_id = await self._create_thread()
            forked = True
            log.warning(
                "thread_forked_on_active_run",
                previous_thread_id=previous_thread_id,
                thread_id=thread_id,
            )
            # A second conflict is not recovered
            run = await self._post_and_run(thread_id, user_text)

        final = await self._wait_for_run(thread_id, run)
        if final.status != "completed":
            code = (final.last_error or {}).get("code")
            log.error("run_not_completed", thread_id=thread_id, run_id=final.run_id, status=final.status, code=code)
            if code in _POLICY_RUN_ERRORS:
                raise SafetyError(
                    "Message rejected by the reasoning engine content policy",
                    details={"run_id": final.run_id},
                )
            raise EngineError(
                f"Run ended with status {final.status}",
                operation="run",
                details={"run_id": final.run_id, "status": final.status, "last_error": final.last_error},
            )

        text = await self._call("latest_assistant_message", lambda: self.engine.latest_assistant_message(thread_id))
        if text is None:
            raise EngineError(
                "Run completed without an assistant message",
                operation="latest_assistant_message",
                details={"run_id": final.run_id},
            )

        log.info(
            "turn_advanced",
            thread_id=thread_id,
            run_id=final.run_id,
            forked=forked,
            reply_length=len(text),
        )
        return DriverReply(thread_id=thread_id, text=text, run_id=final.run_id, forked=forked)
