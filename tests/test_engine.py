"""
Tests for the OpenAI Assistants engine adapter and error mapping
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from triage.conversation import OpenAIAssistantsEngine
from triage.conversation.engine import map_openai_error
from triage.errors import (
    EngineConflictError,
    EngineError,
    EngineTimeoutError,
    EngineUnavailableError,
    SafetyError,
)
from triage.observability import bind_correlation_id, clear_correlation_id

REQUEST = httpx.Request("POST", "https://api.openai.com/v1/threads")


def _response(status: int) -> httpx.Response:
    return httpx.Response(status, request=REQUEST)


class TestMapOpenAIError:

    def test_timeout(self):
        mapped = map_openai_error(openai.APITimeoutError(request=REQUEST), "get_run")

        assert isinstance(mapped, EngineTimeoutError)
        assert mapped.operation == "get_run"

    @pytest.mark.parametrize("error", [
        openai.APIConnectionError(request=REQUEST),
        openai.RateLimitError("slow down", response=_response(429), body=None),
        openai.InternalServerError("boom", response=_response(500), body=None),
        openai.APIStatusError("bad gateway", response=_response(503), body=None),
    ])
    def test_transient_failures_unavailable(self, error):
        mapped = map_openai_error(error, "start_run")

        assert isinstance(mapped, EngineUnavailableError)
        assert mapped.transient is True

    def test_active_run_is_conflict(self):
        error = openai.BadRequestError(
            "Can't add messages to thread_abc while a run run_xyz is active.",
            response=_response(400),
            body=None,
        )

        assert isinstance(map_openai_error(error, "post_message"), EngineConflictError)

    def test_policy_rejection_is_safety_error(self):
        error = openai.BadRequestError(
            "Invalid prompt",
            response=_response(400),
            body={"code": "invalid_prompt", "message": "Invalid prompt"},
        )

        assert isinstance(map_openai_error(error, "post_message"), SafetyError)

    def test_other_client_error_is_plain_engine_error(self):
        error = openai.NotFoundError("No thread found", response=_response(404), body=None)

        mapped = map_openai_error(error, "get_run")

        assert type(mapped) is EngineError
        assert mapped.transient is False


def _client():
    client = MagicMock()
    client.beta.threads.create = AsyncMock(return_value=SimpleNamespace(id="thread_1"))
    client.beta.threads.messages.create = AsyncMock(return_value=None)
    client.beta.threads.messages.list = AsyncMock()
    client.beta.threads.runs.create = AsyncMock(
        return_value=SimpleNamespace(id="run_1", status="queued", last_error=None),
    )
    client.beta.threads.runs.retrieve = AsyncMock()
    return client


def _message(role: str, *texts: str):
    content = [SimpleNamespace(type="text", text=SimpleNamespace(value=t)) for t in texts]
    return SimpleNamespace(role=role, content=content)


class TestOpenAIAssistantsEngine:

    def test_assistant_id_required(self):
        with pytest.raises(ValueError, match="OPENAI_CONVERSATION_ASSISTANT_ID"):
            OpenAIAssistantsEngine(api_key="sk-test", assistant_id="", client=_client())

    @pytest.mark.asyncio
    async def test_create_thread_forwards_correlation_id(self):
        client = _client()
        engine = OpenAIAssistantsEngine(api_key="sk-test", assistant_id="asst_1", client=client)

        bind_correlation_id("corr-9")
        try:
            thread_id = await engine.create_thread()
        finally:
            clear_correlation_id()

        assert thread_id == "thread_1"
        client.beta.threads.create.assert_awaited_once_with(extra_headers={"X-Correlation-Id": "corr-9"})

    @pytest.mark.asyncio
    async def test_start_run_sends_protocol_instructions(self):
        client = _client()
        engine = OpenAIAssistantsEngine(
            api_key="sk-test", assistant_id="asst_1", additional_instructions="Use markers.", client=client,
        )

        state = await engine.start_run("thread_1")

        assert state.run_id == "run_1"
        assert state.status == "queued"
        kwargs = client.beta.threads.runs.create.await_args.kwargs
        assert kwargs["assistant_id"] == "asst_1"
        assert kwargs["thread_id"] == "thread_1"
        assert kwargs["additional_instructions"] == "Use markers."

    @pytest.mark.asyncio
    async def test_get_run_reports_last_error(self):
        client = _client()
        client.beta.threads.runs.retrieve.return_value = SimpleNamespace(
            id="run_1", status="failed",
            last_error=SimpleNamespace(code="invalid_prompt", message="Rejected"),
        )
        engine = OpenAIAssistantsEngine(api_key="sk-test", assistant_id="asst_1", client=client)

        state = await engine.get_run("thread_1", "run_1")

        assert state.is_terminal
        assert state.last_error == {"code": "invalid_prompt", "message": "Rejected"}

    @pytest.mark.asyncio
    async def test_latest_assistant_message_joins_text_blocks(self):
        client = _client()
        client.beta.threads.messages.list.return_value = SimpleNamespace(data=[
            _message("assistant", "First part.", "Second part."),
            _message("user", "My question"),
        ])
        engine = OpenAIAssistantsEngine(api_key="sk-test", assistant_id="asst_1", client=client)

        assert await engine.latest_assistant_message("thread_1") == "First part.\nSecond part."

    @pytest.mark.asyncio
    async def test_no_assistant_message(self):
        client = _client()
        client.beta.threads.messages.list.return_value = SimpleNamespace(data=[_message("user", "Hello")])
        engine = OpenAIAssistantsEngine(api_key="sk-test", assistant_id="asst_1", client=client)

        assert await engine.latest_assistant_message("thread_1") is None

    @pytest.mark.asyncio
    async def test_sdk_error_mapped(self):
        client = _client()
        client.beta.threads.messages.create.side_effect = openai.BadRequestError(
            "Thread thread_1 already has an active run run_2.", response=_response(400), body=None,
        )
        engine = OpenAIAssistantsEngine(api_key="sk-test", assistant_id="asst_1", client=client)

        with pytest.raises(EngineConflictError):
            await engine.post_message("thread_1", "Hello")
