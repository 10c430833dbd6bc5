"""Shared fixtures: temporary database, fake persistence port, upstream stubs."""

import json
import random
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest.mock import AsyncMock

import httpx
import pytest

import chat_relay.db.repository as repo_module
from chat_relay.db.repository import get_engine, init_db
from chat_relay.relay.base import PersistencePort, Usage
from chat_relay.relay.completion import CompletionRelay
from chat_relay.relay.handoff import PersistenceHandoff
from chat_relay.relay.request import OpenAICompatRequestBuilder
from chat_relay.relay.retry import RetryPolicy

UPSTREAM_BASE_URL = "https://upstream.test/api/v1"


def sse_chunk(content: str) -> bytes:
    """One OpenAI-style delta event."""
    payload = {"choices": [{"delta": {"content": content}, "index": 0}]}
    return f"data: {json.dumps(payload)}\n\n".encode()


def sse_stream(*contents: str, done: bool = True) -> bytes:
    """A complete event stream with one delta per content string."""
    body = b"".join(sse_chunk(content) for content in contents)
    if done:
        body += b"data: [DONE]\n\n"
    return body


def sse_response(body: bytes, status_code: int = 200) -> httpx.Response:
    return httpx.Response(
        status_code,
        headers={"content-type": "text/event-stream"},
        content=body,
    )


class UpstreamStub:
    """httpx MockTransport handler replaying canned responses in order.

    Entries may be ``httpx.Response`` objects, exceptions to raise, or
    callables taking the request and returning a response.
    """

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.responses:
            raise AssertionError("unexpected upstream request")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(request)
        return response

    @property
    def call_count(self) -> int:
        return len(self.requests)

    def payload(self, index: int = 0) -> dict:
        return json.loads(self.requests[index].content)


class FakePersistence(PersistencePort):
    """In-memory persistence port recording every call."""

    def __init__(self, fail_save: bool = False, fail_usage: bool = False):
        self.fail_save = fail_save
        self.fail_usage = fail_usage
        self.saved: list[dict] = []
        self.usage: list[dict] = []

    def save_assistant_message(self, conversation_id, user_id, model_id, content):
        if self.fail_save:
            raise RuntimeError("database is gone")
        conversation_id = conversation_id or f"conv-{len(self.saved) + 1}"
        self.saved.append(
            {
                "conversation_id": conversation_id,
                "user_id": user_id,
                "model_id": model_id,
                "content": content,
            }
        )
        return conversation_id

    def log_usage(self, user_id, conversation_id, model_id, usage: Usage, used_custom_key=False):
        if self.fail_usage:
            raise RuntimeError("usage table locked")
        self.usage.append(
            {
                "user_id": user_id,
                "conversation_id": conversation_id,
                "model_id": model_id,
                "usage": usage,
                "used_custom_key": used_custom_key,
            }
        )

    def count_messages(self, conversation_id):
        return sum(1 for row in self.saved if row["conversation_id"] == conversation_id)


def build_relay(
    stub: UpstreamStub,
    persistence: PersistencePort | None = None,
    max_attempts: int = 3,
    base_delay_ms: float = 10,
    sleep=None,
    system_prompt: str | None = None,
) -> CompletionRelay:
    """Relay wired to a stubbed upstream with instant backoff waits."""
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(stub),
        base_url=UPSTREAM_BASE_URL,
    )
    builder = OpenAICompatRequestBuilder(
        api_key="shared-key",
        default_model_id="test/model",
        default_system_prompt=system_prompt,
    )
    policy = RetryPolicy(
        max_attempts=max_attempts,
        base_delay_ms=base_delay_ms,
        rng=random.Random(7),
    )
    handoff = PersistenceHandoff(persistence) if persistence is not None else None
    return CompletionRelay(
        builder,
        retry_policy=policy,
        handoff=handoff,
        http_client=client,
        sleep=sleep or AsyncMock(),
    )


@pytest.fixture
def fake_persistence():
    """In-memory persistence port."""
    return FakePersistence()


@pytest.fixture
def temp_db():
    """Create a temporary database for testing."""
    # Reset the global engine
    original_engine = repo_module._engine
    repo_module._engine = None

    with TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        init_db(db_path)
        engine = get_engine(db_path)
        yield engine

        # Reset engine after test
        engine.dispose()
        repo_module._engine = original_engine
