import json
import os
from types import SimpleNamespace
from typing import Any, Callable, Dict

import pytest

os.environ.setdefault("MERLIN_LOG_TO_FILE", "false")

from merlinapi.config.settings import Settings

TEST_SESSION_URL = "https://session.merlin.test/?from=web"
TEST_REFRESH_URL = "https://uam.merlin.test/session/get"
TEST_CHAT_URL = "https://arcane.merlin.test/v1/thread/unified"
TEST_IMAGE_URL = "https://uam.merlin.test/web/v2/image-generation"


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def make_settings() -> Callable[..., Settings]:
    """Settings pointing at fake upstream hosts, with no network side effects."""

    def _make(**overrides: Any) -> Settings:
        values: Dict[str, Any] = {
            "static_token": "tok-static",
            "session_url": TEST_SESSION_URL,
            "refresh_url": TEST_REFRESH_URL,
            "chat_url": TEST_CHAT_URL,
            "image_url": TEST_IMAGE_URL,
            "usage_tiktoken": False,
            "warmup_credentials": False,
        }
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def sse_body() -> Callable[..., bytes]:
    """Encode records as an upstream event stream.

    framing="data" gives ``data: {...}`` frames, framing="message" gives
    ``event: message`` followed by a bare JSON line.
    """

    def _encode(*records: Any, framing: str = "data") -> bytes:
        frames = []
        for record in records:
            text = record if isinstance(record, str) else json.dumps(record)
            if framing == "message":
                frames.append(f"event: message\n{text}\n\n")
            else:
                frames.append(f"data: {text}\n\n")
        return "".join(frames).encode("utf-8")

    return _encode


def chunk(content: str) -> Dict[str, Any]:
    return {"status": "success", "data": {"content": content, "eventType": "CHUNK"}}


def system_done() -> Dict[str, Any]:
    return {"status": "system", "data": {"content": "", "eventType": "DONE"}}


@pytest.fixture
def records() -> SimpleNamespace:
    """Builders for chat records as the upstream sends them."""
    return SimpleNamespace(chunk=chunk, done=system_done)
