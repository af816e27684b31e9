from __future__ import annotations

import json
from enum import Enum
from typing import Any, AsyncGenerator, AsyncIterable, Dict, List, Optional

from merlinapi.core.events import ContentDelta, Done, NormalizedEvent, StreamError
from merlinapi.core.logging import logger

from .errors import CredentialFailure, UpstreamFailure
from .token_counter import build_usage

SSE_DONE = "data: [DONE]\n\n"

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def sse_line(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


class EmitterState(str, Enum):
    IDLE = "idle"
    OPENED = "opened"
    EMITTING = "emitting"
    CLOSED = "closed"


class OpenAIStreamEmitter:
    """Write normalized events as chat.completion.chunk SSE lines.

    Opened: role chunk. Emitting: one chunk per ContentDelta, yielded (and
    therefore flushed) immediately. Closed: stop chunk + [DONE], or, when the
    upstream failed before any content, a single error chunk.
    """

    def __init__(
        self,
        completion_id: str,
        created_ts: int,
        model_id: str,
        prompt: str = "",
        use_tiktoken: bool = True,
    ):
        self.completion_id = completion_id
        self.created_ts = created_ts
        self.model_id = model_id
        self.prompt = prompt
        self.use_tiktoken = use_tiktoken
        self.state = EmitterState.IDLE
        self._content: List[str] = []

    @property
    def content_emitted(self) -> bool:
        return bool(self._content)

    def _chunk(self, delta: Dict[str, Any], finish_reason: Optional[str] = None) -> Dict[str, Any]:
        return {
            "id": self.completion_id,
            "object": "chat.completion.chunk",
            "created": self.created_ts,
            "model": self.model_id,
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        }

    def _close_cleanly(self) -> List[str]:
        final = self._chunk({"content": ""}, finish_reason="stop")
        final["usage"] = build_usage(self.prompt, "".join(self._content), self.use_tiktoken)
        self.state = EmitterState.CLOSED
        logger.info(f"[OpenAI Compat] 流式响应结束: {self.completion_id}, 共 {len(self._content)} 个片段")
        return [sse_line(final), SSE_DONE]

    def _close_with_error(self, error: StreamError) -> List[str]:
        chunk = self._chunk({}, finish_reason="error")
        chunk["error"] = {"message": error.message, "type": error.kind}
        self.state = EmitterState.CLOSED
        logger.error(f"[OpenAI Compat] 流式响应在输出内容前失败: {error.message}")
        return [sse_line(chunk)]

    async def emit(self, events: AsyncIterable[NormalizedEvent]) -> AsyncGenerator[str, None]:
        self.state = EmitterState.OPENED
        yield sse_line(self._chunk({"role": "assistant"}))

        try:
            async for event in events:
                if isinstance(event, ContentDelta):
                    self.state = EmitterState.EMITTING
                    self._content.append(event.text)
                    yield sse_line(self._chunk({"content": event.text}))
                elif isinstance(event, Done):
                    for line in self._close_cleanly():
                        yield line
                    break
                elif isinstance(event, StreamError):
                    if self.content_emitted:
                        # SSE 没有通用的中途报错格式，已输出内容时按正常结束处理
                        logger.warning(f"[OpenAI Compat] 上游中途失败，已输出内容，正常结束: {event.message}")
                        lines = self._close_cleanly()
                    else:
                        lines = self._close_with_error(event)
                    for line in lines:
                        yield line
                    break
        finally:
            aclose = getattr(events, "aclose", None)
            if aclose is not None:
                await aclose()

        if self.state is not EmitterState.CLOSED:
            for line in self._close_cleanly():
                yield line


async def aggregate_chat_completion(
    events: AsyncIterable[NormalizedEvent],
    completion_id: str,
    created_ts: int,
    model_id: str,
    prompt: str = "",
    use_tiktoken: bool = True,
) -> Dict[str, Any]:
    """Concatenate ContentDelta text in arrival order into one chat.completion object."""
    parts: List[str] = []
    try:
        async for event in events:
            if isinstance(event, ContentDelta):
                parts.append(event.text)
            elif isinstance(event, Done):
                break
            elif isinstance(event, StreamError):
                if not parts:
                    if event.kind == "credential_error":
                        raise CredentialFailure(event.message, code=event.kind)
                    raise UpstreamFailure(event.message, code=event.kind)
                logger.warning(f"[OpenAI Compat] 上游中途失败，返回已聚合内容: {event.message}")
                break
    finally:
        aclose = getattr(events, "aclose", None)
        if aclose is not None:
            await aclose()

    content = "".join(parts)
    return {
        "id": completion_id,
        "object": "chat.completion",
        "created": created_ts,
        "model": model_id,
        "choices": [{
            "index": 0,
            "message": {"role": "assistant", "content": content},
            "finish_reason": "stop",
        }],
        "usage": build_usage(prompt, content, use_tiktoken),
    }


async def single_message_events(text: str) -> AsyncGenerator[NormalizedEvent, None]:
    """A finished answer replayed through the normal emitter path."""
    yield ContentDelta(text)
    yield Done()
