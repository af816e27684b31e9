from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncGenerator, AsyncIterable, Optional, Union

from .exceptions import UpstreamStreamError
from .logging import logger
from .stream_reader import VendorEvent


@dataclass(frozen=True)
class ContentDelta:
    text: str


@dataclass(frozen=True)
class ImageReady:
    url: str


@dataclass(frozen=True)
class Done:
    pass


@dataclass(frozen=True)
class StreamError:
    message: str
    # credential_error / upstream_error，决定非流式路径的 HTTP 状态码
    kind: str = "upstream_error"
    status_code: Optional[int] = None


NormalizedEvent = Union[ContentDelta, ImageReady, Done, StreamError]


def is_heartbeat(content: str) -> bool:
    """Upstream sends "" and " " as keep-alive no-ops."""
    return content == "" or content == " "


def normalize(event: VendorEvent) -> list:
    out: list = []
    if event.status != "system" and not is_heartbeat(event.content):
        out.append(ContentDelta(event.content))
    for url in event.image_urls():
        out.append(ImageReady(url))
    return out


async def translate_events(source: AsyncIterable[VendorEvent]) -> AsyncGenerator[NormalizedEvent, None]:
    """Turn vendor events into normalized events.

    The sequence always ends with exactly one Done or StreamError.
    """
    try:
        async for event in source:
            for normalized in normalize(event):
                yield normalized
    except UpstreamStreamError as e:
        logger.warning(f"[Merlin Stream] 上游流中断: {e}")
        yield StreamError(message=str(e), kind="upstream_error", status_code=e.status_code)
        return
    yield Done()
