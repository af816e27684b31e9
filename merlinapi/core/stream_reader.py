#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Merlin SSE 读取器

把上游的 text/event-stream 响应按行解析成 VendorEvent。
上游先后用过两种分帧方式，两种都要支持：

    data: {...}

    event: message
    data: {...}
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Iterator, List, Optional, Tuple

import httpx

from .exceptions import UpstreamStreamError, UpstreamStreamErrorKind
from .logging import logger

DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class Attachment:
    type: str
    url: str


@dataclass(frozen=True)
class VendorEvent:
    status: str = ""
    event_type: str = ""
    content: str = ""
    attachments: Tuple[Attachment, ...] = ()
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.status == "system" and self.event_type == "DONE"

    def image_urls(self) -> List[str]:
        return [a.url for a in self.attachments if a.type == "IMAGE" and a.url]


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _iter_attachment_dicts(container: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
    for item in container.get("attachments") or []:
        if isinstance(item, dict):
            yield item


def _iter_variation_urls(container: Dict[str, Any]) -> Iterator[str]:
    payload = container.get("payload")
    if isinstance(payload, dict):
        payload = [payload]
    if not isinstance(payload, list):
        return
    for entry in payload:
        for variation in _as_dict(entry).get("variations") or []:
            url = _as_dict(variation).get("url")
            if isinstance(url, str) and url:
                yield url


def decode_vendor_event(payload: Dict[str, Any]) -> VendorEvent:
    """Map one decoded JSON record onto a VendorEvent.

    Chat records look like {"status": ..., "data": {"content": ..., "eventType": ...}};
    image records carry URLs in data.url, data.attachments, data.message.attachments
    or payload[].variations[].url.
    """
    data = _as_dict(payload.get("data"))

    status = payload.get("status") or data.get("status") or ""
    event_type = data.get("eventType") or payload.get("eventType") or ""
    content = data.get("content")
    if not isinstance(content, str):
        content = ""

    attachments: List[Attachment] = []
    url = data.get("url")
    if isinstance(url, str) and url:
        attachments.append(Attachment(type="IMAGE", url=url))
    for item in _iter_attachment_dicts(data):
        attachments.append(Attachment(type=str(item.get("type") or ""), url=str(item.get("url") or "")))
    for item in _iter_attachment_dicts(_as_dict(data.get("message"))):
        attachments.append(Attachment(type=str(item.get("type") or ""), url=str(item.get("url") or "")))
    for container in (payload, data):
        for variation_url in _iter_variation_urls(container):
            attachments.append(Attachment(type="IMAGE", url=variation_url))

    return VendorEvent(
        status=str(status),
        event_type=str(event_type),
        content=content,
        attachments=tuple(attachments),
        raw=payload,
    )


class SSELineClassifier:
    """Pick the payload out of significant lines.

    A line is significant when it starts with "data:" (after trimming), or
    when it directly follows an "event: message" line.
    """

    def __init__(self) -> None:
        self._after_message_event = False

    def feed(self, raw_line: str) -> Optional[str]:
        line = raw_line.strip()
        if not line:
            return None
        if line.startswith("event:"):
            self._after_message_event = line[len("event:"):].strip() == "message"
            return None
        if line.startswith("data:"):
            self._after_message_event = False
            return line[len("data:"):].strip()
        if self._after_message_event:
            self._after_message_event = False
            return line
        # id:/retry:/注释行
        return None


class MerlinEventSource:
    """Pull-based decoder over an upstream streaming response."""

    def __init__(self, response: httpx.Response, label: str = "chat"):
        self.response = response
        self.label = label
        self.skipped_records = 0
        self._lines: AsyncIterator[str] = response.aiter_lines()
        self._classifier = SSELineClassifier()
        self._done = False

    @property
    def done(self) -> bool:
        return self._done

    async def next_event(self) -> Optional[VendorEvent]:
        """Return the next event, or None once the stream is finished.

        Raises UpstreamStreamError(TRANSPORT_INTERRUPTED) when the connection
        breaks while reading.
        """
        if self._done:
            return None

        while True:
            try:
                raw_line = await self._lines.__anext__()
            except StopAsyncIteration:
                self._done = True
                return None
            except httpx.HTTPError as e:
                self._done = True
                logger.error(f"[Merlin Stream] ({self.label}) 读取上游流失败: {e!r}")
                raise UpstreamStreamError(
                    UpstreamStreamErrorKind.TRANSPORT_INTERRUPTED,
                    str(e) or type(e).__name__,
                ) from e

            payload = self._classifier.feed(raw_line)
            if not payload:
                continue
            if payload == DONE_SENTINEL:
                self._done = True
                return None

            try:
                record = json.loads(payload)
            except json.JSONDecodeError as e:
                self.skipped_records += 1
                logger.warning(f"[Merlin Stream] ({self.label}) 跳过无法解析的记录: {e}; data={payload[:200]}")
                continue
            if not isinstance(record, dict):
                self.skipped_records += 1
                logger.warning(f"[Merlin Stream] ({self.label}) 跳过非对象记录: {payload[:200]}")
                continue

            event = decode_vendor_event(record)
            if event.is_terminal:
                self._done = True
                return None
            return event

    def __aiter__(self) -> "MerlinEventSource":
        return self

    async def __anext__(self) -> VendorEvent:
        event = await self.next_event()
        if event is None:
            raise StopAsyncIteration
        return event
