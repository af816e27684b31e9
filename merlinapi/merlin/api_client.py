#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Merlin API客户端模块

负责向 Merlin 的聊天 / 图片生成接口发起流式请求，并把 SSE 响应交给
读取器和转换器处理。
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, AsyncIterator, Dict, List

import httpx

from ..config.settings import (
    MERLIN_CHAT_ORIGIN,
    MERLIN_VERSION,
    SEC_CH_UA,
    SEC_CH_UA_PLATFORM,
    USER_AGENT,
    Settings,
)
from ..core.auth import Credential, CredentialStore
from ..core.events import Done, ImageReady, NormalizedEvent, StreamError, translate_events
from ..core.exceptions import (
    CredentialError,
    NoImageProduced,
    UpstreamStreamError,
    UpstreamStreamErrorKind,
)
from ..core.logging import logger
from ..core.stream_reader import MerlinEventSource


def stream_headers(credential: Credential) -> Dict[str, str]:
    return {
        "content-type": "application/json",
        "accept": "text/event-stream",
        "authorization": credential.bearer,
        "origin": MERLIN_CHAT_ORIGIN,
        "referer": f"{MERLIN_CHAT_ORIGIN}/",
        "user-agent": USER_AGENT,
        "x-merlin-version": MERLIN_VERSION,
        "sec-ch-ua": SEC_CH_UA,
        "sec-ch-ua-mobile": "?0",
        "sec-ch-ua-platform": SEC_CH_UA_PLATFORM,
        "sec-fetch-dest": "empty",
        "sec-fetch-mode": "cors",
        "sec-fetch-site": "same-site",
    }


def stream_timeout(settings: Settings) -> httpx.Timeout:
    # read 超时即两次数据之间允许的最长空闲时间
    return httpx.Timeout(
        connect=settings.connect_timeout,
        read=settings.stream_read_timeout,
        write=settings.connect_timeout,
        pool=settings.connect_timeout,
    )


@asynccontextmanager
async def open_event_stream(
    client: httpx.AsyncClient,
    url: str,
    *,
    headers: Dict[str, str],
    payload: Dict[str, Any],
    timeout: httpx.Timeout,
    label: str = "chat",
) -> AsyncIterator[MerlinEventSource]:
    """POST to a Merlin streaming endpoint and yield an event source.

    The upstream response is closed when the context exits, including when
    the consumer stops early (caller disconnect).
    """
    request = client.build_request("POST", url, headers=headers, json=payload, timeout=timeout)
    logger.info(f"[Merlin Stream] ({label}) 发送请求到: {url}")
    try:
        response = await client.send(request, stream=True)
    except httpx.HTTPError as e:
        raise UpstreamStreamError(
            UpstreamStreamErrorKind.CONNECT_FAILED,
            f"request to {url} failed: {e!r}",
        ) from e

    try:
        logger.info(f"[Merlin Stream] ({label}) 上游响应状态: HTTP {response.status_code}")
        if response.status_code != 200:
            body = await response.aread()
            text = body.decode("utf-8", errors="replace") if body else ""
            logger.error(f"[Merlin Stream] ({label}) HTTP error {response.status_code}: {text[:300]}")
            raise UpstreamStreamError(
                UpstreamStreamErrorKind.CONNECT_FAILED,
                f"Error from Merlin: HTTP {response.status_code} {text[:300]}",
                status_code=response.status_code,
            )
        yield MerlinEventSource(response, label=label)
    finally:
        await response.aclose()


async def stream_chat_events(
    client: httpx.AsyncClient,
    credentials: CredentialStore,
    settings: Settings,
    packet: Dict[str, Any],
) -> AsyncGenerator[NormalizedEvent, None]:
    """Credential lookup → upstream chat stream → normalized events.

    Failures are turned into a trailing StreamError instead of raising, so
    both emitters see the same terminal contract.
    """
    try:
        credential = await credentials.get_credential()
    except CredentialError as e:
        logger.error(f"[Merlin Stream] 获取 token 失败: {e}")
        yield StreamError(message=f"Failed to get token: {e.message}", kind="credential_error")
        return

    try:
        async with open_event_stream(
            client,
            settings.chat_url,
            headers=stream_headers(credential),
            payload=packet,
            timeout=stream_timeout(settings),
            label="chat",
        ) as source:
            async for event in translate_events(source):
                yield event
    except UpstreamStreamError as e:
        if e.is_auth_rejection:
            credentials.invalidate()
        yield StreamError(message=e.message, kind="upstream_error", status_code=e.status_code)


async def collect_image_urls(
    client: httpx.AsyncClient,
    credentials: CredentialStore,
    settings: Settings,
    packet: Dict[str, Any],
) -> List[str]:
    """Run one image generation and return every URL it produced, in arrival order.

    Raises CredentialError, UpstreamStreamError (connect failures) or
    NoImageProduced when the stream ended without any URL.
    """
    credential = await credentials.get_credential()

    urls: List[str] = []
    try:
        async with open_event_stream(
            client,
            settings.image_url,
            headers=stream_headers(credential),
            payload=packet,
            timeout=stream_timeout(settings),
            label="image",
        ) as source:
            async for event in translate_events(source):
                if isinstance(event, ImageReady):
                    if event.url not in urls:
                        urls.append(event.url)
                elif isinstance(event, StreamError):
                    logger.warning(f"[Image Gen] 图片流提前结束，保留已收到的 {len(urls)} 个 URL: {event.message}")
                elif isinstance(event, Done):
                    break
    except UpstreamStreamError as e:
        if e.is_auth_rejection:
            credentials.invalidate()
        raise

    if not urls:
        raise NoImageProduced()
    logger.info(f"[Image Gen] 共收到 {len(urls)} 个图片 URL")
    return urls
