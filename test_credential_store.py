#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Credential Store 测试

覆盖缓存、过期刷新、并发单次刷新、刷新路径的回退顺序以及错误分类。
"""
from __future__ import annotations

import asyncio
from typing import List

import httpx
import pytest

from merlinapi.core.auth import (
    CredentialStore,
    RefreshTokenSource,
    SessionTokenSource,
    StaticTokenSource,
    TokenSource,
    as_bearer,
    build_chat_credential_store,
    build_image_credential_store,
)
from merlinapi.core.exceptions import CredentialError, CredentialErrorKind

pytestmark = pytest.mark.anyio

SESSION_URL = "https://session.merlin.test/?from=web"
REFRESH_URL = "https://uam.merlin.test/session/get"
COOKIE = "__Secure-authjs.session-token"


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def session_client(calls: List[httpx.Request], token: str = "acc-session", delay: float = 0.0) -> httpx.AsyncClient:
    async def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if delay:
            await asyncio.sleep(delay)
        return httpx.Response(200, json={"user": {"accessToken": token}})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def session_store(client: httpx.AsyncClient, lease: float = 3300, clock=None) -> CredentialStore:
    kwargs = {"clock": clock} if clock is not None else {}
    return CredentialStore(
        [SessionTokenSource("sess-secret", SESSION_URL, COOKIE)],
        client,
        lease_seconds=lease,
        **kwargs,
    )


async def test_concurrent_requests_share_one_refresh():
    """并发请求只触发一次上游刷新，所有请求拿到同一个 token"""
    calls: List[httpx.Request] = []
    async with session_client(calls, delay=0.05) as client:
        store = session_store(client)
        credentials = await asyncio.gather(*(store.get_credential() for _ in range(20)))

    assert len(calls) == 1
    assert store.refresh_count == 1
    assert {c.value for c in credentials} == {"acc-session"}


async def test_concurrent_requests_share_one_failed_refresh():
    """刷新失败时并发请求同样只触发一次上游调用，并得到同一个错误"""
    calls: List[httpx.Request] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        await asyncio.sleep(0.05)
        raise httpx.ConnectError("connection refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        store = session_store(client)
        results = await asyncio.gather(
            *(store.get_credential() for _ in range(10)),
            return_exceptions=True,
        )
        assert len(calls) == 1
        assert all(isinstance(r, CredentialError) for r in results)
        assert {r.kind for r in results} == {CredentialErrorKind.NETWORK_FAILURE}
        assert store.cached is None

        # 上一次刷新结束后，新的请求会重新尝试
        with pytest.raises(CredentialError):
            await store.get_credential()
        assert len(calls) == 2


async def test_cancelled_waiter_does_not_cancel_shared_refresh():
    calls: List[httpx.Request] = []
    async with session_client(calls, delay=0.05) as client:
        store = session_store(client)
        cancelled = asyncio.ensure_future(store.get_credential())
        survivor = asyncio.ensure_future(store.get_credential())
        await asyncio.sleep(0.01)
        cancelled.cancel()
        credential = await survivor

    assert credential.value == "acc-session"
    assert len(calls) == 1


async def test_cached_credential_reused_until_expiry():
    calls: List[httpx.Request] = []
    clock = FakeClock(1000.0)
    async with session_client(calls) as client:
        store = session_store(client, lease=100, clock=clock)

        first = await store.get_credential()
        assert first.expires_at == 1100.0

        clock.now = 1099.0
        assert (await store.get_credential()) is first
        assert len(calls) == 1

        clock.now = 1100.0
        second = await store.get_credential()
        assert len(calls) == 2
        assert second.expires_at == 1200.0


async def test_invalidate_forces_refresh():
    calls: List[httpx.Request] = []
    async with session_client(calls) as client:
        store = session_store(client)
        await store.get_credential()
        store.invalidate()
        assert store.cached is None
        await store.get_credential()

    assert len(calls) == 2


async def test_session_exchange_sends_cookie_and_browser_headers():
    calls: List[httpx.Request] = []
    async with session_client(calls) as client:
        await session_store(client).get_credential()

    request = calls[0]
    assert request.method == "GET"
    assert request.headers["cookie"] == f"{COOKIE}=sess-secret"
    assert request.headers["origin"] == "https://www.getmerlin.in"
    assert "user-agent" in request.headers


async def test_falls_back_to_refresh_token_when_session_rejected():
    """session 路径失败后按顺序尝试 refresh token"""
    seen: List[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.host)
        if request.url.host == "session.merlin.test":
            return httpx.Response(401, text="expired")
        assert request.headers["authorization"] == "refresh-secret"
        return httpx.Response(200, json={"status": "success", "data": {"accessToken": "acc-refresh"}})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        store = CredentialStore(
            [
                SessionTokenSource("sess-secret", SESSION_URL, COOKIE),
                RefreshTokenSource("refresh-secret", REFRESH_URL),
                StaticTokenSource("tok-static"),
            ],
            client,
            lease_seconds=3300,
        )
        credential = await store.get_credential()

    assert seen == ["session.merlin.test", "uam.merlin.test"]
    assert credential.value == "acc-refresh"
    assert credential.source == "refresh"


async def test_static_token_used_last():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"user": {}})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        store = CredentialStore(
            [
                SessionTokenSource("sess-secret", SESSION_URL, COOKIE),
                StaticTokenSource("tok-static"),
            ],
            client,
            lease_seconds=3300,
        )
        credential = await store.get_credential()

    assert credential.value == "tok-static"
    assert credential.bearer == "Bearer tok-static"


async def test_no_secret_configured():
    calls: List[httpx.Request] = []
    async with session_client(calls) as client:
        store = CredentialStore(
            [SessionTokenSource("", SESSION_URL, COOKIE), RefreshTokenSource("", REFRESH_URL), StaticTokenSource("")],
            client,
            lease_seconds=3300,
        )
        with pytest.raises(CredentialError) as excinfo:
            await store.get_credential()

    assert excinfo.value.kind == CredentialErrorKind.NO_SECRET
    assert calls == []


async def test_network_failure_classified():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        store = session_store(client)
        with pytest.raises(CredentialError) as excinfo:
            await store.get_credential()

    assert excinfo.value.kind == CredentialErrorKind.NETWORK_FAILURE
    assert store.cached is None


async def test_empty_token_classified_as_rejected():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"user": {"accessToken": ""}})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(CredentialError) as excinfo:
            await session_store(client).get_credential()

    assert excinfo.value.kind == CredentialErrorKind.UPSTREAM_REJECTED


async def test_refresh_error_status_classified_as_rejected():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"status": "error", "error": {"message": "invalid token"}})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        store = CredentialStore([RefreshTokenSource("refresh-secret", REFRESH_URL)], client, lease_seconds=3300)
        with pytest.raises(CredentialError) as excinfo:
            await store.get_credential()

    assert excinfo.value.kind == CredentialErrorKind.UPSTREAM_REJECTED
    assert "invalid token" in excinfo.value.message


async def test_failed_refresh_does_not_poison_cache():
    """刷新失败后不缓存任何值，下一次请求重新尝试"""
    attempts: List[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        if len(attempts) == 1:
            return httpx.Response(500, text="boom")
        return httpx.Response(200, json={"user": {"accessToken": "acc-2"}})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        store = session_store(client)
        with pytest.raises(CredentialError):
            await store.get_credential()
        credential = await store.get_credential()

    assert credential.value == "acc-2"


async def test_image_store_uses_own_cookie_and_lease(make_settings):
    cookies: List[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        cookies.append(request.headers["cookie"])
        return httpx.Response(200, json={"user": {"accessToken": "acc-image"}})

    settings = make_settings(
        session_token="sess-secret",
        image_session_cookie_name="image-cookie",
        image_token_lease_seconds=60,
    )
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        chat_store = build_chat_credential_store(settings, client)
        image_store = build_image_credential_store(settings, client)
        image_credential = await image_store.get_credential()

    assert cookies == ["image-cookie=sess-secret"]
    assert image_store.lease_seconds == 60
    assert chat_store.cached is None
    assert image_credential.value == "acc-image"


def test_as_bearer_keeps_existing_prefix():
    assert as_bearer("abc") == "Bearer abc"
    assert as_bearer("Bearer abc") == "Bearer abc"


def test_token_source_is_abstract():
    with pytest.raises(TypeError):
        TokenSource()
