#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Merlin credential management

Caches the short-lived Merlin access token and refreshes it before expiry.
Refresh paths are tried in order: session token exchange, refresh token
exchange, then a statically configured token.
"""
from __future__ import annotations

import asyncio
import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

import httpx

from ..config.settings import (
    ACCEPT_LANGUAGE,
    MERLIN_ORIGIN,
    MERLIN_VERSION,
    SEC_CH_UA,
    SEC_CH_UA_PLATFORM,
    USER_AGENT,
    Settings,
)
from .exceptions import CredentialError, CredentialErrorKind
from .logging import logger, mask_secret


@dataclass(frozen=True)
class Credential:
    value: str
    expires_at: float
    source: str = ""

    def is_valid(self, now: Optional[float] = None) -> bool:
        if not self.value:
            return False
        current = time.time() if now is None else now
        return current < self.expires_at

    @property
    def bearer(self) -> str:
        return as_bearer(self.value)


def as_bearer(token: str) -> str:
    """Prefix a raw token with "Bearer " unless the upstream already returned it prefixed."""
    if token.lower().startswith("bearer "):
        return token
    return f"Bearer {token}"


def _browser_headers() -> dict:
    return {
        "accept": "application/json, text/plain, */*",
        "accept-language": ACCEPT_LANGUAGE,
        "cache-control": "no-cache",
        "pragma": "no-cache",
        "origin": MERLIN_ORIGIN,
        "referer": f"{MERLIN_ORIGIN}/",
        "user-agent": USER_AGENT,
        "x-merlin-version": MERLIN_VERSION,
        "sec-ch-ua": SEC_CH_UA,
        "sec-ch-ua-mobile": "?0",
        "sec-ch-ua-platform": SEC_CH_UA_PLATFORM,
        "sec-fetch-dest": "empty",
        "sec-fetch-mode": "cors",
        "sec-fetch-site": "same-site",
    }


class TokenSource(ABC):
    """One way of producing a fresh access token."""

    name = "token"

    @abstractmethod
    def configured(self) -> bool:
        """Whether the secret this path needs is present."""

    @abstractmethod
    async def fetch(self, client: httpx.AsyncClient) -> str:
        """Return a fresh access token or raise CredentialError."""


class SessionTokenSource(TokenSource):
    """Exchange the long-lived web session cookie for an access token."""

    name = "session"

    def __init__(self, session_token: str, url: str, cookie_name: str, timeout: float = 30.0):
        self.session_token = session_token
        self.url = url
        self.cookie_name = cookie_name
        self.timeout = timeout

    def configured(self) -> bool:
        return bool(self.session_token)

    async def fetch(self, client: httpx.AsyncClient) -> str:
        headers = _browser_headers()
        headers["cookie"] = f"{self.cookie_name}={self.session_token}"
        logger.info(f"[Merlin Auth] 通过 session token 换取 access token: {self.url}")
        try:
            response = await client.get(self.url, headers=headers, timeout=self.timeout)
        except httpx.HTTPError as e:
            raise CredentialError(CredentialErrorKind.NETWORK_FAILURE, f"session exchange request failed: {e}") from e

        if response.status_code != 200:
            raise CredentialError(
                CredentialErrorKind.UPSTREAM_REJECTED,
                f"session exchange failed: HTTP {response.status_code} {response.text[:200]}",
            )
        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise CredentialError(CredentialErrorKind.UPSTREAM_REJECTED, f"session exchange returned non-JSON body: {e}") from e

        user = data.get("user") if isinstance(data, dict) else None
        token = user.get("accessToken") if isinstance(user, dict) else None
        if not token:
            raise CredentialError(CredentialErrorKind.UPSTREAM_REJECTED, "empty access token in session response")
        return token


class RefreshTokenSource(TokenSource):
    """Exchange a refresh token at the UAM session endpoint."""

    name = "refresh"

    def __init__(self, refresh_token: str, url: str, timeout: float = 30.0):
        self.refresh_token = refresh_token
        self.url = url
        self.timeout = timeout

    def configured(self) -> bool:
        return bool(self.refresh_token)

    async def fetch(self, client: httpx.AsyncClient) -> str:
        headers = _browser_headers()
        headers.update({
            "content-type": "application/json",
            "x-merlin-client-type": "web",
            "x-merlin-client-version": "1.0.0",
            "authorization": self.refresh_token,
        })
        logger.info(f"[Merlin Auth] 通过 refresh token 刷新 access token: {self.url}")
        try:
            response = await client.post(
                self.url,
                headers=headers,
                json={"token": self.refresh_token},
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            raise CredentialError(CredentialErrorKind.NETWORK_FAILURE, f"refresh request failed: {e}") from e

        if response.status_code != 200:
            raise CredentialError(
                CredentialErrorKind.UPSTREAM_REJECTED,
                f"refresh token failed: HTTP {response.status_code} {response.text[:200]}",
            )
        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise CredentialError(CredentialErrorKind.UPSTREAM_REJECTED, f"refresh returned non-JSON body: {e}") from e

        if not isinstance(data, dict) or data.get("status") == "error":
            error = (data or {}).get("error") if isinstance(data, dict) else None
            message = error.get("message") if isinstance(error, dict) else str(data)[:200]
            raise CredentialError(CredentialErrorKind.UPSTREAM_REJECTED, f"refresh token rejected: {message}")

        token = (data.get("data") or {}).get("accessToken")
        if not token:
            raise CredentialError(CredentialErrorKind.UPSTREAM_REJECTED, "empty access token in refresh response")
        return token


class StaticTokenSource(TokenSource):
    """A token configured directly (MERLIN_TOKEN)."""

    name = "static"

    def __init__(self, token: str):
        self.token = token

    def configured(self) -> bool:
        return bool(self.token)

    async def fetch(self, client: httpx.AsyncClient) -> str:
        return self.token


class CredentialStore:
    """Cached credential with single-flight refresh.

    Readers return the cached credential without locking while it is valid.
    Otherwise callers join the one in-flight refresh task and all observe its
    outcome, the same Credential or the same CredentialError. A failed
    refresh is not cached; the next request after it settles starts a new one.
    """

    def __init__(
        self,
        sources: Sequence[TokenSource],
        http_client: httpx.AsyncClient,
        lease_seconds: float,
        name: str = "chat",
        clock: Callable[[], float] = time.time,
    ):
        self.sources = list(sources)
        self.http_client = http_client
        self.lease_seconds = lease_seconds
        self.name = name
        self._clock = clock
        self._credential: Optional[Credential] = None
        self._lock = asyncio.Lock()
        self._inflight: Optional[asyncio.Task] = None
        self.refresh_count = 0

    @property
    def cached(self) -> Optional[Credential]:
        return self._credential

    def invalidate(self) -> None:
        if self._credential is not None:
            logger.info(f"[Merlin Auth] ({self.name}) 缓存的 token 已失效，下次请求将重新获取")
        self._credential = None

    async def get_credential(self) -> Credential:
        credential = self._credential
        if credential is not None and credential.is_valid(self._clock()):
            return credential

        async with self._lock:
            credential = self._credential
            if credential is not None and credential.is_valid(self._clock()):
                return credential
            task = self._inflight
            if task is None or task.done():
                task = asyncio.ensure_future(self._refresh_and_store())
                task.add_done_callback(self._refresh_finished)
                self._inflight = task
            else:
                logger.debug(f"[Merlin Auth] ({self.name}) 等待进行中的 token 刷新")

        # shield: 单个调用方取消不影响其他等待同一次刷新的请求
        return await asyncio.shield(task)

    async def _refresh_and_store(self) -> Credential:
        credential = await self._refresh()
        self._credential = credential
        return credential

    def _refresh_finished(self, task: asyncio.Task) -> None:
        if self._inflight is task:
            self._inflight = None
        if not task.cancelled():
            # 所有等待方都已取消时也要取走异常
            task.exception()

    async def _refresh(self) -> Credential:
        configured = [s for s in self.sources if s.configured()]
        if not configured:
            raise CredentialError(
                CredentialErrorKind.NO_SECRET,
                "no valid token found in environment variables "
                "(MERLIN_SESSION_TOKEN / MERLIN_REFRESH_TOKEN / MERLIN_TOKEN)",
            )

        self.refresh_count += 1
        failures: List[CredentialError] = []
        for source in configured:
            try:
                value = await source.fetch(self.http_client)
            except CredentialError as e:
                logger.warning(f"[Merlin Auth] ({self.name}) {source.name} 路径失败: {e}")
                failures.append(e)
                continue
            if not value:
                continue
            expires_at = self._clock() + self.lease_seconds
            logger.info(
                f"[Merlin Auth] ({self.name}) 通过 {source.name} 获取 token 成功: {mask_secret(value)}"
            )
            return Credential(value=value, expires_at=expires_at, source=source.name)

        if failures and all(f.kind == CredentialErrorKind.NETWORK_FAILURE for f in failures):
            kind = CredentialErrorKind.NETWORK_FAILURE
        else:
            kind = CredentialErrorKind.UPSTREAM_REJECTED
        message = "; ".join(f.message for f in failures) or "all credential paths returned an empty token"
        logger.error(f"[Merlin Auth] ({self.name}) 所有获取 token 的方案都失败了: {message}")
        raise CredentialError(kind, message)


def build_chat_credential_store(settings: Settings, http_client: httpx.AsyncClient) -> CredentialStore:
    sources: List[TokenSource] = [
        SessionTokenSource(settings.session_token, settings.session_url, settings.session_cookie_name),
        RefreshTokenSource(settings.refresh_token, settings.refresh_url),
        StaticTokenSource(settings.static_token),
    ]
    return CredentialStore(sources, http_client, settings.token_lease_seconds, name="chat")


def build_image_credential_store(settings: Settings, http_client: httpx.AsyncClient) -> CredentialStore:
    """Image generation authenticates through its own session cookie and keeps its own lease."""
    sources: List[TokenSource] = [
        SessionTokenSource(settings.session_token, settings.session_url, settings.image_session_cookie_name),
        StaticTokenSource(settings.static_token),
    ]
    return CredentialStore(sources, http_client, settings.image_token_lease_seconds, name="image")
