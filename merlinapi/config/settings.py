#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Merlin bridge configuration

Upstream endpoints, vendor header constants and the runtime Settings object.
Values come from the environment (and an optional .env file).
"""
from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv


# Upstream endpoints
SESSION_URL = "https://session.getmerlin.in/?from=web"
REFRESH_URL = "https://uam.getmerlin.in/session/get"
CHAT_URL = "https://arcane.getmerlin.in/v1/thread/unified"
IMAGE_URL = "https://uam.getmerlin.in/web/v2/image-generation"

# 浏览器指纹相关头部，上游会校验 origin/referer
MERLIN_ORIGIN = "https://www.getmerlin.in"
MERLIN_CHAT_ORIGIN = "https://getmerlin.in"
MERLIN_VERSION = "web-merlin"
USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
SEC_CH_UA = '"Not_A Brand";v="8", "Chromium";v="120", "Google Chrome";v="120"'
SEC_CH_UA_PLATFORM = '"macOS"'
ACCEPT_LANGUAGE = "en-US,en;q=0.9,zh-CN;q=0.8,zh;q=0.7"

SESSION_COOKIE_NAME = "__Secure-authjs.session-token"

# Token 通常 1 小时过期，提前 5 分钟刷新
DEFAULT_TOKEN_LEASE_SECONDS = 55 * 60


def _env_str(name: str, default: str = "") -> str:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    try:
        return float(_env_str(name, str(default)))
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(_env_str(name, str(default)))
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    """Runtime configuration shared by the credential stores, the stream client and the routes."""

    session_token: str = ""
    refresh_token: str = ""
    static_token: str = ""

    session_url: str = SESSION_URL
    refresh_url: str = REFRESH_URL
    chat_url: str = CHAT_URL
    image_url: str = IMAGE_URL

    session_cookie_name: str = SESSION_COOKIE_NAME
    image_session_cookie_name: str = SESSION_COOKIE_NAME

    token_lease_seconds: float = DEFAULT_TOKEN_LEASE_SECONDS
    image_token_lease_seconds: float = DEFAULT_TOKEN_LEASE_SECONDS

    language: str = "AUTO"
    web_access: bool = False
    default_model: str = "gpt-4o-mini"

    image_variations: int = 2
    image_aspect_ratio: str = "1:1"

    connect_timeout: float = 10.0
    stream_read_timeout: float = 120.0

    usage_tiktoken: bool = True
    warmup_credentials: bool = True

    @property
    def has_secret(self) -> bool:
        return bool(self.session_token or self.refresh_token or self.static_token)

    @classmethod
    def from_env(cls, load_env_file: bool = True) -> "Settings":
        if load_env_file:
            load_dotenv()
        return cls(
            session_token=_env_str("MERLIN_SESSION_TOKEN"),
            refresh_token=_env_str("MERLIN_REFRESH_TOKEN"),
            static_token=_env_str("MERLIN_TOKEN"),
            session_url=_env_str("MERLIN_SESSION_URL", SESSION_URL),
            refresh_url=_env_str("MERLIN_REFRESH_URL", REFRESH_URL),
            chat_url=_env_str("MERLIN_CHAT_URL", CHAT_URL),
            image_url=_env_str("MERLIN_IMAGE_URL", IMAGE_URL),
            session_cookie_name=_env_str("MERLIN_SESSION_COOKIE", SESSION_COOKIE_NAME),
            image_session_cookie_name=_env_str(
                "MERLIN_IMAGE_SESSION_COOKIE",
                _env_str("MERLIN_SESSION_COOKIE", SESSION_COOKIE_NAME),
            ),
            token_lease_seconds=_env_float("MERLIN_TOKEN_LEASE_SECONDS", DEFAULT_TOKEN_LEASE_SECONDS),
            image_token_lease_seconds=_env_float("MERLIN_IMAGE_TOKEN_LEASE_SECONDS", DEFAULT_TOKEN_LEASE_SECONDS),
            language=_env_str("MERLIN_LANGUAGE", "AUTO"),
            web_access=_env_bool("MERLIN_WEB_ACCESS", False),
            default_model=_env_str("MERLIN_DEFAULT_MODEL", "gpt-4o-mini"),
            image_variations=max(_env_int("MERLIN_IMAGE_VARIATIONS", 2), 1),
            image_aspect_ratio=_env_str("MERLIN_IMAGE_ASPECT_RATIO", "1:1"),
            connect_timeout=_env_float("MERLIN_CONNECT_TIMEOUT", 10.0),
            stream_read_timeout=_env_float("MERLIN_STREAM_READ_TIMEOUT", 120.0),
            usage_tiktoken=_env_bool("MERLIN_USAGE_TIKTOKEN", True),
            warmup_credentials=_env_bool("MERLIN_WARMUP_CREDENTIALS", True),
        )
