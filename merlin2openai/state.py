from __future__ import annotations

from dataclasses import dataclass

import httpx
from fastapi import Request

from merlinapi.config.settings import Settings
from merlinapi.core.auth import (
    CredentialStore,
    build_chat_credential_store,
    build_image_credential_store,
)


@dataclass
class BridgeRuntime:
    settings: Settings
    http_client: httpx.AsyncClient
    chat_credentials: CredentialStore
    image_credentials: CredentialStore
    owns_client: bool = False

    @classmethod
    def build(cls, settings: Settings, http_client: httpx.AsyncClient, owns_client: bool = False) -> "BridgeRuntime":
        return cls(
            settings=settings,
            http_client=http_client,
            chat_credentials=build_chat_credential_store(settings, http_client),
            image_credentials=build_image_credential_store(settings, http_client),
            owns_client=owns_client,
        )


def get_runtime(request: Request) -> BridgeRuntime:
    return request.app.state.runtime
