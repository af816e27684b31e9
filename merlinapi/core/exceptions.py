from __future__ import annotations

from enum import Enum
from typing import Optional


class CredentialErrorKind(str, Enum):
    NO_SECRET = "no_secret"
    UPSTREAM_REJECTED = "upstream_rejected"
    NETWORK_FAILURE = "network_failure"


class CredentialError(Exception):
    """No usable credential could be produced for this request."""

    def __init__(self, kind: CredentialErrorKind, message: str):
        self.kind = kind
        self.message = message
        super().__init__(f"{kind.value}: {message}")


class UpstreamStreamErrorKind(str, Enum):
    CONNECT_FAILED = "connect_failed"
    TRANSPORT_INTERRUPTED = "transport_interrupted"
    MALFORMED_RECORD = "malformed_record"


class UpstreamStreamError(Exception):
    """Opening or reading the upstream event stream failed."""

    def __init__(
        self,
        kind: UpstreamStreamErrorKind,
        message: str,
        status_code: Optional[int] = None,
    ):
        self.kind = kind
        self.message = message
        self.status_code = status_code
        super().__init__(f"{kind.value}: {message}")

    @property
    def is_auth_rejection(self) -> bool:
        return self.status_code in (401, 403)


class NoImageProduced(Exception):
    """The image stream finished without yielding a single image URL."""

    def __init__(self, message: str = "No valid image URLs generated"):
        self.message = message
        super().__init__(message)
