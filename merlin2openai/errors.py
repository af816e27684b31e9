from __future__ import annotations

from typing import Any, Dict, Optional


def build_openai_error(message: str, err_type: str, code: Optional[Any] = None) -> Dict[str, Any]:
    """OpenAI-style error envelope: {"error": {"message", "type", "code"}}."""
    return {"error": {"message": message, "type": err_type, "code": code}}


class OpenAIError(Exception):
    status_code = 500
    err_type = "server_error"

    def __init__(self, message: str, code: Optional[Any] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        if status_code is not None:
            self.status_code = status_code

    def to_payload(self) -> Dict[str, Any]:
        return build_openai_error(self.message, self.err_type, self.code)


class InvalidRequest(OpenAIError):
    status_code = 400
    err_type = "invalid_request_error"


class MethodNotAllowed(OpenAIError):
    status_code = 405
    err_type = "invalid_request_error"

    def __init__(self, method: str):
        super().__init__(f"Method {method} not allowed", code="method_not_allowed")


class UpstreamFailure(OpenAIError):
    status_code = 502
    err_type = "upstream_error"


class CredentialFailure(OpenAIError):
    status_code = 500
    err_type = "credential_error"
