from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from merlinapi.config.settings import Settings
from merlinapi.core.exceptions import CredentialError, NoImageProduced, UpstreamStreamError
from merlinapi.core.logging import logger

from .errors import OpenAIError, build_openai_error
from .router import router
from .state import BridgeRuntime


def internal_error_response() -> JSONResponse:
    return JSONResponse(
        status_code=500,
        content=build_openai_error("Internal server error", "server_error", "internal_error"),
    )


class CORSAllowAllMiddleware(BaseHTTPMiddleware):
    """所有响应加上 Access-Control-Allow-Origin: *，OPTIONS 预检直接返回 200。"""

    async def dispatch(self, request: Request, call_next):
        if request.method == "OPTIONS":
            response: Response = Response(status_code=200)
        else:
            try:
                response = await call_next(request)
            except Exception as exc:
                # 未处理的异常在这里转成 500，保证响应同样带上 CORS 头
                logger.exception(f"[OpenAI Compat] 未处理的异常: {exc}")
                response = internal_error_response()
        response.headers["Access-Control-Allow-Origin"] = "*"
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization"
        return response


async def _warmup(runtime: BridgeRuntime) -> None:
    try:
        await runtime.chat_credentials.get_credential()
        logger.info("[OpenAI Compat] 启动时预取 token 成功")
    except CredentialError as e:
        logger.warning(f"[OpenAI Compat] 启动时预取 token 失败，将在首个请求时重试: {e}")


def _install_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(OpenAIError)
    async def openai_error_handler(_: Request, exc: OpenAIError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.exception_handler(CredentialError)
    async def credential_error_handler(_: Request, exc: CredentialError):
        logger.error(f"[OpenAI Compat] 获取 token 失败: {exc}")
        return JSONResponse(
            status_code=500,
            content=build_openai_error(f"Failed to get token: {exc.message}", "credential_error", exc.kind.value),
        )

    @app.exception_handler(UpstreamStreamError)
    async def upstream_error_handler(_: Request, exc: UpstreamStreamError):
        logger.error(f"[OpenAI Compat] 上游请求失败: {exc}")
        return JSONResponse(
            status_code=502,
            content=build_openai_error(exc.message, "upstream_error", exc.kind.value),
        )

    @app.exception_handler(NoImageProduced)
    async def no_image_handler(_: Request, exc: NoImageProduced):
        logger.error(f"[Image Gen] {exc.message}")
        return JSONResponse(
            status_code=500,
            content=build_openai_error(exc.message, "image_generation_error", "no_image_produced"),
        )


def create_app(settings: Optional[Settings] = None, http_client: Optional[httpx.AsyncClient] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    owns_client = http_client is None
    if http_client is None:
        http_client = httpx.AsyncClient(http2=True, trust_env=True)

    runtime = BridgeRuntime.build(settings, http_client, owns_client=owns_client)
    if not settings.has_secret:
        logger.error(
            "[OpenAI Compat] 未配置任何 Merlin 凭据 "
            "(MERLIN_SESSION_TOKEN / MERLIN_REFRESH_TOKEN / MERLIN_TOKEN)"
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if settings.warmup_credentials and settings.has_secret:
            await _warmup(runtime)
        try:
            yield
        finally:
            if runtime.owns_client:
                await runtime.http_client.aclose()
                logger.info("[OpenAI Compat] HTTP 客户端已关闭")

    app = FastAPI(title="OpenAI compatible Merlin bridge", lifespan=lifespan)
    app.state.runtime = runtime
    app.add_middleware(CORSAllowAllMiddleware)
    _install_exception_handlers(app)
    app.include_router(router)
    return app
