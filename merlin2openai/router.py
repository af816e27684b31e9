from __future__ import annotations

import json
import time
import uuid
from typing import Any, Dict, Optional

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from merlinapi.core.logging import logger
from merlinapi.merlin.api_client import stream_chat_events

from .errors import InvalidRequest, MethodNotAllowed
from .helpers import last_message_text
from .images import build_images_response, generate_images, markdown_for_images
from .models import ChatCompletionsRequest, ImageGenerationRequest
from .packets import build_chat_packet, is_image_model
from .sse_transform import (
    STREAM_HEADERS,
    OpenAIStreamEmitter,
    aggregate_chat_completion,
    single_message_events,
)
from .state import BridgeRuntime, get_runtime


router = APIRouter()

LIVENESS_BODY = {
    "status": "Merlin2Api Service Running...",
    "message": "OpenAI compatible bridge for getmerlin.in",
}

CATCH_ALL_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"]


async def _read_json_body(request: Request) -> Dict[str, Any]:
    raw = await request.body()
    try:
        body = json.loads(raw) if raw else None
    except ValueError as e:
        logger.warning(f"[OpenAI Compat] 请求体不是合法 JSON: {e}")
        raise InvalidRequest(f"Invalid request body: {e}", code="invalid_json")
    if not isinstance(body, dict):
        raise InvalidRequest("Invalid request body: expected a JSON object", code="invalid_json")
    return body


def _api_kind(path: str) -> Optional[str]:
    trimmed = "/" + path.strip("/")
    if trimmed.endswith("/chat/completions"):
        return "chat"
    if trimmed.endswith("/images/generations"):
        return "images"
    return None


async def _chat_completions(request: Request, runtime: BridgeRuntime):
    body = await _read_json_body(request)
    try:
        req = ChatCompletionsRequest.model_validate(body)
    except ValidationError as e:
        raise InvalidRequest(f"Invalid request body: {e.errors()[0].get('msg', 'validation error')}", code="invalid_body")

    if not req.messages:
        raise InvalidRequest("messages must not be empty", code="empty_messages")

    settings = runtime.settings
    model_id = req.model or settings.default_model
    content = last_message_text(req.messages)
    created_ts = int(time.time())
    completion_id = f"chatcmpl-{uuid.uuid4().hex}"

    logger.info(
        f"[OpenAI Compat] 收到 Chat Completions 请求: model={model_id}, stream={bool(req.stream)}, "
        f"messages={len(req.messages)}"
    )

    if is_image_model(model_id):
        # 图片模型走图片生成，结果以 markdown 形式放进 chat 响应
        logger.info(f"[OpenAI Compat] 模型 {model_id} 为图片模型，转到图片生成")
        urls = await generate_images(runtime, content, model_id)
        events = single_message_events(markdown_for_images(urls))
    else:
        packet = build_chat_packet(content, model_id, settings)
        events = stream_chat_events(runtime.http_client, runtime.chat_credentials, settings, packet)

    if req.stream:
        emitter = OpenAIStreamEmitter(
            completion_id,
            created_ts,
            model_id,
            prompt=content,
            use_tiktoken=settings.usage_tiktoken,
        )
        return StreamingResponse(emitter.emit(events), media_type="text/event-stream", headers=STREAM_HEADERS)

    return await aggregate_chat_completion(
        events,
        completion_id,
        created_ts,
        model_id,
        prompt=content,
        use_tiktoken=settings.usage_tiktoken,
    )


async def _image_generations(request: Request, runtime: BridgeRuntime):
    body = await _read_json_body(request)
    try:
        req = ImageGenerationRequest.model_validate(body)
    except ValidationError as e:
        raise InvalidRequest(f"Invalid request body: {e.errors()[0].get('msg', 'validation error')}", code="invalid_body")

    if not req.prompt.strip():
        raise InvalidRequest("prompt must not be empty", code="empty_prompt")

    logger.info(f"[Image Gen] 收到 Images 请求: model={req.model}, n={req.n}, size={req.size}")
    urls = await generate_images(runtime, req.prompt, req.model)
    return build_images_response(urls)


@router.get("/")
def root():
    return LIVENESS_BODY


@router.get("/healthz")
def health_check():
    return {"status": "ok", "service": "Merlin2Api"}


@router.post("/v1/chat/completions")
async def chat_completions(request: Request):
    return await _chat_completions(request, get_runtime(request))


@router.post("/v1/images/generations")
async def image_generations(request: Request):
    return await _image_generations(request, get_runtime(request))


@router.api_route("/{path:path}", methods=CATCH_ALL_METHODS)
async def catch_all(path: str, request: Request):
    """Alternate prefixes for the two API paths, 405 for wrong methods, liveness for the rest."""
    kind = _api_kind(path)
    if kind is None:
        return LIVENESS_BODY
    if request.method != "POST":
        logger.warning(f"[OpenAI Compat] 不支持的请求方法: {request.method} /{path}")
        raise MethodNotAllowed(request.method)
    runtime = get_runtime(request)
    if kind == "chat":
        return await _chat_completions(request, runtime)
    return await _image_generations(request, runtime)
