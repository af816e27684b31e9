from __future__ import annotations

import time
from typing import Any, Dict, List, Optional

from merlinapi.core.exceptions import NoImageProduced
from merlinapi.core.logging import logger
from merlinapi.merlin.api_client import collect_image_urls

from .packets import build_image_packet, resolve_image_model
from .state import BridgeRuntime

# chat 兼容路径最多内嵌的图片数
CHAT_EMBED_LIMIT = 2


def select_single_image(urls: List[str]) -> str:
    """Images API path returns the last URL seen."""
    if not urls:
        raise NoImageProduced()
    return urls[-1]


def markdown_for_images(urls: List[str], limit: int = CHAT_EMBED_LIMIT) -> str:
    if not urls:
        raise NoImageProduced()
    return "\n\n".join(f"![Generated Image]({url})" for url in urls[:limit])


def build_images_response(urls: List[str], created_ts: Optional[int] = None) -> Dict[str, Any]:
    return {
        "created": created_ts if created_ts is not None else int(time.time()),
        "data": [{"url": select_single_image(urls)}],
    }


async def generate_images(runtime: BridgeRuntime, prompt: str, model: Optional[str]) -> List[str]:
    model_id = resolve_image_model(model or "")
    logger.info(f"[Image Gen] 开始生成图片: model={model_id}, prompt={prompt[:80]!r}")
    packet = build_image_packet(prompt, model_id, runtime.settings)
    return await collect_image_urls(
        runtime.http_client,
        runtime.image_credentials,
        runtime.settings,
        packet,
    )
