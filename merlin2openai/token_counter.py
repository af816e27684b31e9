"""Token 计数工具模块
使用 tiktoken 库为 OpenAI 兼容响应计算 usage
"""

from typing import Dict

import tiktoken

from merlinapi.core.logging import logger

# Merlin 背后的模型统一按 cl100k_base 估算
DEFAULT_ENCODING = "cl100k_base"

_encoder = None
_encoder_failed = False


def get_encoder():
    """Return the shared encoder, or None when it cannot be loaded (e.g. offline)."""
    global _encoder, _encoder_failed
    if _encoder is None and not _encoder_failed:
        try:
            _encoder = tiktoken.get_encoding(DEFAULT_ENCODING)
            logger.info(f"[TokenCounter] 已加载编码器 {DEFAULT_ENCODING}")
        except Exception as e:
            _encoder_failed = True
            logger.warning(f"[TokenCounter] 获取编码器失败: {e}，改用字符数估算")
    return _encoder


def estimate_tokens_fallback(text: str) -> int:
    # 平均每个 token 约 4 个字符
    return max(len(text) // 4, 1) if text else 0


def count_tokens(text: str, use_tiktoken: bool = True) -> int:
    if not text:
        return 0
    encoder = get_encoder() if use_tiktoken else None
    if encoder is None:
        return estimate_tokens_fallback(text)
    return len(encoder.encode(text))


def build_usage(prompt: str, completion: str, use_tiktoken: bool = True) -> Dict[str, int]:
    prompt_tokens = count_tokens(prompt, use_tiktoken)
    completion_tokens = count_tokens(completion, use_tiktoken)
    return {
        "prompt_tokens": prompt_tokens,
        "completion_tokens": completion_tokens,
        "total_tokens": prompt_tokens + completion_tokens,
    }
