from __future__ import annotations

from typing import Any, Dict, List

from .models import ChatMessage


def normalize_content_to_list(content: Any) -> List[Dict[str, Any]]:
    segments: List[Dict[str, Any]] = []
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    if isinstance(content, list):
        for item in content:
            if isinstance(item, str):
                segments.append({"type": "text", "text": item})
            elif isinstance(item, dict):
                t = item.get("type") or ("text" if isinstance(item.get("text"), str) else None)
                if t == "text" and isinstance(item.get("text"), str):
                    segments.append({"type": "text", "text": item.get("text")})
        return segments
    if isinstance(content, dict) and isinstance(content.get("text"), str):
        return [{"type": "text", "text": content.get("text")}]
    return []


def segments_to_text(segments: List[Dict[str, Any]]) -> str:
    parts: List[str] = []
    for seg in segments:
        if isinstance(seg, dict) and seg.get("type") == "text" and isinstance(seg.get("text"), str):
            parts.append(seg.get("text") or "")
    return "".join(parts)


def last_message_text(messages: List[ChatMessage]) -> str:
    """Only the last message is forwarded upstream (no multi-turn context)."""
    if not messages:
        return ""
    return segments_to_text(normalize_content_to_list(messages[-1].content))
