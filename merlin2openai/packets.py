from __future__ import annotations

import uuid
from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field

from merlinapi.config.settings import Settings


# 调用方模型名 → Merlin 图片模型 ID；未知名称原样透传
IMAGE_MODEL_TABLE: Dict[str, str] = {
    "flux-1.1-pro": "black-forest-labs/flux-1.1-pro",
    "flux-pro": "black-forest-labs/flux-1.1-pro",
    "dall-e-3": "black-forest-labs/flux-1.1-pro",
}
DEFAULT_IMAGE_MODEL = "flux-1.1-pro"


def resolve_image_model(model: str) -> str:
    if not model:
        return IMAGE_MODEL_TABLE[DEFAULT_IMAGE_MODEL]
    return IMAGE_MODEL_TABLE.get(model.lower(), model)


def is_image_model(model: str) -> bool:
    lowered = (model or "").lower()
    return any(alias in lowered for alias in IMAGE_MODEL_TABLE)


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


# ---------- /v1/thread/unified ----------

class MerlinChatMessage(_CamelModel):
    content: str
    context: str = ""
    child_id: str = Field(alias="childId")
    id: str
    parent_id: str = Field("root", alias="parentId")


class MerlinChatMetadata(_CamelModel):
    large_context: bool = Field(False, alias="largeContext")
    merlin_magic: bool = Field(False, alias="merlinMagic")
    pro_finder_mode: bool = Field(False, alias="proFinderMode")
    web_access: bool = Field(False, alias="webAccess")


class MerlinChatRequest(_CamelModel):
    attachments: List[Any] = Field(default_factory=list)
    chat_id: str = Field(alias="chatId")
    language: str = "AUTO"
    message: MerlinChatMessage
    metadata: MerlinChatMetadata = Field(default_factory=MerlinChatMetadata)
    mode: str = "UNIFIED_CHAT"
    model: str


def build_chat_packet(content: str, model: str, settings: Settings) -> Dict[str, Any]:
    request = MerlinChatRequest(
        chat_id=str(uuid.uuid1()),
        language=settings.language,
        message=MerlinChatMessage(
            content=content,
            child_id=str(uuid.uuid4()),
            id=str(uuid.uuid4()),
        ),
        metadata=MerlinChatMetadata(web_access=settings.web_access),
        model=model,
    )
    return request.to_payload()


# ---------- /web/v2/image-generation ----------

class MerlinImageMessageMetadata(_CamelModel):
    context: str = ""


class MerlinImageMessage(_CamelModel):
    attachments: List[Any] = Field(default_factory=list)
    content: str
    metadata: MerlinImageMessageMetadata = Field(default_factory=MerlinImageMessageMetadata)
    parent_id: str = Field(alias="parentId")
    role: str = "user"


class MerlinImageAction(_CamelModel):
    message: MerlinImageMessage
    type: str = "NEW"


class MerlinImageModelConfig(_CamelModel):
    aspect_ratio: str = Field("1:1", alias="aspectRatio")
    model_id: str = Field(alias="modelId")
    number_of_images: int = Field(1, alias="numberOfImages")


class MerlinImageSettings(_CamelModel):
    merlin_prompt_magic: bool = Field(False, alias="merlinPromptMagic")
    model_config_list: List[MerlinImageModelConfig] = Field(alias="modelConfig")
    negative_prompt: str = Field("", alias="negativePrompt")


class MerlinImageRequest(_CamelModel):
    action: MerlinImageAction
    chat_id: str = Field(alias="chatId")
    mode: str = "IMAGE_CHAT"
    settings: MerlinImageSettings


def build_image_packet(prompt: str, model_id: str, settings: Settings) -> Dict[str, Any]:
    request = MerlinImageRequest(
        action=MerlinImageAction(
            message=MerlinImageMessage(content=prompt, parent_id=str(uuid.uuid4())),
        ),
        chat_id=str(uuid.uuid4()),
        settings=MerlinImageSettings(
            model_config_list=[
                MerlinImageModelConfig(
                    aspect_ratio=settings.image_aspect_ratio,
                    model_id=model_id,
                    number_of_images=settings.image_variations,
                )
            ],
        ),
    )
    return request.to_payload()
