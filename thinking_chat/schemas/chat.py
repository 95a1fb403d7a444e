from typing import Annotated, Literal

from pydantic import Field, model_validator

from thinking_chat.schemas.base import CamelModel
from thinking_chat.schemas.conversations import MessageResponse, ThinkingRunResponse


class TextPart(CamelModel):
    type: Literal["text"] = "text"
    text: str


class ImagePart(CamelModel):
    type: Literal["image_url"] = "image_url"
    url: str
    detail: str | None = None
    name: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _lift_nested_image_url(cls, data):
        # Accept the OpenAI shape {"type": "image_url", "image_url": {"url": ...}}
        if isinstance(data, dict) and isinstance(data.get("image_url"), dict):
            nested = data["image_url"]
            data = {k: v for k, v in data.items() if k != "image_url"}
            data.setdefault("url", nested.get("url"))
            if nested.get("detail") is not None:
                data.setdefault("detail", nested["detail"])
        return data


ContentPart = Annotated[TextPart | ImagePart, Field(discriminator="type")]
MessageContent = str | list[ContentPart]


class ChatMessage(CamelModel):
    role: Literal["user", "assistant", "system", "tool"]
    content: MessageContent


class ThinkingSettings(CamelModel):
    enabled: bool = False
    thinking_model: str = ""
    answer_model: str = ""
    system_prompt: str | None = None

    @model_validator(mode="after")
    def _models_required_when_enabled(self):
        if self.enabled and (not self.thinking_model.strip() or not self.answer_model.strip()):
            raise ValueError("thinkingModel and answerModel are required when thinking is enabled")
        return self


class ChatSettings(CamelModel):
    base_url: str | None = None
    api_key: str | None = None
    model: str = ""
    temperature: float | None = Field(default=None, ge=0, le=2)
    thinking: ThinkingSettings | None = None

    @property
    def thinking_enabled(self) -> bool:
        return bool(self.thinking and self.thinking.enabled)

    @property
    def final_model(self) -> str:
        """Model that produces the answer and is recorded on the conversation."""
        if self.thinking_enabled:
            return self.thinking.answer_model
        return self.model


class ChatRequest(CamelModel):
    conversation_id: str | None = None
    messages: list[ChatMessage]
    settings: ChatSettings
    regenerate_message_id: str | None = None


class OrchestratorResult(CamelModel):
    conversation_id: str
    message: MessageResponse
    thinking_run: ThinkingRunResponse | None = None


class CaptionRequest(CamelModel):
    image: str = Field(min_length=1, description="Base64-encoded image bytes")
    mime_type: str = Field(min_length=1)
    prompt: str | None = None
    settings: ChatSettings


class CaptionResponse(CamelModel):
    caption: str
