from typing import Literal

from pydantic import Field

from thinking_chat.schemas.base import CamelModel


class Attachment(CamelModel):
    url: str
    name: str | None = None


class MessageMetadata(CamelModel):
    attachments: list[Attachment] = Field(default_factory=list)


class MessageResponse(CamelModel):
    id: str
    conversation_id: str
    role: Literal["user", "assistant", "system", "tool"]
    content: str
    created_at: str  # ISO-8601 UTC
    metadata: MessageMetadata | None = None
    # Insertion order, used to break timestamp ties on truncation
    seq: int = Field(default=0, exclude=True)


class ThinkingRunResponse(CamelModel):
    id: str
    conversation_id: str
    model_id: str
    output: str
    created_at: str
    message_id: str | None = None


class ConversationCreate(CamelModel):
    title: str = Field(default="New conversation", min_length=1)
    model_id: str = Field(min_length=1)


class ConversationUpdate(CamelModel):
    title: str | None = Field(default=None, min_length=1)
    model_id: str | None = Field(default=None, min_length=1)


class ConversationSummary(CamelModel):
    id: str
    title: str
    model_id: str
    created_at: str
    updated_at: str
    message_count: int = 0


class ConversationResponse(CamelModel):
    id: str
    title: str
    model_id: str
    model_label: str | None = None
    created_at: str
    updated_at: str
    messages: list[MessageResponse]
