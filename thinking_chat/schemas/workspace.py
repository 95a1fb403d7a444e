from pydantic import Field

from thinking_chat.schemas.base import CamelModel
from thinking_chat.schemas.conversations import ConversationResponse, ThinkingRunResponse
from thinking_chat.schemas.models import ModelInfo


class WorkspaceSnapshot(CamelModel):
    models: list[ModelInfo] = Field(default_factory=list)
    conversations: list[ConversationResponse] = Field(default_factory=list)
    thinking_runs: dict[str, list[ThinkingRunResponse]] = Field(default_factory=dict)
