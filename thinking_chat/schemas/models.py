from pydantic import Field

from thinking_chat.schemas.base import CamelModel


class ModelInfo(CamelModel):
    id: str
    display_name: str
    provider: str = "custom"
    updated_at: str | None = None


class ModelCreate(CamelModel):
    id: str = Field(min_length=1)
    display_name: str = Field(min_length=1)
    provider: str = "custom"


class ModelListResponse(CamelModel):
    models: list[ModelInfo]
