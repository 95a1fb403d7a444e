from thinking_chat.schemas.base import CamelModel


class SettingsUpdate(CamelModel):
    base_url: str | None = None
    api_key: str | None = None
    model: str | None = None
    thinking_prompt: str | None = None
    clear_api_key: bool = False


class SettingsResponse(CamelModel):
    """Stored defaults. The API key itself is never echoed, only its presence."""

    base_url: str | None = None
    model: str | None = None
    thinking_prompt: str | None = None
    api_key_set: bool = False
