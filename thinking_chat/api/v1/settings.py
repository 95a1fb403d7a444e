from fastapi import APIRouter

from thinking_chat.schemas.settings import SettingsResponse, SettingsUpdate
from thinking_chat.services.settings_store import SettingsStore

router = APIRouter()

_service = SettingsStore()


@router.get("/api/settings")
async def get_settings() -> SettingsResponse:
    """Stored connection defaults. Reports whether an API key is set, never the key."""
    return await _service.get_settings()


@router.put("/api/settings")
async def update_settings(body: SettingsUpdate) -> SettingsResponse:
    """Update stored defaults; blank values clear a field, ``clearApiKey`` drops the key."""
    return await _service.update_settings(body)
