from fastapi import APIRouter, Depends, Query

from thinking_chat.dependencies import get_completion_backend, get_model_catalog
from thinking_chat.schemas.chat import ChatSettings
from thinking_chat.schemas.models import ModelCreate, ModelListResponse
from thinking_chat.services.inference.base import CompletionBackend
from thinking_chat.services.model_catalog import ModelCatalog
from thinking_chat.services.settings_store import SettingsStore

router = APIRouter()

_settings_store = SettingsStore()


@router.get("/api/models")
async def list_models(catalog: ModelCatalog = Depends(get_model_catalog)) -> ModelListResponse:
    """List models in the workspace catalog."""
    await catalog.ensure_seeded()
    return ModelListResponse(models=await catalog.list_models())


@router.post("/api/models", status_code=201)
async def add_model(
    body: ModelCreate,
    catalog: ModelCatalog = Depends(get_model_catalog),
) -> ModelListResponse:
    """Add or update a catalog entry."""
    await catalog.upsert_model(body.id, body.display_name, body.provider)
    return ModelListResponse(models=await catalog.list_models())


@router.get("/api/models/remote")
async def list_remote_models(
    base_url: str | None = Query(None, alias="baseUrl"),
    backend: CompletionBackend = Depends(get_completion_backend),
) -> ModelListResponse:
    """List models advertised by the upstream endpoint (``GET {base}/models``)."""
    resolved = await _settings_store.apply_defaults(ChatSettings(base_url=base_url))
    return ModelListResponse(models=await backend.list_models(resolved.base_url, resolved.api_key))
