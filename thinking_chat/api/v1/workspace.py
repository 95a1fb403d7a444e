from fastapi import APIRouter, Depends

from thinking_chat.dependencies import get_model_catalog
from thinking_chat.schemas.workspace import WorkspaceSnapshot
from thinking_chat.services.conversations import ConversationStore
from thinking_chat.services.model_catalog import ModelCatalog

router = APIRouter()

_store = ConversationStore()


@router.get("/api/workspace")
async def get_workspace(catalog: ModelCatalog = Depends(get_model_catalog)) -> WorkspaceSnapshot:
    """Everything the chat UI needs on first load."""
    await catalog.ensure_seeded()
    return WorkspaceSnapshot(
        models=await catalog.list_models(),
        conversations=await _store.list_conversations(),
        thinking_runs=await _store.list_thinking_runs(),
    )
