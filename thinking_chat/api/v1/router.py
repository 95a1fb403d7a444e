from fastapi import APIRouter

from thinking_chat.api.v1.chat import router as chat_router
from thinking_chat.api.v1.conversations import router as conversations_router
from thinking_chat.api.v1.health import router as health_router
from thinking_chat.api.v1.media import router as media_router
from thinking_chat.api.v1.models import router as models_router
from thinking_chat.api.v1.settings import router as settings_router
from thinking_chat.api.v1.workspace import router as workspace_router

v1_router = APIRouter()

v1_router.include_router(chat_router, tags=["Chat"])
v1_router.include_router(conversations_router, tags=["Conversations"])
v1_router.include_router(models_router, tags=["Models"])
v1_router.include_router(settings_router, tags=["Settings"])
v1_router.include_router(workspace_router, tags=["Workspace"])
v1_router.include_router(media_router, tags=["Media"])
v1_router.include_router(health_router, tags=["Health"])
