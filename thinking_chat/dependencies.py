from fastapi import Request

from thinking_chat.services.inference.base import CompletionBackend
from thinking_chat.services.model_catalog import ModelCatalog
from thinking_chat.services.streaming import GenerationRegistry


def get_completion_backend(request: Request) -> CompletionBackend:
    """Return the completion backend stored on app state during lifespan."""
    return request.app.state.completion_backend


def get_generation_registry(request: Request) -> GenerationRegistry:
    return request.app.state.generation_registry


def get_model_catalog(request: Request) -> ModelCatalog:
    return request.app.state.model_catalog
