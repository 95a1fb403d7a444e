from contextlib import asynccontextmanager

import httpx
import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from thinking_chat.api.v1.router import v1_router
from thinking_chat.config import settings
from thinking_chat.core.database import close_db, init_db
from thinking_chat.core.exceptions import ChatServiceError, chat_error_handler
from thinking_chat.core.middleware import RequestLoggingMiddleware
from thinking_chat.services.inference.openai_client import OpenAICompatibleClient
from thinking_chat.services.model_catalog import ModelCatalog
from thinking_chat.services.streaming import GenerationRegistry

_NAME_TO_LEVEL = {
    "debug": 10,
    "info": 20,
    "warning": 30,
    "warn": 30,
    "error": 40,
    "critical": 50,
}

structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        _NAME_TO_LEVEL.get(settings.chat_log_level.lower(), 20)
    ),
)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    await init_db()

    # One pooled client for every upstream call; the streaming read timeout is generous.
    http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(
            connect=settings.chat_http_connect_timeout,
            read=settings.chat_http_read_timeout,
            write=5.0,
            pool=5.0,
        )
    )
    backend = OpenAICompatibleClient(http_client=http_client)
    app.state.completion_backend = backend
    app.state.generation_registry = GenerationRegistry()

    catalog = ModelCatalog()
    await catalog.ensure_seeded()
    app.state.model_catalog = catalog

    logger.info(
        "chat_backend_starting",
        default_base_url=settings.chat_default_base_url,
        default_model=settings.chat_default_model,
    )
    yield

    await backend.close()
    await close_db()
    logger.info("chat_backend_stopping")


app = FastAPI(
    title="Thinking Chat Backend",
    description="Chat orchestration with an optional reasoning pass, streamed over SSE",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_exception_handler(ChatServiceError, chat_error_handler)

# Starlette: last-added = outermost, so request logging wraps CORS.
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.chat_cors_origins.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Chat-Stream-Id"],
)
app.add_middleware(RequestLoggingMiddleware)

app.include_router(v1_router)


@app.get("/")
async def root():
    return {"service": "thinking-chat", "version": "0.1.0"}
