import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass

from thinking_chat.schemas.chat import ChatMessage
from thinking_chat.schemas.models import ModelInfo

TokenSink = Callable[[str], Awaitable[None] | None]


@dataclass
class CompletionRequest:
    model: str
    messages: list[ChatMessage]
    base_url: str | None = None
    api_key: str | None = None
    temperature: float | None = None


@dataclass
class CompletionResult:
    content: str
    usage: dict | None = None


@dataclass(frozen=True)
class TokenEvent:
    text: str


class CompletionBackend(ABC):
    @abstractmethod
    async def complete(
        self,
        request: CompletionRequest,
        on_token: TokenSink | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> CompletionResult:
        """Run one completion; streams tokens into ``on_token`` when given."""
        ...

    @abstractmethod
    def stream(
        self,
        request: CompletionRequest,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[TokenEvent]:
        """Yield token events in arrival order. Finite, not restartable."""
        ...

    @abstractmethod
    async def list_models(self, base_url: str | None = None, api_key: str | None = None) -> list[ModelInfo]:
        """List models advertised by the endpoint."""
        ...
