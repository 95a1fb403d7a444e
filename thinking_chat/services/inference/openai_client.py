import asyncio
import inspect
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass

import httpx
import structlog

from thinking_chat.config import settings
from thinking_chat.core.exceptions import (
    BackendUnavailableError,
    EndpointError,
    GenerationCancelled,
    StreamDecodeError,
)
from thinking_chat.schemas.chat import ChatMessage, ImagePart
from thinking_chat.schemas.models import ModelInfo
from thinking_chat.services.inference.base import (
    CompletionBackend,
    CompletionRequest,
    CompletionResult,
    TokenEvent,
    TokenSink,
)
from thinking_chat.services.sse import SSEBuffer, extract_stream_token

logger = structlog.get_logger()

CHAT_ENDPOINT = "chat/completions"
LEGACY_ENDPOINT = "completions"
IMAGE_OMITTED = "[Image omitted]"
# Substrings (lowercased) of a 400 body that mean "this model/endpoint pair is unsupported"
FALLBACK_BODY_MARKERS = ("does not exist", "unsupported")


# ── Message shaping ──────────────────────────────────────────────────────────


def to_upstream_messages(messages: list[ChatMessage]) -> list[dict]:
    """Render messages in the OpenAI chat shape, keeping image parts structured."""
    rendered = []
    for message in messages:
        if isinstance(message.content, str):
            rendered.append({"role": message.role, "content": message.content})
            continue
        parts = []
        for part in message.content:
            if isinstance(part, ImagePart):
                image_url = {"url": part.url}
                if part.detail:
                    image_url["detail"] = part.detail
                parts.append({"type": "image_url", "image_url": image_url})
            else:
                parts.append({"type": "text", "text": part.text})
        rendered.append({"role": message.role, "content": parts})
    return rendered


def flatten_prompt(messages: list[ChatMessage]) -> str:
    """Collapse a message list into one legacy-completions prompt string."""
    lines = []
    for message in messages:
        if isinstance(message.content, str):
            text = message.content
        else:
            text = "\n".join(
                IMAGE_OMITTED if isinstance(part, ImagePart) else part.text for part in message.content
            )
        lines.append(f"{message.role.upper()}: {text}")
    return "\n".join(lines)


def normalize_base_url(base_url: str | None) -> str:
    base = base_url or settings.chat_default_base_url
    return base[:-1] if base.endswith("/") else base


# ── Fallback policy ──────────────────────────────────────────────────────────


def should_fall_back(error: EndpointError) -> bool:
    if error.upstream_status == 404:
        return True
    if error.upstream_status == 400:
        body = error.body.lower()
        return any(marker in body for marker in FALLBACK_BODY_MARKERS)
    return False


@dataclass(frozen=True)
class Attempt:
    """One upstream call plus the policy deciding what to try if it fails."""

    endpoint: str
    body: dict
    fallback: Callable[[EndpointError], "Attempt | None"] | None = None

    def next_after(self, error: EndpointError) -> "Attempt | None":
        return self.fallback(error) if self.fallback else None


def build_attempts(request: CompletionRequest, stream: bool) -> Attempt:
    temperature = request.temperature if request.temperature is not None else settings.chat_default_temperature
    legacy = Attempt(
        endpoint=LEGACY_ENDPOINT,
        body={
            "model": request.model,
            "temperature": temperature,
            "prompt": flatten_prompt(request.messages),
            "max_tokens": settings.chat_legacy_max_tokens,
            "stream": stream,
        },
    )
    return Attempt(
        endpoint=CHAT_ENDPOINT,
        body={
            "model": request.model,
            "temperature": temperature,
            "messages": to_upstream_messages(request.messages),
            "stream": stream,
        },
        fallback=lambda error: legacy if should_fall_back(error) else None,
    )


# ── Response parsing ─────────────────────────────────────────────────────────


def _first_text(*candidates) -> str:
    for candidate in candidates:
        if isinstance(candidate, str) and candidate:
            return candidate
    return ""


def parse_completion(data: dict) -> CompletionResult:
    """Normalize a chat or legacy completion response body."""
    choices = data.get("choices") or []
    choice = choices[0] if choices and isinstance(choices[0], dict) else {}
    message = choice.get("message") if isinstance(choice.get("message"), dict) else {}
    delta = choice.get("delta") if isinstance(choice.get("delta"), dict) else {}
    content = _first_text(message.get("content"), choice.get("text"), delta.get("content"))
    usage = data.get("usage") if isinstance(data.get("usage"), dict) else None
    return CompletionResult(content=content, usage=usage)


def _decode_chunk(block: str) -> str | None:
    try:
        return extract_stream_token(block)
    except StreamDecodeError as exc:
        # A dropped token beats aborting an otherwise healthy stream
        logger.debug("sse_chunk_dropped", reason=str(exc))
        return None


def _raise_if_cancelled(cancel_event: asyncio.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise GenerationCancelled()


# ── Client ───────────────────────────────────────────────────────────────────


class OpenAICompatibleClient(CompletionBackend):
    def __init__(self, http_client: httpx.AsyncClient | None = None):
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(
                connect=settings.chat_http_connect_timeout,
                read=settings.chat_http_read_timeout,
                write=5.0,
                pool=5.0,
            )
        )

    @staticmethod
    def _headers(api_key: str | None) -> dict:
        return {"Authorization": f"Bearer {api_key}"} if api_key else {}

    async def complete(
        self,
        request: CompletionRequest,
        on_token: TokenSink | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> CompletionResult:
        if on_token is None:
            response = await self._open(request, stream=False, cancel_event=cancel_event)
            try:
                body = await response.aread()
            except httpx.TimeoutException:
                raise BackendUnavailableError("Completion response timed out.")
            except httpx.TransportError as e:
                raise BackendUnavailableError(f"Completion response interrupted: {e}")
            finally:
                await response.aclose()
            try:
                data = response.json()
            except ValueError:
                raise EndpointError(response.status_code, body.decode("utf-8", errors="replace"))
            return parse_completion(data if isinstance(data, dict) else {})

        parts = []
        async for event in self.stream(request, cancel_event=cancel_event):
            parts.append(event.text)
            result = on_token(event.text)
            if inspect.isawaitable(result):
                await result
        return CompletionResult(content="".join(parts), usage=None)

    async def stream(
        self,
        request: CompletionRequest,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[TokenEvent]:
        response = await self._open(request, stream=True, cancel_event=cancel_event)
        buffer = SSEBuffer()
        try:
            try:
                async for data in response.aiter_bytes():
                    _raise_if_cancelled(cancel_event)
                    for block in buffer.feed(data):
                        token = _decode_chunk(block)
                        if token:
                            yield TokenEvent(token)
            except httpx.TimeoutException:
                raise BackendUnavailableError("Completion stream timed out.")
            except httpx.TransportError as e:
                raise BackendUnavailableError(f"Completion stream interrupted: {e}")
            for block in buffer.flush():
                token = _decode_chunk(block)
                if token:
                    yield TokenEvent(token)
        finally:
            await response.aclose()

    async def _open(
        self,
        request: CompletionRequest,
        stream: bool,
        cancel_event: asyncio.Event | None,
    ) -> httpx.Response:
        """Send attempts in order until one succeeds or the policy gives up."""
        base_url = normalize_base_url(request.base_url)
        headers = self._headers(request.api_key)
        attempt = build_attempts(request, stream=stream)

        while True:
            _raise_if_cancelled(cancel_event)
            url = f"{base_url}/{attempt.endpoint}"
            try:
                http_request = self._client.build_request("POST", url, json=attempt.body, headers=headers)
                response = await self._client.send(http_request, stream=True)
            except httpx.ConnectError as e:
                raise BackendUnavailableError(f"Cannot connect to completion endpoint at {base_url}: {e}")
            except httpx.TimeoutException:
                raise BackendUnavailableError("Completion request timed out.")

            if response.is_success:
                return response

            try:
                body = (await response.aread()).decode("utf-8", errors="replace")
            finally:
                await response.aclose()
            error = EndpointError(response.status_code, body, endpoint=attempt.endpoint)

            next_attempt = attempt.next_after(error)
            if next_attempt is None:
                logger.warning(
                    "completion_failed",
                    endpoint=attempt.endpoint,
                    status=response.status_code,
                    model=request.model,
                )
                raise error
            logger.info(
                "completion_fallback",
                from_endpoint=attempt.endpoint,
                to_endpoint=next_attempt.endpoint,
                status=response.status_code,
                model=request.model,
            )
            attempt = next_attempt

    async def list_models(self, base_url: str | None = None, api_key: str | None = None) -> list[ModelInfo]:
        """List models from ``GET {base}/models``."""
        url = f"{normalize_base_url(base_url)}/models"
        try:
            response = await self._client.get(url, headers=self._headers(api_key))
        except (httpx.ConnectError, httpx.TimeoutException) as e:
            raise BackendUnavailableError(f"Cannot reach completion endpoint: {e}")
        if not response.is_success:
            raise EndpointError(response.status_code, response.text, endpoint="models")

        models = []
        for entry in response.json().get("data", []):
            if not isinstance(entry, dict) or not entry.get("id"):
                continue
            models.append(ModelInfo(
                id=entry["id"],
                display_name=entry.get("name") or entry.get("display_name") or entry["id"],
                provider=entry.get("owned_by") or entry.get("provider") or "remote",
            ))
        return models

    async def close(self):
        """Close the underlying HTTP client."""
        await self._client.aclose()
