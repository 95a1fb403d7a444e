import asyncio
import inspect
import re
from collections.abc import Awaitable, Callable

import structlog

from thinking_chat.core.database import utcnow
from thinking_chat.core.exceptions import GenerationCancelled, NotFoundError
from thinking_chat.schemas.chat import ChatMessage, ChatRequest, ImagePart, OrchestratorResult
from thinking_chat.schemas.conversations import ThinkingRunResponse
from thinking_chat.services.conversations import PLACEHOLDER_TITLE, ConversationStore
from thinking_chat.services.inference.base import CompletionBackend, CompletionRequest, TokenSink

logger = structlog.get_logger()

DEFAULT_THINKING_PROMPT = (
    "You are an expert reasoning assistant. Think through the user's request in detail and provide a plan."
)
PRIOR_THINKING_PREFIX = "Prior thinking:\n"
IMAGE_TOKEN = "[Image]"
TITLE_MAX_LENGTH = 80
TITLE_ELLIPSIS = "…"


def canonical_text(message: ChatMessage) -> str:
    """Plain-text form of a message; image parts become ``[Image]``."""
    if isinstance(message.content, str):
        return message.content
    return "\n".join(
        IMAGE_TOKEN if isinstance(part, ImagePart) else part.text for part in message.content
    )


def extract_attachments(message: ChatMessage) -> list[dict]:
    if isinstance(message.content, str):
        return []
    attachments = []
    for part in message.content:
        if isinstance(part, ImagePart):
            attachment = {"url": part.url}
            if part.name:
                attachment["name"] = part.name
            attachments.append(attachment)
    return attachments


def message_text(message: ChatMessage) -> str:
    """Text-only content, ignoring image parts."""
    if isinstance(message.content, str):
        return message.content
    return " ".join(part.text for part in message.content if not isinstance(part, ImagePart))


def derive_title(text: str) -> str:
    """Collapse whitespace and cap at 80 characters, ellipsis included."""
    collapsed = re.sub(r"\s+", " ", text).strip()
    if not collapsed:
        return PLACEHOLDER_TITLE
    if len(collapsed) > TITLE_MAX_LENGTH:
        return collapsed[: TITLE_MAX_LENGTH - len(TITLE_ELLIPSIS)].rstrip() + TITLE_ELLIPSIS
    return collapsed


class ChatOrchestrator:
    """Runs one chat turn: optional thinking pass, then the answer pass.

    Steps, in order: resolve or create the conversation, retarget its model,
    truncate history on regenerate, persist the user turn, run and persist
    the thinking pass, run the answer pass, persist the answer and link the
    thinking run to it.

    Completion failures propagate unchanged. Whatever was persisted before
    the failing pass (user message, thinking run) is kept.
    """

    def __init__(self, store: ConversationStore, backend: CompletionBackend):
        self._store = store
        self._backend = backend

    async def run(
        self,
        request: ChatRequest,
        on_thinking_token: TokenSink | None = None,
        on_answer_token: TokenSink | None = None,
        cancel_event: asyncio.Event | None = None,
        on_thinking_complete: Callable[[ThinkingRunResponse], Awaitable[None] | None] | None = None,
        on_commit: Callable[[], None] | None = None,
    ) -> OrchestratorResult:
        chat_settings = request.settings
        final_model = chat_settings.final_model
        log = logger.bind(final_model=final_model, thinking=chat_settings.thinking_enabled)

        conversation_id = request.conversation_id
        if conversation_id is None:
            conversation_id = await self._store.create_conversation(PLACEHOLDER_TITLE, final_model)
            log.info("conversation_created", conversation_id=conversation_id)
        elif not await self._store.conversation_exists(conversation_id):
            raise NotFoundError(f"Conversation {conversation_id} not found.")
        await self._store.update_conversation_model(conversation_id, final_model)

        if request.regenerate_message_id:
            await self._truncate_for_regenerate(conversation_id, request.regenerate_message_id)
        else:
            await self._persist_user_turn(conversation_id, request.messages)

        thinking_output = None
        thinking_run_id = None
        if chat_settings.thinking_enabled:
            thinking = chat_settings.thinking
            system_prompt = DEFAULT_THINKING_PROMPT
            if thinking.system_prompt and thinking.system_prompt.strip():
                system_prompt = thinking.system_prompt
            thinking_result = await self._backend.complete(
                CompletionRequest(
                    model=thinking.thinking_model,
                    messages=[ChatMessage(role="system", content=system_prompt), *request.messages],
                    base_url=chat_settings.base_url,
                    api_key=chat_settings.api_key,
                    temperature=chat_settings.temperature,
                ),
                on_token=on_thinking_token,
                cancel_event=cancel_event,
            )
            self._check_cancelled(cancel_event)
            thinking_output = thinking_result.content
            thinking_run_id = await self._store.insert_thinking_run(
                conversation_id=conversation_id,
                model_id=thinking.thinking_model,
                output=thinking_output,
                system_prompt=system_prompt,
            )
            log.info("thinking_run_persisted", conversation_id=conversation_id, run_id=thinking_run_id)
            if on_thinking_complete is not None:
                run = await self._store.get_thinking_run(thinking_run_id)
                result = on_thinking_complete(run)
                if inspect.isawaitable(result):
                    await result

        answer_messages = list(request.messages)
        if thinking_output:
            answer_messages.append(
                ChatMessage(role="system", content=f"{PRIOR_THINKING_PREFIX}{thinking_output}")
            )

        completion = await self._backend.complete(
            CompletionRequest(
                model=final_model,
                messages=answer_messages,
                base_url=chat_settings.base_url,
                api_key=chat_settings.api_key,
                temperature=chat_settings.temperature,
            ),
            on_token=on_answer_token,
            cancel_event=cancel_event,
        )
        self._check_cancelled(cancel_event)
        # Past this point the turn is committed and a stop no longer applies
        if on_commit is not None:
            on_commit()

        created_at = utcnow()
        message_id = await self._store.insert_message(
            conversation_id=conversation_id,
            role="assistant",
            content=completion.content,
            created_at=created_at,
        )
        if thinking_run_id is not None:
            await self._store.update_thinking_run_message(thinking_run_id, message_id)

        message = await self._store.get_message(message_id)
        thinking_run = await self._store.get_thinking_run(thinking_run_id) if thinking_run_id else None
        log.info(
            "chat_turn_completed",
            conversation_id=conversation_id,
            message_id=message_id,
            usage=completion.usage,
        )
        return OrchestratorResult(
            conversation_id=conversation_id,
            message=message,
            thinking_run=thinking_run,
        )

    async def _truncate_for_regenerate(self, conversation_id: str, message_id: str) -> None:
        target = await self._store.get_message(message_id)
        if target is None or target.conversation_id != conversation_id:
            raise NotFoundError(f"Message {message_id} not found in conversation {conversation_id}.")
        # Runs first: the linked-run lookup needs the messages still present
        runs = await self._store.delete_thinking_runs_after(conversation_id, target.created_at, from_seq=target.seq)
        messages = await self._store.delete_messages_after(conversation_id, target.created_at, from_seq=target.seq)
        logger.info(
            "history_truncated",
            conversation_id=conversation_id,
            from_message_id=message_id,
            messages_deleted=messages,
            thinking_runs_deleted=runs,
        )

    async def _persist_user_turn(self, conversation_id: str, messages: list[ChatMessage]) -> None:
        latest_user = next((m for m in reversed(messages) if m.role == "user"), None)
        if latest_user is None:
            return

        message_id = await self._store.insert_message(
            conversation_id=conversation_id,
            role="user",
            content=canonical_text(latest_user),
        )
        attachments = extract_attachments(latest_user)
        if attachments:
            await self._store.update_message_metadata(message_id, {"attachments": attachments})

        # Titled by the first user turn that carries text; image-only turns leave the placeholder
        text = message_text(latest_user)
        if text.strip() and await self._store.get_conversation_title(conversation_id) == PLACEHOLDER_TITLE:
            await self._store.update_conversation_title(conversation_id, derive_title(text))

    @staticmethod
    def _check_cancelled(cancel_event: asyncio.Event | None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise GenerationCancelled()
