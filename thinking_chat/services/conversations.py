import json
import uuid
from datetime import datetime, timezone

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

import thinking_chat.core.database as db_module
from thinking_chat.core.database import Conversation, Message, ModelEntry, ThinkingRun, utcnow
from thinking_chat.core.exceptions import NotFoundError
from thinking_chat.schemas.conversations import (
    ConversationResponse,
    ConversationSummary,
    MessageMetadata,
    MessageResponse,
    ThinkingRunResponse,
)

PLACEHOLDER_TITLE = "New conversation"


def to_iso(dt: datetime) -> str:
    """Render a stored naive-UTC timestamp as ISO-8601 with a Z suffix."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def to_naive_utc(value: datetime | str) -> datetime:
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _message_to_response(msg: Message) -> MessageResponse:
    metadata = None
    if msg.metadata_json:
        metadata = MessageMetadata.model_validate(json.loads(msg.metadata_json))
    return MessageResponse(
        id=msg.id,
        conversation_id=msg.conversation_id,
        role=msg.role,
        content=msg.content,
        created_at=to_iso(msg.created_at),
        metadata=metadata,
        seq=msg.seq,
    )


def _next_seq(model):
    # Evaluated inside the INSERT itself, so concurrent writers cannot share a value
    return select(func.coalesce(func.max(model.seq), 0) + 1).scalar_subquery()


def _run_to_response(run: ThinkingRun) -> ThinkingRunResponse:
    return ThinkingRunResponse(
        id=run.id,
        conversation_id=run.conversation_id,
        model_id=run.model_id,
        output=run.output,
        created_at=to_iso(run.created_at),
        message_id=run.message_id,
    )


class ConversationStore:
    """Persistence contract used by the chat orchestrator and the HTTP API.

    Every insert or delete of a message or thinking run touches the parent
    conversation's updated_at. Reads always hit the database; nothing is cached.
    """

    def __init__(self, session_factory: async_sessionmaker | None = None):
        self._session_factory_override = session_factory

    @property
    def _session_factory(self) -> async_sessionmaker:
        return self._session_factory_override or db_module.async_session

    # ── Conversations ────────────────────────────────────────────────────────

    async def create_conversation(self, title: str, model_id: str) -> str:
        now = utcnow()
        conv = Conversation(
            id=str(uuid.uuid4()),
            title=title,
            model_id=model_id,
            created_at=now,
            updated_at=now,
        )
        async with self._session_factory() as session:
            session.add(conv)
            await session.commit()
        return conv.id

    async def conversation_exists(self, conversation_id: str) -> bool:
        async with self._session_factory() as session:
            found = await session.scalar(select(Conversation.id).where(Conversation.id == conversation_id))
            return found is not None

    async def update_conversation_model(self, conversation_id: str, model_id: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(Conversation)
                .where(Conversation.id == conversation_id)
                .values(model_id=model_id)
            )
            await session.commit()

    async def update_conversation_title(self, conversation_id: str, title: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(Conversation)
                .where(Conversation.id == conversation_id)
                .values(title=title)
            )
            await session.commit()

    async def get_conversation_title(self, conversation_id: str) -> str | None:
        async with self._session_factory() as session:
            return await session.scalar(select(Conversation.title).where(Conversation.id == conversation_id))

    async def get_conversation(self, conversation_id: str) -> ConversationResponse | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Conversation, ModelEntry.display_name)
                .outerjoin(ModelEntry, ModelEntry.id == Conversation.model_id)
                .where(Conversation.id == conversation_id)
            )
            row = result.first()
            if row is None:
                return None
            conv, model_label = row

            msg_result = await session.execute(
                select(Message)
                .where(Message.conversation_id == conversation_id)
                .order_by(Message.created_at.asc(), Message.seq.asc())
            )
            messages = list(msg_result.scalars().all())

        return ConversationResponse(
            id=conv.id,
            title=conv.title,
            model_id=conv.model_id,
            model_label=model_label or conv.model_id,
            created_at=to_iso(conv.created_at),
            updated_at=to_iso(conv.updated_at),
            messages=[_message_to_response(m) for m in messages],
        )

    async def list_conversations(self) -> list[ConversationResponse]:
        """All conversations with their messages, most recently updated first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Conversation.id).order_by(Conversation.updated_at.desc())
            )
            ids = list(result.scalars().all())

        conversations = []
        for conversation_id in ids:
            conv = await self.get_conversation(conversation_id)
            if conv is not None:
                conversations.append(conv)
        return conversations

    async def list_conversation_summaries(self, limit: int = 50, offset: int = 0) -> list[ConversationSummary]:
        async with self._session_factory() as session:
            count_subq = (
                select(Message.conversation_id, func.count().label("message_count"))
                .group_by(Message.conversation_id)
                .subquery()
            )
            stmt = (
                select(Conversation, count_subq.c.message_count)
                .outerjoin(count_subq, count_subq.c.conversation_id == Conversation.id)
                .order_by(Conversation.updated_at.desc())
                .limit(limit)
                .offset(offset)
            )
            result = await session.execute(stmt)
            return [
                ConversationSummary(
                    id=conv.id,
                    title=conv.title,
                    model_id=conv.model_id,
                    created_at=to_iso(conv.created_at),
                    updated_at=to_iso(conv.updated_at),
                    message_count=count or 0,
                )
                for conv, count in result.all()
            ]

    async def delete_conversation(self, conversation_id: str) -> None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Conversation).where(Conversation.id == conversation_id)
            )
            if result.scalar_one_or_none() is None:
                raise NotFoundError(f"Conversation {conversation_id} not found.")

            # SQLite does not enforce ON DELETE CASCADE without a pragma
            await session.execute(delete(ThinkingRun).where(ThinkingRun.conversation_id == conversation_id))
            await session.execute(delete(Message).where(Message.conversation_id == conversation_id))
            await session.execute(delete(Conversation).where(Conversation.id == conversation_id))
            await session.commit()

    # ── Messages ─────────────────────────────────────────────────────────────

    async def get_message(self, message_id: str) -> MessageResponse | None:
        async with self._session_factory() as session:
            result = await session.execute(select(Message).where(Message.id == message_id))
            msg = result.scalar_one_or_none()
            return _message_to_response(msg) if msg else None

    async def insert_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        metadata: dict | None = None,
        created_at: datetime | str | None = None,
    ) -> str:
        created = to_naive_utc(created_at) if created_at is not None else utcnow()
        async with self._session_factory() as session:
            msg = Message(
                id=str(uuid.uuid4()),
                conversation_id=conversation_id,
                seq=_next_seq(Message),
                role=role,
                content=content,
                metadata_json=json.dumps(metadata) if metadata else None,
                created_at=created,
            )
            session.add(msg)
            await self._touch(session, conversation_id, created)
            await session.commit()
        return msg.id

    async def update_message_metadata(self, message_id: str, metadata: dict | None) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(Message)
                .where(Message.id == message_id)
                .values(metadata_json=json.dumps(metadata) if metadata else None)
            )
            await session.commit()

    async def delete_messages_after(
        self,
        conversation_id: str,
        timestamp: datetime | str,
        from_seq: int | None = None,
    ) -> int:
        """Delete messages created at or after ``timestamp``.

        With ``from_seq``, rows sharing the exact timestamp survive only when
        they were inserted before the row carrying that sequence number.
        """
        cutoff = to_naive_utc(timestamp)
        async with self._session_factory() as session:
            result = await session.execute(
                delete(Message).where(
                    Message.conversation_id == conversation_id,
                    self._truncation_clause(cutoff, from_seq),
                )
            )
            await self._touch(session, conversation_id, utcnow())
            await session.commit()
            return result.rowcount or 0

    # ── Thinking runs ────────────────────────────────────────────────────────

    async def insert_thinking_run(
        self,
        conversation_id: str,
        model_id: str,
        output: str,
        system_prompt: str | None = None,
        created_at: datetime | str | None = None,
    ) -> str:
        created = to_naive_utc(created_at) if created_at is not None else utcnow()
        async with self._session_factory() as session:
            run = ThinkingRun(
                id=str(uuid.uuid4()),
                conversation_id=conversation_id,
                seq=_next_seq(ThinkingRun),
                model_id=model_id,
                output=output,
                system_prompt=system_prompt,
                created_at=created,
            )
            session.add(run)
            await self._touch(session, conversation_id, created)
            await session.commit()
        return run.id

    async def update_thinking_run_message(self, run_id: str, message_id: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(ThinkingRun).where(ThinkingRun.id == run_id).values(message_id=message_id)
            )
            await session.commit()

    async def get_thinking_run(self, run_id: str) -> ThinkingRunResponse | None:
        async with self._session_factory() as session:
            result = await session.execute(select(ThinkingRun).where(ThinkingRun.id == run_id))
            run = result.scalar_one_or_none()
            return _run_to_response(run) if run else None

    async def list_thinking_runs(self) -> dict[str, list[ThinkingRunResponse]]:
        """Thinking runs grouped by conversation id, oldest first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(ThinkingRun).order_by(ThinkingRun.created_at.asc(), ThinkingRun.seq.asc())
            )
            grouped: dict[str, list[ThinkingRunResponse]] = {}
            for run in result.scalars().all():
                grouped.setdefault(run.conversation_id, []).append(_run_to_response(run))
            return grouped

    async def delete_thinking_runs_after(
        self,
        conversation_id: str,
        timestamp: datetime | str,
        from_seq: int | None = None,
    ) -> int:
        """Delete runs created at or after ``timestamp``, plus runs linked to
        messages that the same truncation removes.

        Must run before ``delete_messages_after`` so the linked rows can still
        be found.
        """
        cutoff = to_naive_utc(timestamp)
        truncated_messages = select(Message.id).where(
            Message.conversation_id == conversation_id,
            self._truncation_clause(cutoff, from_seq),
        )
        async with self._session_factory() as session:
            result = await session.execute(
                delete(ThinkingRun).where(
                    ThinkingRun.conversation_id == conversation_id,
                    or_(
                        ThinkingRun.created_at >= cutoff,
                        ThinkingRun.message_id.in_(truncated_messages),
                    ),
                )
            )
            await self._touch(session, conversation_id, utcnow())
            await session.commit()
            return result.rowcount or 0

    # ── Helpers ──────────────────────────────────────────────────────────────

    @staticmethod
    def _truncation_clause(cutoff: datetime, from_seq: int | None):
        if from_seq is None:
            return Message.created_at >= cutoff
        return or_(
            Message.created_at > cutoff,
            and_(Message.created_at == cutoff, Message.seq >= from_seq),
        )

    @staticmethod
    async def _touch(session, conversation_id: str, when: datetime) -> None:
        await session.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values(updated_at=when)
        )
