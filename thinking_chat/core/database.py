import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from thinking_chat.config import settings


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime.datetime:
    """Naive UTC timestamp; all DateTime columns hold naive UTC values."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


# ── Models catalog ───────────────────────────────────────────────────────────


class ModelEntry(Base):
    __tablename__ = "models"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    display_name: Mapped[str] = mapped_column(String(255))
    provider: Mapped[str] = mapped_column(String(100), default="custom")
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=utcnow)


# ── Conversations ────────────────────────────────────────────────────────────


class Conversation(Base):
    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    title: Mapped[str] = mapped_column(String(500))
    model_id: Mapped[str] = mapped_column(String(255))
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=utcnow)


class Message(Base):
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    conversation_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("conversations.id", ondelete="CASCADE"), index=True
    )
    # Insertion order; breaks ties between rows sharing a created_at value
    seq: Mapped[int] = mapped_column(Integer, unique=True)
    role: Mapped[str] = mapped_column(String(20))
    content: Mapped[str] = mapped_column(Text)
    metadata_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=utcnow, index=True)


class ThinkingRun(Base):
    __tablename__ = "thinking_runs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    conversation_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("conversations.id", ondelete="CASCADE"), index=True
    )
    seq: Mapped[int] = mapped_column(Integer, unique=True)
    model_id: Mapped[str] = mapped_column(String(255))
    output: Mapped[str] = mapped_column(Text)
    system_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    message_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=utcnow, index=True)


# ── Stored settings ──────────────────────────────────────────────────────────


class StoredSettings(Base):
    __tablename__ = "settings"

    profile: Mapped[str] = mapped_column(String(64), primary_key=True)
    base_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    model: Mapped[str | None] = mapped_column(String(255), nullable=True)
    thinking_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    api_key_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )


# ── Engine & Session ──────────────────────────────────────────────────────────

engine = create_async_engine(settings.chat_db_url, echo=False)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db() -> None:
    """Create any missing tables."""
    if settings.chat_db_url.startswith("sqlite") and ":///" in settings.chat_db_url:
        from pathlib import Path

        db_path = settings.chat_db_url.split(":///", 1)[1]
        if db_path:
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine."""
    await engine.dispose()
