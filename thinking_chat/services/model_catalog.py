import asyncio

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

import thinking_chat.core.database as db_module
from thinking_chat.core.database import ModelEntry, utcnow
from thinking_chat.schemas.models import ModelInfo
from thinking_chat.services.conversations import to_iso

logger = structlog.get_logger()

DEFAULT_MODELS: tuple[tuple[str, str, str], ...] = (
    ("gpt-4o-mini", "GPT-4o Mini", "openai"),
    ("gpt-4o", "GPT-4o", "openai"),
    ("qwen-plus", "Qwen Plus", "aliyun"),
)


def _entry_to_info(entry: ModelEntry) -> ModelInfo:
    return ModelInfo(
        id=entry.id,
        display_name=entry.display_name,
        provider=entry.provider,
        updated_at=to_iso(entry.updated_at),
    )


class ModelCatalog:
    """Models offered in the workspace picker.

    ``ensure_seeded`` inserts the default entries once per catalog instance;
    it never overwrites rows that already exist.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker | None = None,
        defaults: tuple[tuple[str, str, str], ...] = DEFAULT_MODELS,
    ):
        self._session_factory_override = session_factory
        self._defaults = defaults
        self._seeded = False
        self._seed_lock = asyncio.Lock()

    @property
    def _session_factory(self) -> async_sessionmaker:
        return self._session_factory_override or db_module.async_session

    async def ensure_seeded(self) -> None:
        if self._seeded:
            return
        async with self._seed_lock:
            if self._seeded:
                return
            inserted = 0
            async with self._session_factory() as session:
                existing = set((await session.execute(select(ModelEntry.id))).scalars().all())
                for model_id, display_name, provider in self._defaults:
                    if model_id in existing:
                        continue
                    session.add(ModelEntry(id=model_id, display_name=display_name, provider=provider))
                    inserted += 1
                await session.commit()
            self._seeded = True
            logger.info("model_catalog_seeded", inserted=inserted)

    async def list_models(self) -> list[ModelInfo]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ModelEntry).order_by(ModelEntry.updated_at.desc(), ModelEntry.id.asc())
            )
            return [_entry_to_info(entry) for entry in result.scalars().all()]

    async def upsert_model(self, model_id: str, display_name: str, provider: str = "custom") -> ModelInfo:
        async with self._session_factory() as session:
            entry = await session.get(ModelEntry, model_id)
            if entry is None:
                entry = ModelEntry(id=model_id, display_name=display_name, provider=provider)
                session.add(entry)
            else:
                entry.display_name = display_name
                entry.provider = provider
                entry.updated_at = utcnow()
            await session.commit()
            await session.refresh(entry)
            return _entry_to_info(entry)

