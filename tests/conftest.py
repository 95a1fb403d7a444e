import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from thinking_chat.core.database import Base
from thinking_chat.services.conversations import ConversationStore
from tests.mocks import fake_upstream


@pytest_asyncio.fixture
async def db_engine():
    """In-memory SQLite engine for tests."""
    engine = create_async_engine("sqlite+aiosqlite://", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def store(session_factory):
    """Conversation store bound to the in-memory engine."""
    return ConversationStore(session_factory=session_factory)


@pytest.fixture
def upstream_log():
    """Request bodies received by the fake upstream during one test."""
    fake_upstream.received.clear()
    yield fake_upstream.received
    fake_upstream.received.clear()


@pytest_asyncio.fixture
async def upstream_http_client():
    """httpx client that routes every request to the fake upstream in-process."""
    client = AsyncClient(transport=ASGITransport(app=fake_upstream.app))
    yield client
    await client.aclose()


@pytest_asyncio.fixture
async def app_with_db(db_engine, session_factory, upstream_http_client, upstream_log):
    """FastAPI app wired to the in-memory test database and the fake upstream."""
    import thinking_chat.core.database as db_module

    # Patch the module-level engine and session factory
    original_engine = db_module.engine
    original_session = db_module.async_session
    db_module.engine = db_engine
    db_module.async_session = session_factory

    from thinking_chat.main import app
    from thinking_chat.services.inference.openai_client import OpenAICompatibleClient
    from thinking_chat.services.model_catalog import ModelCatalog
    from thinking_chat.services.streaming import GenerationRegistry

    # ASGITransport skips lifespan, so wire app state by hand
    app.state.completion_backend = OpenAICompatibleClient(http_client=upstream_http_client)
    app.state.generation_registry = GenerationRegistry()
    app.state.model_catalog = ModelCatalog()
    await app.state.model_catalog.ensure_seeded()

    yield app

    db_module.engine = original_engine
    db_module.async_session = original_session


@pytest_asyncio.fixture
async def client(app_with_db):
    """Async HTTP client for the chat backend."""
    transport = ASGITransport(app=app_with_db)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
