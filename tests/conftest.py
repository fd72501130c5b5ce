"""Shared pytest fixtures for all test suites."""

import os
from collections.abc import AsyncGenerator, Callable
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

from backend.docassist.config import Settings
from backend.docassist.db.engine import ensure_schema
from backend.docassist.db.inmemory import InMemoryMetadataStore
from backend.docassist.db.models import Base
from backend.docassist.db.sql_repositories import SqlMetadataStore
from backend.docassist.knowledge.engine import DocAssistEngine
from backend.docassist.llm.client import InMemoryKnowledgeService


def make_settings(**overrides: object) -> Settings:
    """Settings isolated from the environment and any .env file."""
    values: dict[str, object] = {"database_url": None, "openai_api_key": None}
    values.update(overrides)
    return Settings(_env_file=None, **values)  # type: ignore[arg-type]


@pytest.fixture
def settings_factory() -> Callable[..., Settings]:
    return make_settings


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def service() -> InMemoryKnowledgeService:
    return InMemoryKnowledgeService()


@pytest.fixture
def memory_store() -> InMemoryMetadataStore:
    return InMemoryMetadataStore()


@pytest.fixture
def engine(
    memory_store: InMemoryMetadataStore, service: InMemoryKnowledgeService, settings: Settings
) -> DocAssistEngine:
    """Engine over the in-memory store and service."""
    return DocAssistEngine(memory_store, service, settings)


@pytest_asyncio.fixture
async def sqlite_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """Async SQLite engine on a temp-file database.

    A file database (not :memory:) so every pooled connection sees the same data.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'docassist.db'}",
        poolclass=NullPool,
        echo=False,
    )
    await ensure_schema(engine)

    yield engine

    await engine.dispose()


@pytest.fixture
def sql_store(sqlite_engine: AsyncEngine) -> SqlMetadataStore:
    return SqlMetadataStore(sqlite_engine)


@pytest_asyncio.fixture
async def postgres_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create async engine for PostgreSQL integration tests.

    Requires DATABASE_URL to be set to a real PostgreSQL connection string.
    Tests using this fixture should be marked with @pytest.mark.postgres.
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        pytest.skip("DATABASE_URL not set - skipping postgres test")

    # Ensure it's a postgres URL
    if not database_url.startswith(("postgresql://", "postgresql+asyncpg://")):
        pytest.skip(f"DATABASE_URL is not PostgreSQL: {database_url}")

    # Convert to async driver if needed
    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)

    engine = create_async_engine(database_url, poolclass=NullPool, echo=False)
    await ensure_schema(engine)

    yield engine

    # Cleanup: drop all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()
