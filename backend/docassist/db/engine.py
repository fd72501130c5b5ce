"""Database engine creation and schema bootstrap."""

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from backend.docassist.config import Settings
from backend.docassist.db.models import DOCS_FILES_UNIQUE_INDEX, Base, DocFile


def create_async_engine_from_settings(settings: Settings) -> AsyncEngine:
    """Create async SQLAlchemy engine from settings.

    Raises:
        ValueError: If DATABASE_URL is unset or empty.
    """
    database_url = settings.database_url

    if not database_url:
        raise ValueError(
            "DATABASE_URL must be set to a valid connection string. "
            "Please configure the database_url setting."
        )

    # Convert postgresql:// to postgresql+asyncpg://
    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)

    return create_async_engine(database_url, pool_pre_ping=True, echo=False)


async def ensure_schema(engine: AsyncEngine) -> None:
    """Create tables and enforce unit uniqueness.

    Legacy installs may hold duplicate (doc_id, kind, sha256) rows from before
    the unique index existed. Those are collapsed to the newest row per key
    before the index is created.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

        ranked = select(
            DocFile.id,
            func.row_number()
            .over(
                partition_by=(DocFile.doc_id, DocFile.kind, DocFile.sha256),
                order_by=(DocFile.created_at.desc(), DocFile.id.desc()),
            )
            .label("rn"),
        ).subquery()
        stale_ids = select(ranked.c.id).where(ranked.c.rn > 1)
        await conn.execute(delete(DocFile).where(DocFile.id.in_(stale_ids)))

        unique_index = next(
            index for index in DocFile.__table__.indexes if index.name == DOCS_FILES_UNIQUE_INDEX
        )
        await conn.run_sync(lambda sync_conn: unique_index.create(sync_conn, checkfirst=True))
