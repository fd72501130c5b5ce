"""SQLAlchemy ORM models for sessions, synchronized units and chat history."""

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func

DOCS_FILES_UNIQUE_INDEX = "docs_files_doc_id_kind_sha256_uidx"


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class DocSession(Base):
    """Session table - one row per owning document."""

    __tablename__ = "docs_sessions"

    doc_id: Mapped[str] = mapped_column(Text, primary_key=True)
    conversation_id: Mapped[str] = mapped_column(Text, nullable=False)
    vector_store_id: Mapped[str] = mapped_column(Text, nullable=False)
    instructions: Mapped[str | None] = mapped_column(Text, nullable=True)
    model: Mapped[str | None] = mapped_column(Text, nullable=True)
    doc_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    doc_summary_updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class DocFile(Base):
    """Synchronized unit table - content-addressed by (doc_id, kind, sha256)."""

    __tablename__ = "docs_files"
    __table_args__ = (
        Index(DOCS_FILES_UNIQUE_INDEX, "doc_id", "kind", "sha256", unique=True),
        Index("docs_files_doc_id_idx", "doc_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    doc_id: Mapped[str] = mapped_column(Text, nullable=False)
    kind: Mapped[str] = mapped_column(Text, nullable=False)
    filename: Mapped[str] = mapped_column(Text, nullable=False)
    sha256: Mapped[str] = mapped_column(Text, nullable=False)
    vector_store_file_id: Mapped[str] = mapped_column(Text, nullable=False)
    file_vector_store_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    file_vector_store_file_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class ChatHistory(Base):
    """Chat history table - append-only, trimmed to a bounded window per doc."""

    __tablename__ = "chat_history"
    __table_args__ = (Index("chat_history_doc_id_created_at_idx", "doc_id", "created_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    doc_id: Mapped[str] = mapped_column(Text, nullable=False)
    role: Mapped[str] = mapped_column(Text, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
