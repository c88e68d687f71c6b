"""SQLAlchemy models for the embedding store."""

from __future__ import annotations

from sqlalchemy import BigInteger, Index, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Single-sample-per-user table written by earlier releases.
LEGACY_TABLE = "faces"
SCHEMA_VERSION = 3


class Base(DeclarativeBase):
    """Base class for ORM models."""


class FaceSampleRow(Base):
    """One registered embedding, keyed by (user_id, sample_id)."""

    __tablename__ = "face_samples"
    __table_args__ = (Index("ix_face_samples_user_created", "user_id", "created_at"),)

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    sample_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    # JSON array of floats, in embedding order.
    embedding: Mapped[str] = mapped_column(Text, nullable=False)
    # Milliseconds since the Unix epoch.
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)


class StoreMeta(Base):
    """Key/value bookkeeping, currently just the schema version."""

    __tablename__ = "store_meta"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(String(255), nullable=False)
