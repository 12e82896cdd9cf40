"""Relational schema for the tally store (SQLAlchemy Core).

Tables:
    tally            one row per candidate option, count >= 0
    processed        de-dup window: one row per counted envelope_id
    tally_version    single row (id=1) holding the TallyState version
    consumer_marker  ProcessedMarker per consumer

The primary key on processed.envelope_id is what makes concurrent
commits of the same envelope safe: the second insert fails and its
transaction rolls back.
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Text,
    Table,
)
from sqlalchemy.ext.asyncio import AsyncEngine

VERSION_ROW_ID = 1

metadata = MetaData()

tally_table = Table(
    "tally",
    metadata,
    Column("option", Text, primary_key=True),
    Column("count", Integer, nullable=False, default=0),
    CheckConstraint("count >= 0", name="ck_tally_count_non_negative"),
)

processed_table = Table(
    "processed",
    metadata,
    Column("envelope_id", Text, primary_key=True),
    Column("option", Text, nullable=False),
    Column("consumer_id", String(255), nullable=False),
    Column("processed_at", DateTime(timezone=True), nullable=False),
    Index("ix_processed_processed_at", "processed_at"),
)

tally_version_table = Table(
    "tally_version",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=False),
    Column("version", Integer, nullable=False, default=0),
    Column("updated_at", DateTime(timezone=True), nullable=True),
    CheckConstraint("version >= 0", name="ck_tally_version_non_negative"),
)

consumer_marker_table = Table(
    "consumer_marker",
    metadata,
    Column("consumer_id", String(255), primary_key=True),
    Column("last_envelope_id", Text, nullable=False),
    Column("committed_count", Integer, nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)


async def create_schema(engine: AsyncEngine) -> None:
    """Create all tally tables that do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


async def drop_schema(engine: AsyncEngine) -> None:
    """Drop all tally tables (tests only)."""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)
