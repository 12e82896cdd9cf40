"""SQL implementation of TallyStorePort (PostgreSQL or SQLite).

Commit Transaction:
    BEGIN
      SELECT 1 FROM processed WHERE envelope_id = :id      -- (a) de-dup
      UPDATE tally SET count = count + 1 WHERE option = :o  -- (b) increment
      INSERT INTO processed (envelope_id, ...)              -- (c) record
      UPDATE tally_version SET version = version + 1
      UPDATE/INSERT consumer_marker
      SELECT option, count FROM tally                       -- committed state
    COMMIT

Steps (a)-(c) always run inside one transaction. A concurrent commit of
the same envelope_id fails at (c) on the processed primary key and rolls
back, so it can never double count. Any exception inside the block rolls
the whole transaction back.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import (
    DataError,
    DBAPIError,
    IntegrityError,
    OperationalError,
    ProgrammingError,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from tallyflow.domain.errors import ConstraintViolationError, StorageUnavailableError
from tallyflow.domain.models.tally_state import (
    AlreadyProcessed,
    Committed,
    CommitResult,
    ProcessedMarker,
    TallyState,
)
from tallyflow.infrastructure.adapters.persistence.schema import (
    VERSION_ROW_ID,
    consumer_marker_table,
    processed_table,
    tally_table,
    tally_version_table,
)

logger = get_logger()


class _ProcessedConflict(Exception):
    """Another transaction recorded the envelope first (internal)."""


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo; every stored timestamp is UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SqlTallyStore:
    """Transactional tally store over an async SQLAlchemy session factory.

    Attributes:
        commit_timeout: Upper bound in seconds on one commit transaction.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        commit_timeout: float = 5.0,
    ) -> None:
        self._session_factory = session_factory
        self.commit_timeout = commit_timeout

    def _insert(self, session: AsyncSession, table: Any) -> Any:
        dialect = session.get_bind().dialect.name
        if dialect == "postgresql":
            return pg_insert(table)
        if dialect == "sqlite":
            return sqlite_insert(table)
        raise ValueError(f"Unsupported database dialect: {dialect!r}")

    async def ensure_options(self, options: frozenset[str]) -> None:
        """Create zero rows for new options and the version row."""
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    if options:
                        await session.execute(
                            self._insert(session, tally_table)
                            .values([{"option": o, "count": 0} for o in sorted(options)])
                            .on_conflict_do_nothing(index_elements=["option"])
                        )
                    await session.execute(
                        self._insert(session, tally_version_table)
                        .values(id=VERSION_ROW_ID, version=0, updated_at=None)
                        .on_conflict_do_nothing(index_elements=["id"])
                    )
        except IntegrityError:
            raise
        except (OperationalError, DBAPIError, OSError) as e:
            raise StorageUnavailableError("ensure_options", str(e)) from e

        logger.info("tally_options_ensured", options=sorted(options))

    async def commit(
        self,
        envelope_id: str,
        option: str,
        consumer_id: str = "default",
    ) -> CommitResult:
        """Atomically count one envelope.

        Raises:
            StorageUnavailableError: Connection loss, lock contention or
                commit timeout; nothing was applied.
            ConstraintViolationError: Unknown option, a failed check, or
                values the database refuses to store.
        """
        try:
            return await asyncio.wait_for(
                self._commit(envelope_id, option, consumer_id),
                timeout=self.commit_timeout,
            )
        except asyncio.TimeoutError as e:
            raise StorageUnavailableError(
                "commit", f"timed out after {self.commit_timeout}s"
            ) from e

    async def _commit(
        self, envelope_id: str, option: str, consumer_id: str
    ) -> CommitResult:
        log = logger.bind(envelope_id=envelope_id, option=option)
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    return await self._apply(session, envelope_id, option, consumer_id)
        except _ProcessedConflict:
            log.info("commit_lost_race", consumer_id=consumer_id)
            return AlreadyProcessed(envelope_id=envelope_id)
        except IntegrityError as e:
            raise ConstraintViolationError(envelope_id, "integrity", str(e.orig)) from e
        except (DataError, ProgrammingError) as e:
            # The database rejected the values or statement; retrying cannot help.
            log.error("commit_rejected_by_database", error=str(e))
            raise ConstraintViolationError(envelope_id, "data", str(e.orig)) from e
        except (OperationalError, DBAPIError, OSError) as e:
            log.warning("commit_storage_unavailable", error=str(e))
            raise StorageUnavailableError("commit", str(e)) from e

    async def _apply(
        self,
        session: AsyncSession,
        envelope_id: str,
        option: str,
        consumer_id: str,
    ) -> CommitResult:
        # (a) de-dup check
        seen = await session.execute(
            select(processed_table.c.envelope_id).where(
                processed_table.c.envelope_id == envelope_id
            )
        )
        if seen.first() is not None:
            return AlreadyProcessed(envelope_id=envelope_id)

        # (b) increment
        result = await session.execute(
            update(tally_table)
            .where(tally_table.c.option == option)
            .values(count=tally_table.c.count + 1)
        )
        if result.rowcount == 0:
            raise ConstraintViolationError(
                envelope_id, "tally_option_exists", f"no tally row for {option!r}"
            )

        # (c) record
        now = _utc_now()
        try:
            await self._insert_processed(session, envelope_id, option, consumer_id, now)
        except IntegrityError as e:
            raise _ProcessedConflict(envelope_id) from e

        await session.execute(
            update(tally_version_table)
            .where(tally_version_table.c.id == VERSION_ROW_ID)
            .values(version=tally_version_table.c.version + 1, updated_at=now)
        )
        await self._advance_marker(session, consumer_id, envelope_id, now)

        state = await self._read_state(session)
        return Committed(
            envelope_id=envelope_id,
            option=option,
            new_total=state.count_for(option),
            state=state,
        )

    async def _insert_processed(
        self,
        session: AsyncSession,
        envelope_id: str,
        option: str,
        consumer_id: str,
        processed_at: datetime,
    ) -> None:
        await session.execute(
            processed_table.insert().values(
                envelope_id=envelope_id,
                option=option,
                consumer_id=consumer_id,
                processed_at=processed_at,
            )
        )

    async def _advance_marker(
        self,
        session: AsyncSession,
        consumer_id: str,
        envelope_id: str,
        now: datetime,
    ) -> None:
        result = await session.execute(
            update(consumer_marker_table)
            .where(consumer_marker_table.c.consumer_id == consumer_id)
            .values(
                last_envelope_id=envelope_id,
                committed_count=consumer_marker_table.c.committed_count + 1,
                updated_at=now,
            )
        )
        if result.rowcount == 0:
            await session.execute(
                consumer_marker_table.insert().values(
                    consumer_id=consumer_id,
                    last_envelope_id=envelope_id,
                    committed_count=1,
                    updated_at=now,
                )
            )

    async def _read_state(self, session: AsyncSession) -> TallyState:
        rows = await session.execute(select(tally_table.c.option, tally_table.c.count))
        counts = {option: count for option, count in rows}
        version_row = (
            await session.execute(
                select(tally_version_table.c.version, tally_version_table.c.updated_at).where(
                    tally_version_table.c.id == VERSION_ROW_ID
                )
            )
        ).first()
        if version_row is None:
            return TallyState(counts=counts)
        return TallyState(
            counts=counts,
            version=version_row.version,
            updated_at=_as_utc(version_row.updated_at),
        )

    async def load_state(self) -> TallyState:
        """Read the committed TallyState (recovery read)."""
        try:
            async with self._session_factory() as session:
                return await self._read_state(session)
        except (OperationalError, DBAPIError, OSError) as e:
            raise StorageUnavailableError("load_state", str(e)) from e

    async def is_processed(self, envelope_id: str) -> bool:
        try:
            async with self._session_factory() as session:
                row = (
                    await session.execute(
                        select(processed_table.c.envelope_id).where(
                            processed_table.c.envelope_id == envelope_id
                        )
                    )
                ).first()
                return row is not None
        except (OperationalError, DBAPIError, OSError) as e:
            raise StorageUnavailableError("is_processed", str(e)) from e

    async def get_marker(self, consumer_id: str) -> ProcessedMarker | None:
        try:
            async with self._session_factory() as session:
                row = (
                    await session.execute(
                        select(consumer_marker_table).where(
                            consumer_marker_table.c.consumer_id == consumer_id
                        )
                    )
                ).first()
        except (OperationalError, DBAPIError, OSError) as e:
            raise StorageUnavailableError("get_marker", str(e)) from e

        if row is None:
            return None
        return ProcessedMarker(
            consumer_id=row.consumer_id,
            last_envelope_id=row.last_envelope_id,
            committed_count=row.committed_count,
            updated_at=_as_utc(row.updated_at) or _utc_now(),
        )

    async def count_processed(self) -> int:
        """Size of the processed set (diagnostics and tests)."""
        try:
            async with self._session_factory() as session:
                return (
                    await session.execute(select(func.count()).select_from(processed_table))
                ).scalar_one()
        except (OperationalError, DBAPIError, OSError) as e:
            raise StorageUnavailableError("count_processed", str(e)) from e

    async def prune_processed(self, older_than: datetime) -> int:
        """Delete processed rows recorded before ``older_than``."""
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        delete(processed_table).where(
                            processed_table.c.processed_at < older_than
                        )
                    )
                    removed = result.rowcount or 0
        except (OperationalError, DBAPIError, OSError) as e:
            raise StorageUnavailableError("prune_processed", str(e)) from e
        return removed
