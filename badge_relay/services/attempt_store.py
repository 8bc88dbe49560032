"""
Durable attempt store.

Defines the persistence interface used by the retry queue and event
recovery, and its SQLAlchemy implementation. Every call runs in its own
transaction, so each update is atomic on a single record and the database
stays the source of truth across restarts.
"""

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncGenerator, Dict, Any, List, Optional

from sqlalchemy import select, update, func, or_, and_, desc, exists
from sqlalchemy.exc import SQLAlchemyError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import structlog

from badge_relay.core.exceptions import (
    DatabaseError,
    DuplicateAttemptError,
    AttemptNotFoundError,
    NotFoundError,
)
from badge_relay.models import (
    BadgeClaimAttempt,
    AttemptStatus,
    ACTIVE_STATUSES,
    MissedRunEvent,
    RunLog,
    UsedNullifier,
    ScanCheckpoint,
)
from .types import (
    AttemptRecord,
    AttemptFilter,
    MissedEventRecord,
    MissedEventFilter,
    RunRecord,
)


logger = structlog.get_logger(__name__)

# Legacy run logs stored only the tail of the transaction hash as their seed
LEGACY_SEED_SUFFIX_LENGTH = 8


class AttemptStore(ABC):
    """Persistence operations needed by the retry queue and event recovery."""

    # Attempts
    @abstractmethod
    async def insert_attempt(self, record: AttemptRecord) -> str:
        """Persist a new attempt; raises DuplicateAttemptError for a live (player, run) pair."""

    @abstractmethod
    async def update_attempt(self, attempt_id: str, patch: Dict[str, Any]) -> None:
        """Apply a partial update to one attempt."""

    @abstractmethod
    async def get_attempt(self, attempt_id: str) -> Optional[AttemptRecord]:
        """Fetch one attempt by id."""

    @abstractmethod
    async def query_attempts(self, attempt_filter: AttemptFilter) -> List[AttemptRecord]:
        """Attempts matching the filter, oldest first."""

    @abstractmethod
    async def count_attempts_by_status(self) -> Dict[str, int]:
        """Number of attempts per status."""

    # Missed events
    @abstractmethod
    async def insert_missed_events(self, records: List[MissedEventRecord]) -> List[str]:
        """Persist missed events and return their ids."""

    @abstractmethod
    async def update_missed_event(self, event_id: str, patch: Dict[str, Any]) -> None:
        """Apply a partial update to one missed event."""

    @abstractmethod
    async def query_missed_events(self, event_filter: MissedEventFilter) -> List[MissedEventRecord]:
        """Missed events matching the filter, in block order."""

    @abstractmethod
    async def missed_event_exists(self, tx_hash: str, log_index: int) -> bool:
        """Whether this log has already been stored as a missed event."""

    @abstractmethod
    async def count_missed_events(self) -> Dict[str, int]:
        """Totals of missed events: total, processed and pending."""

    # Run records
    @abstractmethod
    async def insert_run(self, record: RunRecord) -> str:
        """Persist a run log and return its id."""

    @abstractmethod
    async def find_run_by_tx_hash(self, tx_hash: str) -> Optional[RunRecord]:
        """Run whose seed matches the transaction hash (exact, or legacy suffix)."""

    @abstractmethod
    async def get_latest_run(self) -> Optional[RunRecord]:
        """Most recently created run log."""

    @abstractmethod
    async def find_latest_run_for_player(self, player_address: str) -> Optional[RunRecord]:
        """Most recent run log for one player."""

    # Nullifiers
    @abstractmethod
    async def is_nullifier_used(self, nullifier: str) -> bool:
        """Whether a proof with this nullifier was already accepted."""

    @abstractmethod
    async def record_nullifier(
        self,
        nullifier: str,
        player_address: str,
        claim_id: Optional[str] = None
    ) -> None:
        """Mark a nullifier as consumed."""

    # Checkpoints
    @abstractmethod
    async def get_checkpoint(self, name: str) -> Optional[int]:
        """Last block recorded under `name`."""

    @abstractmethod
    async def save_checkpoint(self, name: str, block_number: int) -> None:
        """Record `block_number` under `name`."""


def _attempt_to_record(row: BadgeClaimAttempt) -> AttemptRecord:
    return AttemptRecord(
        id=row.id,
        player_address=row.player_address,
        run_id=row.run_id,
        xp_earned=row.xp_earned,
        season=row.season,
        token_id=row.token_id,
        status=AttemptStatus(row.status),
        retry_count=row.retry_count,
        last_retry_at=row.last_retry_at,
        requires_zk_proof=row.requires_zk_proof,
        zk_proof_data=row.zk_proof_data,
        zk_proof_verified=row.zk_proof_verified,
        tx_hash=row.tx_hash,
        error_message=row.error_message,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _missed_event_to_record(row: MissedRunEvent) -> MissedEventRecord:
    return MissedEventRecord(
        id=row.id,
        player_address=row.player_address,
        xp_earned=row.xp_earned,
        cp_earned=row.cp_earned,
        dbp_minted=row.dbp_minted,
        duration=row.duration,
        bonus_throw_used=row.bonus_throw_used,
        boosts_used=list(row.boosts_used or []),
        block_number=row.block_number,
        tx_hash=row.tx_hash,
        log_index=row.log_index,
        processed=row.processed,
        processed_at=row.processed_at,
        created_at=row.created_at,
    )


def _run_to_record(row: RunLog) -> RunRecord:
    return RunRecord(
        id=row.id,
        player_address=row.player_address,
        seed=row.seed,
        xp_earned=row.xp_earned,
        cp_earned=row.cp_earned,
        dbp_minted=row.dbp_minted,
        duration=row.duration,
        bonus_throw_used=row.bonus_throw_used,
        boosts_used=list(row.boosts_used or []),
        block_number=row.block_number,
        status=row.status,
        recovered=row.recovered,
        created_at=row.created_at,
    )


def _normalize_patch(patch: Dict[str, Any]) -> Dict[str, Any]:
    return {
        key: value.value if isinstance(value, AttemptStatus) else value
        for key, value in patch.items()
    }


class SqlAlchemyAttemptStore(AttemptStore):
    """AttemptStore backed by the async SQLAlchemy session maker."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker
        self.logger = logger.bind(service="attempt_store")

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        async with self._session_maker() as session:
            try:
                yield session
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                raise DatabaseError(f"Database operation failed: {e}") from e
            except Exception:
                await session.rollback()
                raise

    @staticmethod
    def _live_attempt_clause(player_address: str, run_id: str):
        # Completed attempts also block a new one: a run mints at most once
        live_statuses = [s.value for s in ACTIVE_STATUSES] + [AttemptStatus.COMPLETED.value]
        proof_rejected = and_(
            BadgeClaimAttempt.status == AttemptStatus.FAILED.value,
            BadgeClaimAttempt.zk_proof_verified.is_(False),
        )
        return and_(
            BadgeClaimAttempt.player_address == player_address,
            BadgeClaimAttempt.run_id == run_id,
            BadgeClaimAttempt.status.in_(live_statuses),
            ~proof_rejected,
        )

    # Attempts

    async def insert_attempt(self, record: AttemptRecord) -> str:
        player_address = record.player_address.lower()
        try:
            async with self._session() as session:
                existing = await session.execute(
                    select(BadgeClaimAttempt.id)
                    .where(self._live_attempt_clause(player_address, record.run_id))
                    .limit(1)
                )
                existing_id = existing.scalar_one_or_none()
                if existing_id is not None:
                    raise DuplicateAttemptError(player_address, record.run_id, existing_id)

                row = BadgeClaimAttempt(
                    player_address=player_address,
                    run_id=record.run_id,
                    xp_earned=record.xp_earned,
                    season=record.season,
                    token_id=record.token_id,
                    status=record.status.value,
                    retry_count=record.retry_count,
                    last_retry_at=record.last_retry_at,
                    requires_zk_proof=record.requires_zk_proof,
                    zk_proof_data=record.zk_proof_data,
                    zk_proof_verified=record.zk_proof_verified,
                )
                session.add(row)
                await session.flush()

                record.id = row.id
                record.player_address = player_address
                record.created_at = row.created_at
                record.updated_at = row.updated_at
                return row.id
        except DatabaseError as e:
            if isinstance(e.__cause__, IntegrityError):
                raise DuplicateAttemptError(player_address, record.run_id) from e
            raise

    async def update_attempt(self, attempt_id: str, patch: Dict[str, Any]) -> None:
        values = _normalize_patch(patch)
        values["updated_at"] = datetime.utcnow()
        async with self._session() as session:
            result = await session.execute(
                update(BadgeClaimAttempt)
                .where(BadgeClaimAttempt.id == attempt_id)
                .values(**values)
            )
            if result.rowcount == 0:
                raise AttemptNotFoundError(attempt_id)

    async def get_attempt(self, attempt_id: str) -> Optional[AttemptRecord]:
        async with self._session() as session:
            row = await session.get(BadgeClaimAttempt, attempt_id)
            return _attempt_to_record(row) if row else None

    async def query_attempts(self, attempt_filter: AttemptFilter) -> List[AttemptRecord]:
        query = select(BadgeClaimAttempt)
        if attempt_filter.statuses:
            query = query.where(
                BadgeClaimAttempt.status.in_([s.value for s in attempt_filter.statuses])
            )
        if attempt_filter.player_address:
            query = query.where(
                BadgeClaimAttempt.player_address == attempt_filter.player_address.lower()
            )
        if attempt_filter.run_id:
            query = query.where(BadgeClaimAttempt.run_id == attempt_filter.run_id)
        if attempt_filter.retry_count_below is not None:
            query = query.where(BadgeClaimAttempt.retry_count < attempt_filter.retry_count_below)
        query = query.order_by(BadgeClaimAttempt.created_at.asc())
        if attempt_filter.limit:
            query = query.limit(attempt_filter.limit)

        async with self._session() as session:
            result = await session.execute(query)
            return [_attempt_to_record(row) for row in result.scalars().all()]

    async def count_attempts_by_status(self) -> Dict[str, int]:
        async with self._session() as session:
            result = await session.execute(
                select(BadgeClaimAttempt.status, func.count(BadgeClaimAttempt.id))
                .group_by(BadgeClaimAttempt.status)
            )
            counts = {status.value: 0 for status in AttemptStatus}
            for status, count in result.all():
                counts[status] = count
            return counts

    # Missed events

    async def insert_missed_events(self, records: List[MissedEventRecord]) -> List[str]:
        if not records:
            return []
        async with self._session() as session:
            rows = [
                MissedRunEvent(
                    player_address=record.player_address.lower(),
                    xp_earned=record.xp_earned,
                    cp_earned=record.cp_earned,
                    dbp_minted=record.dbp_minted,
                    duration=record.duration,
                    bonus_throw_used=record.bonus_throw_used,
                    boosts_used=list(record.boosts_used),
                    block_number=record.block_number,
                    tx_hash=record.tx_hash.lower(),
                    log_index=record.log_index,
                    processed=record.processed,
                )
                for record in records
            ]
            session.add_all(rows)
            await session.flush()
            for record, row in zip(records, rows):
                record.id = row.id
                record.created_at = row.created_at
            return [row.id for row in rows]

    async def update_missed_event(self, event_id: str, patch: Dict[str, Any]) -> None:
        async with self._session() as session:
            result = await session.execute(
                update(MissedRunEvent)
                .where(MissedRunEvent.id == event_id)
                .values(**patch)
            )
            if result.rowcount == 0:
                raise NotFoundError(f"Missed event not found: {event_id}", {"event_id": event_id})

    async def query_missed_events(self, event_filter: MissedEventFilter) -> List[MissedEventRecord]:
        query = select(MissedRunEvent)
        if event_filter.processed is not None:
            query = query.where(MissedRunEvent.processed.is_(event_filter.processed))
        if event_filter.tx_hash:
            query = query.where(MissedRunEvent.tx_hash == event_filter.tx_hash.lower())
        if event_filter.from_block is not None:
            query = query.where(MissedRunEvent.block_number >= event_filter.from_block)
        if event_filter.to_block is not None:
            query = query.where(MissedRunEvent.block_number <= event_filter.to_block)
        query = query.order_by(MissedRunEvent.block_number.asc(), MissedRunEvent.log_index.asc())
        if event_filter.limit:
            query = query.limit(event_filter.limit)

        async with self._session() as session:
            result = await session.execute(query)
            return [_missed_event_to_record(row) for row in result.scalars().all()]

    async def missed_event_exists(self, tx_hash: str, log_index: int) -> bool:
        async with self._session() as session:
            result = await session.execute(
                select(exists().where(
                    MissedRunEvent.tx_hash == tx_hash.lower(),
                    MissedRunEvent.log_index == log_index,
                ))
            )
            return bool(result.scalar())

    async def count_missed_events(self) -> Dict[str, int]:
        async with self._session() as session:
            result = await session.execute(
                select(MissedRunEvent.processed, func.count(MissedRunEvent.id))
                .group_by(MissedRunEvent.processed)
            )
            counts = {bool(processed): count for processed, count in result.all()}
        processed = counts.get(True, 0)
        pending = counts.get(False, 0)
        return {"total": processed + pending, "processed": processed, "pending": pending}

    # Run records

    async def insert_run(self, record: RunRecord) -> str:
        async with self._session() as session:
            row = RunLog(
                player_address=record.player_address.lower(),
                seed=record.seed.lower() if record.seed else None,
                xp_earned=record.xp_earned,
                cp_earned=record.cp_earned,
                dbp_minted=record.dbp_minted,
                duration=record.duration,
                bonus_throw_used=record.bonus_throw_used,
                boosts_used=list(record.boosts_used),
                block_number=record.block_number,
                status=record.status,
                recovered=record.recovered,
            )
            session.add(row)
            await session.flush()
            record.id = row.id
            record.created_at = row.created_at
            return row.id

    async def find_run_by_tx_hash(self, tx_hash: str) -> Optional[RunRecord]:
        tx_hash = tx_hash.lower()
        suffix = tx_hash[-LEGACY_SEED_SUFFIX_LENGTH:]
        async with self._session() as session:
            result = await session.execute(
                select(RunLog)
                .where(or_(RunLog.seed == tx_hash, RunLog.seed.like(f"%{suffix}")))
                .order_by(desc(RunLog.seed == tx_hash))
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return _run_to_record(row) if row else None

    async def get_latest_run(self) -> Optional[RunRecord]:
        async with self._session() as session:
            result = await session.execute(
                select(RunLog).order_by(desc(RunLog.created_at)).limit(1)
            )
            row = result.scalar_one_or_none()
            return _run_to_record(row) if row else None

    async def find_latest_run_for_player(self, player_address: str) -> Optional[RunRecord]:
        async with self._session() as session:
            result = await session.execute(
                select(RunLog)
                .where(RunLog.player_address == player_address.lower())
                .order_by(desc(RunLog.created_at))
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return _run_to_record(row) if row else None

    # Nullifiers

    async def is_nullifier_used(self, nullifier: str) -> bool:
        async with self._session() as session:
            return await session.get(UsedNullifier, nullifier) is not None

    async def record_nullifier(
        self,
        nullifier: str,
        player_address: str,
        claim_id: Optional[str] = None
    ) -> None:
        async with self._session() as session:
            session.add(UsedNullifier(
                nullifier=nullifier,
                player_address=player_address.lower(),
                claim_id=claim_id,
            ))

    # Checkpoints

    async def get_checkpoint(self, name: str) -> Optional[int]:
        async with self._session() as session:
            row = await session.get(ScanCheckpoint, name)
            return row.block_number if row else None

    async def save_checkpoint(self, name: str, block_number: int) -> None:
        async with self._session() as session:
            row = await session.get(ScanCheckpoint, name)
            if row:
                row.block_number = block_number
                row.updated_at = datetime.utcnow()
            else:
                session.add(ScanCheckpoint(name=name, block_number=block_number))
