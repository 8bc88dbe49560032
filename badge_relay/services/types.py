"""
Service-layer types shared by the store, the retry queue and event recovery.
"""

from datetime import datetime
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, List, Dict, Any

from badge_relay.models.attempt import AttemptStatus


@dataclass
class AttemptRecord:
    """In-memory copy of a badge claim attempt."""
    player_address: str
    run_id: str
    xp_earned: int
    season: int
    token_id: int
    status: AttemptStatus = AttemptStatus.PENDING
    id: Optional[str] = None
    retry_count: int = 0
    last_retry_at: Optional[datetime] = None
    requires_zk_proof: bool = False
    zk_proof_data: Optional[Dict[str, Any]] = None
    zk_proof_verified: Optional[bool] = None
    tx_hash: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (AttemptStatus.COMPLETED, AttemptStatus.ABANDONED) or (
            self.status == AttemptStatus.FAILED and self.zk_proof_verified is False
        )

    @property
    def awaiting_proof(self) -> bool:
        return self.requires_zk_proof and not self.zk_proof_verified


@dataclass
class AttemptFilter:
    """Filter for attempt queries. Unset fields do not constrain."""
    statuses: Optional[List[AttemptStatus]] = None
    player_address: Optional[str] = None
    run_id: Optional[str] = None
    retry_count_below: Optional[int] = None
    limit: Optional[int] = None


@dataclass
class RunCompletedLog:
    """A decoded RunCompleted log from the HODL manager contract."""
    player_address: str
    xp_earned: int
    cp_earned: int
    dbp_minted: float
    duration: int
    bonus_throw_used: bool
    boosts_used: List[int]
    block_number: int
    tx_hash: str
    log_index: int = 0


@dataclass
class MissedEventRecord:
    """A RunCompleted log with no matching run record."""
    player_address: str
    xp_earned: int
    cp_earned: int
    dbp_minted: float
    duration: int
    bonus_throw_used: bool
    boosts_used: List[int]
    block_number: int
    tx_hash: str
    log_index: int = 0
    processed: bool = False
    id: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_log(cls, log: RunCompletedLog) -> "MissedEventRecord":
        return cls(
            player_address=log.player_address.lower(),
            xp_earned=log.xp_earned,
            cp_earned=log.cp_earned,
            dbp_minted=log.dbp_minted,
            duration=log.duration,
            bonus_throw_used=log.bonus_throw_used,
            boosts_used=list(log.boosts_used),
            block_number=log.block_number,
            tx_hash=log.tx_hash.lower(),
            log_index=log.log_index,
        )


@dataclass
class MissedEventFilter:
    """Filter for missed event queries."""
    processed: Optional[bool] = None
    tx_hash: Optional[str] = None
    from_block: Optional[int] = None
    to_block: Optional[int] = None
    limit: Optional[int] = None


@dataclass
class RunRecord:
    """A completed game run as stored in run_logs."""
    player_address: str
    seed: Optional[str] = None
    xp_earned: int = 0
    cp_earned: int = 0
    dbp_minted: float = 0.0
    duration: int = 0
    bonus_throw_used: bool = False
    boosts_used: List[int] = field(default_factory=list)
    block_number: Optional[int] = None
    status: str = "completed"
    recovered: bool = False
    id: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class RunCompletionData:
    """Input to the run-completion pipeline."""
    player_address: str
    xp_earned: int
    cp_earned: int
    dbp_minted: float
    duration: int
    bonus_throw_used: bool
    boosts_used: List[int]
    block_number: Optional[int] = None
    tx_hash: Optional[str] = None
    status: str = "completed"
    recovered: bool = False

    @classmethod
    def from_missed_event(cls, event: MissedEventRecord) -> "RunCompletionData":
        return cls(
            player_address=event.player_address,
            xp_earned=event.xp_earned,
            cp_earned=event.cp_earned,
            dbp_minted=event.dbp_minted,
            duration=event.duration,
            bonus_throw_used=event.bonus_throw_used,
            boosts_used=list(event.boosts_used),
            block_number=event.block_number,
            tx_hash=event.tx_hash,
            recovered=True,
        )


@dataclass
class MintReceipt:
    """Result of a confirmed badge mint."""
    tx_hash: str
    block_number: Optional[int] = None
    gas_used: Optional[int] = None


@dataclass
class VerificationResult:
    """Verdict of the proof verifier."""
    verified: bool
    tx_hash: Optional[str] = None
    claim_id: Optional[str] = None
    reason: Optional[str] = None


class RecoveryStatus(Enum):
    """Outcome of a recovery pass."""
    COMPLETED = "completed"
    NOTHING_TO_SCAN = "nothing_to_scan"
    ALREADY_RUNNING = "already_running"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass
class RecoveryResult:
    """Summary of a recovery pass."""
    status: RecoveryStatus
    from_block: Optional[int] = None
    to_block: Optional[int] = None
    events_found: int = 0
    events_processed: int = 0
    attempts_enqueued: int = 0
    chunks_failed: int = 0
    error: Optional[str] = None
