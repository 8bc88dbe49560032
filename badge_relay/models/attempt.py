"""
Badge claim attempt model - one tracked intent to mint a badge for a run.
"""

from datetime import datetime
from typing import Optional, Dict, Any
from enum import Enum

from sqlalchemy import String, Integer, Boolean, Text, Index, JSON, DateTime, text
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin, generate_uuid


class AttemptStatus(str, Enum):
    """Lifecycle of a badge claim attempt."""
    PENDING_VERIFICATION = "pending_verification"
    PENDING = "pending"
    MINTING = "minting"
    COMPLETED = "completed"
    FAILED = "failed"
    ABANDONED = "abandoned"


# Statuses that still count as a live claim for a (player, run) pair
ACTIVE_STATUSES = (
    AttemptStatus.PENDING_VERIFICATION,
    AttemptStatus.PENDING,
    AttemptStatus.MINTING,
    AttemptStatus.FAILED,
)

# Rows that block a new attempt for the same (player, run): live or
# completed, except a failure caused by a rejected proof
LIVE_CLAIM_WHERE = (
    f"status IN ('{AttemptStatus.PENDING_VERIFICATION.value}', '{AttemptStatus.PENDING.value}', "
    f"'{AttemptStatus.MINTING.value}', '{AttemptStatus.COMPLETED.value}') "
    f"OR (status = '{AttemptStatus.FAILED.value}' AND zk_proof_verified IS NOT FALSE)"
)


class BadgeClaimAttempt(BaseModel, TimestampMixin):
    """Durable record of a badge mint attempt."""

    __tablename__ = "badge_claim_attempts"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=generate_uuid,
        comment="Attempt identifier"
    )

    player_address: Mapped[str] = mapped_column(
        String(42),
        comment="Lower-cased player address"
    )

    run_id: Mapped[str] = mapped_column(
        String(64),
        comment="Originating run log id"
    )

    xp_earned: Mapped[int] = mapped_column(Integer, comment="XP earned in the run")
    season: Mapped[int] = mapped_column(Integer, comment="Badge season")

    token_id: Mapped[int] = mapped_column(
        Integer,
        comment="Badge tier, fixed at creation"
    )

    status: Mapped[str] = mapped_column(
        String(30),
        default=AttemptStatus.PENDING.value,
        comment="Current attempt status"
    )

    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    last_retry_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Proof gating
    requires_zk_proof: Mapped[bool] = mapped_column(Boolean, default=False)
    zk_proof_data: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    zk_proof_verified: Mapped[Optional[bool]] = mapped_column(
        Boolean,
        nullable=True,
        comment="None until verified, False when the proof was rejected"
    )

    # Terminal outcome
    tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("idx_badge_attempts_player_run", "player_address", "run_id"),
        Index("idx_badge_attempts_status", "status"),
        # One live claim per run, across processes too
        Index(
            "uq_badge_attempts_live_claim",
            "player_address", "run_id",
            unique=True,
            postgresql_where=text(LIVE_CLAIM_WHERE),
            sqlite_where=text(LIVE_CLAIM_WHERE)
        ),
    )

    def __repr__(self):
        return f"<BadgeClaimAttempt(id={self.id}, player={self.player_address}, status={self.status})>"
