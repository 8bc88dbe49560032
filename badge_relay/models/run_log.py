"""
Run log model - one completed game run, as written by the run-completion pipeline.
"""

from typing import List, Optional

from sqlalchemy import String, Integer, BigInteger, Boolean, Float, Index, JSON
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin, generate_uuid


class RunLog(BaseModel, TimestampMixin):
    """
    Completed run record.

    `seed` holds the transaction hash of the RunCompleted log the run came
    from; recovery matches on it to decide whether a log was already seen.
    """

    __tablename__ = "run_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)

    player_address: Mapped[str] = mapped_column(String(42))
    seed: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)

    xp_earned: Mapped[int] = mapped_column(Integer, default=0)
    cp_earned: Mapped[int] = mapped_column(Integer, default=0)
    dbp_minted: Mapped[float] = mapped_column(Float, default=0.0)
    duration: Mapped[int] = mapped_column(Integer, default=0)
    bonus_throw_used: Mapped[bool] = mapped_column(Boolean, default=False)
    boosts_used: Mapped[List[int]] = mapped_column(JSON, default=list)

    block_number: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="completed")
    recovered: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        comment="Created from a recovered chain event"
    )

    __table_args__ = (
        Index("idx_run_logs_seed", "seed"),
        Index("idx_run_logs_player_created", "player_address", "created_at"),
        Index("idx_run_logs_created", "created_at"),
    )

    def __repr__(self):
        return f"<RunLog(id={self.id}, player={self.player_address}, seed={self.seed})>"
