"""
Missed run event model - RunCompleted logs found by recovery without a run record.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import String, Integer, BigInteger, Boolean, Float, Index, JSON, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, generate_uuid


class MissedRunEvent(BaseModel):
    """A RunCompleted log that the live listener never processed."""

    __tablename__ = "missed_run_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)

    player_address: Mapped[str] = mapped_column(String(42))
    xp_earned: Mapped[int] = mapped_column(Integer, default=0)
    cp_earned: Mapped[int] = mapped_column(Integer, default=0)
    dbp_minted: Mapped[float] = mapped_column(Float, default=0.0, comment="DBP minted, in ether units")
    duration: Mapped[int] = mapped_column(Integer, default=0, comment="Run duration in seconds")
    bonus_throw_used: Mapped[bool] = mapped_column(Boolean, default=False)
    boosts_used: Mapped[List[int]] = mapped_column(JSON, default=list)

    block_number: Mapped[int] = mapped_column(BigInteger)
    tx_hash: Mapped[str] = mapped_column(String(66))
    log_index: Mapped[int] = mapped_column(Integer, default=0)

    processed: Mapped[bool] = mapped_column(Boolean, default=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_missed_events_processed_block", "processed", "block_number"),
        Index("idx_missed_events_tx", "tx_hash", "log_index"),
    )

    def __repr__(self):
        return f"<MissedRunEvent(tx={self.tx_hash}, block={self.block_number}, processed={self.processed})>"
