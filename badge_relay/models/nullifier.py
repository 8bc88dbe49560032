"""
Used nullifier model - one row per consumed proof nullifier.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import String, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel


class UsedNullifier(BaseModel):
    """Nullifier of a proof that has already been accepted."""

    __tablename__ = "used_nullifiers"

    nullifier: Mapped[str] = mapped_column(String(80), primary_key=True)
    player_address: Mapped[str] = mapped_column(String(42))
    claim_id: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
