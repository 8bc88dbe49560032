"""
Scan checkpoint model - last block a recovery scan fully covered.
"""

from sqlalchemy import String, BigInteger
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin


class ScanCheckpoint(BaseModel, TimestampMixin):
    """Named block checkpoint."""

    __tablename__ = "scan_checkpoints"

    name: Mapped[str] = mapped_column(String(50), primary_key=True)
    block_number: Mapped[int] = mapped_column(BigInteger)
