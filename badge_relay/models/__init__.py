"""
Database models for the badge relay.

Attempts and missed events are the durable source of truth across restarts;
the queue and the recovery scanner only hold in-memory copies of live work.
"""

from .base import Base, BaseModel, TimestampMixin
from .attempt import BadgeClaimAttempt, AttemptStatus, ACTIVE_STATUSES
from .missed_event import MissedRunEvent
from .run_log import RunLog
from .nullifier import UsedNullifier
from .checkpoint import ScanCheckpoint

__all__ = [
    "Base",
    "BaseModel",
    "TimestampMixin",
    "BadgeClaimAttempt",
    "AttemptStatus",
    "ACTIVE_STATUSES",
    "MissedRunEvent",
    "RunLog",
    "UsedNullifier",
    "ScanCheckpoint",
]
