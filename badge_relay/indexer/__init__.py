"""
Chain event recovery.
"""

from .event_recovery import EventRecoveryScanner, RecoveryConfig, ScanResult

__all__ = ["EventRecoveryScanner", "RecoveryConfig", "ScanResult"]
