"""
Custom exception classes for the application.
Provides structured error handling across all modules.
"""

from typing import Any, Optional, Dict


class BadgeRelayException(Exception):
    """Base exception class for the badge relay."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(BadgeRelayException):
    """Raised when there's a configuration error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFIGURATION_ERROR", details)


class DatabaseError(BadgeRelayException):
    """Raised when there's a database error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "DATABASE_ERROR", details)


class ChainError(BadgeRelayException):
    """Raised when there's a blockchain RPC error."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        code: str = "CHAIN_ERROR"
    ):
        super().__init__(message, code, details)


class ValidationError(BadgeRelayException):
    """Raised when data validation fails."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        code: str = "VALIDATION_ERROR"
    ):
        super().__init__(message, code, details)


class NotFoundError(BadgeRelayException):
    """Raised when a requested resource is not found."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "NOT_FOUND", details)


class ExternalServiceError(BadgeRelayException):
    """Raised when an external service error occurs."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        code: str = "EXTERNAL_SERVICE_ERROR"
    ):
        super().__init__(message, code, details)


# Badge claim exceptions
class DuplicateAttemptError(ValidationError):
    """Raised when a live attempt already exists for a player's run."""

    def __init__(self, player_address: str, run_id: str, existing_id: Optional[str] = None):
        super().__init__(
            f"Badge claim attempt already exists for {player_address} run {run_id}",
            {"player_address": player_address, "run_id": run_id, "existing_id": existing_id},
            code="DUPLICATE_ATTEMPT"
        )


class AttemptNotFoundError(NotFoundError):
    """Raised when an attempt is not known to the queue or the store."""

    def __init__(self, attempt_id: str):
        super().__init__(
            f"Badge claim attempt not found: {attempt_id}",
            {"attempt_id": attempt_id}
        )


class ProofRejectedError(ValidationError):
    """A proof was verified and rejected. Retrying cannot change the verdict."""

    def __init__(self, player_address: str, reason: str):
        super().__init__(
            f"Proof rejected for {player_address}: {reason}",
            {"player_address": player_address, "reason": reason},
            code="PROOF_REJECTED"
        )


class ProofVerificationError(ExternalServiceError):
    """Raised when the verifier could not be reached or did not answer."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, code="PROOF_VERIFICATION_ERROR")


class MintError(ChainError):
    """
    Raised when a badge mint submission fails.

    `retryable` separates transport-level failures (timeouts, rate limits,
    dropped connections) from permanent reverts such as an already-minted
    badge, which are abandoned without burning the retry budget.
    """

    def __init__(
        self,
        message: str,
        error_code: Optional[Any] = None,
        retryable: bool = True,
        details: Optional[Dict[str, Any]] = None
    ):
        self.error_code = error_code
        self.retryable = retryable
        merged = {"error_code": error_code, "retryable": retryable}
        merged.update(details or {})
        super().__init__(message, merged, code="MINT_ERROR")


class ScanChunkError(ChainError):
    """Raised when a log query for one block chunk fails."""

    def __init__(self, from_block: int, to_block: int, reason: str):
        self.from_block = from_block
        self.to_block = to_block
        super().__init__(
            f"Failed to scan blocks {from_block}-{to_block}: {reason}",
            {"from_block": from_block, "to_block": to_block, "reason": reason},
            code="SCAN_CHUNK_ERROR"
        )
