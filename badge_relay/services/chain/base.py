"""
Chain submission client interface.
"""

from abc import ABC, abstractmethod
from typing import Dict, Any

from badge_relay.services.types import MintReceipt


# Revert reasons that will not change on retry
PERMANENT_FAILURE_MARKERS = (
    "already minted",
    "already claimed",
    "badge exists",
    "invalid token",
    "invalid season",
    "accesscontrol",
    "missing role",
)


def is_permanent_failure(message: str) -> bool:
    """Whether a provider error message describes a permanent revert."""
    lowered = (message or "").lower()
    return any(marker in lowered for marker in PERMANENT_FAILURE_MARKERS)


class MintClient(ABC):
    """
    Submits a single badge mint and waits for it to land.

    Implementations raise MintError on failure, with `retryable` set to
    False for reverts that retrying cannot fix.
    """

    name: str = "mint_client"

    async def initialize(self) -> None:
        """Connect and check permissions. Default: nothing to do."""

    @abstractmethod
    async def mint(self, player: str, token_id: int, xp: int, season: int) -> MintReceipt:
        """Mint one badge for `player`."""

    async def close(self) -> None:
        """Release connections. Default: nothing to do."""

    def get_info(self) -> Dict[str, Any]:
        return {"backend": self.name}
