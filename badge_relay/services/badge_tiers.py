"""
Badge tier calculation.

Maps XP earned in a run to the XPBadge token id and decides whether the
claim is valuable enough to require a ZK proof before minting.
"""

from enum import IntEnum
from typing import Tuple


class BadgeTier(IntEnum):
    """XPBadge token ids, lowest to highest rarity."""
    PARTICIPATION = 0
    COMMON = 1
    RARE = 2
    EPIC = 3
    LEGENDARY = 4


# (minimum xp, tier), highest threshold first
TIER_THRESHOLDS: Tuple[Tuple[int, BadgeTier], ...] = (
    (100, BadgeTier.LEGENDARY),
    (75, BadgeTier.EPIC),
    (50, BadgeTier.RARE),
    (25, BadgeTier.COMMON),
)

PROOF_XP_THRESHOLD = 75
PROOF_TOKEN_THRESHOLD = BadgeTier.EPIC


def token_id_for(xp: int) -> int:
    """Return the badge token id earned with `xp` experience points."""
    for minimum, tier in TIER_THRESHOLDS:
        if xp >= minimum:
            return int(tier)
    return int(BadgeTier.PARTICIPATION)


def requires_proof(xp: int, token_id: int) -> bool:
    """High-value claims must be backed by a verified proof."""
    return xp >= PROOF_XP_THRESHOLD or token_id >= PROOF_TOKEN_THRESHOLD


def tier_name(token_id: int) -> str:
    """Human-readable badge name, e.g. "Epic Badge"."""
    return f"{BadgeTier(token_id).name.title()} Badge"
