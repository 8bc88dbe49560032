"""
HamBaller Badge Relay

Background service that turns completed game runs into minted XPBadge NFTs:
- Durable retry queue for badge mint transactions
- Optional ZK-proof gating for high-value badges
- Recovery of RunCompleted events missed by the live listener
"""

__version__ = "0.1.0"
__author__ = "HamBaller Team"
