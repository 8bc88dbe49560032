"""
Chain access: badge mint backends and the RunCompleted log source.
"""

from .base import MintClient, is_permanent_failure
from .rpc_minter import RpcMintClient
from .thirdweb_minter import ThirdwebMintClient
from .event_source import LogSource, RunCompletedLogSource


def build_mint_client(settings) -> MintClient:
    """Pick the submission backend once, from `settings.mint_backend`."""
    if settings.mint_backend == "thirdweb":
        return ThirdwebMintClient.from_settings(settings)
    return RpcMintClient.from_settings(settings)


__all__ = [
    "MintClient",
    "RpcMintClient",
    "ThirdwebMintClient",
    "LogSource",
    "RunCompletedLogSource",
    "build_mint_client",
    "is_permanent_failure",
]
