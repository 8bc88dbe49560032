"""
RunCompleted log source for event recovery.
"""

from abc import ABC, abstractmethod
from typing import Any, List, Optional

from web3 import AsyncWeb3, Web3
import structlog

from badge_relay.core.exceptions import ConfigurationError, ScanChunkError, ChainError
from badge_relay.services.types import RunCompletedLog
from .contracts import HODL_MANAGER_ABI
from .transactions import create_web3


logger = structlog.get_logger(__name__)


class LogSource(ABC):
    """Chain reads needed by the event recovery scanner."""

    @abstractmethod
    async def get_block_number(self) -> int:
        """Current chain head."""

    @abstractmethod
    async def get_run_completed_logs(self, from_block: int, to_block: int) -> List[RunCompletedLog]:
        """RunCompleted logs in [from_block, to_block]; raises ScanChunkError on failure."""

    async def close(self) -> None:
        """Release connections. Default: nothing to do."""


class RunCompletedLogSource(LogSource):
    """Reads RunCompleted logs from the HODL manager contract over RPC."""

    def __init__(
        self,
        rpc_url: str,
        contract_address: Optional[str],
        rpc_timeout: int = 30,
        w3: Optional[AsyncWeb3] = None
    ):
        if not contract_address:
            raise ConfigurationError("HODL manager address is required for event recovery")

        self.contract_address = contract_address
        self.w3 = w3 or create_web3(rpc_url, rpc_timeout)
        self.contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(contract_address),
            abi=HODL_MANAGER_ABI
        )
        self.logger = logger.bind(service="run_completed_log_source")

    @classmethod
    def from_settings(cls, settings) -> "RunCompletedLogSource":
        return cls(
            rpc_url=settings.rpc_url,
            contract_address=settings.hodl_manager_address,
            rpc_timeout=settings.rpc_timeout,
        )

    async def get_block_number(self) -> int:
        try:
            return await self.w3.eth.block_number
        except Exception as e:
            self.logger.error("Failed to get block number", error=str(e))
            raise ChainError(f"Failed to get block number: {e}") from e

    async def get_run_completed_logs(self, from_block: int, to_block: int) -> List[RunCompletedLog]:
        try:
            entries = await self.contract.events.RunCompleted.get_logs(
                from_block=from_block,
                to_block=to_block
            )
        except Exception as e:
            raise ScanChunkError(from_block, to_block, str(e)) from e

        return [self._decode(entry) for entry in entries]

    @staticmethod
    def _decode(entry: Any) -> RunCompletedLog:
        args = entry["args"]
        return RunCompletedLog(
            player_address=args["user"].lower(),
            xp_earned=int(args["xpEarned"]),
            cp_earned=int(args["cpEarned"]),
            dbp_minted=float(Web3.from_wei(args["dbpMinted"], "ether")),
            duration=int(args["duration"]),
            bonus_throw_used=bool(args["bonusThrowUsed"]),
            boosts_used=[int(b) for b in args["boostsUsed"]],
            block_number=int(entry["blockNumber"]),
            tx_hash=Web3.to_hex(entry["transactionHash"]).lower(),
            log_index=int(entry.get("logIndex", 0)),
        )

    async def close(self) -> None:
        provider = getattr(self.w3, "provider", None)
        disconnect = getattr(provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()
