"""
Direct-signer mint backend.

Signs `mintBadge` transactions locally with the minter key and sends them
through the configured RPC endpoint.
"""

import asyncio
from typing import Dict, Any, Optional

from web3 import AsyncWeb3, Web3
import structlog

from badge_relay.core.config import ChainConfig
from badge_relay.core.exceptions import ConfigurationError, MintError
from badge_relay.services.types import MintReceipt
from .base import MintClient
from .contracts import XPBADGE_ABI
from .transactions import create_web3, send_contract_transaction, classify_error


logger = structlog.get_logger(__name__)


class RpcMintClient(MintClient):
    """
    Mints badges by signing transactions with a local key.

    Only one submission is in flight at a time per client, so the pending
    nonce read before each send is never raced by this process.
    """

    name = "rpc"

    def __init__(
        self,
        rpc_url: str,
        chain_id: int,
        contract_address: Optional[str],
        private_key: Optional[str],
        rpc_timeout: int = 30,
        gas_buffer: int = 50000,
        receipt_timeout: int = 120,
        confirmations: int = 2,
        w3: Optional[AsyncWeb3] = None
    ):
        self.rpc_url = rpc_url
        self.chain_id = chain_id
        self.contract_address = contract_address
        self.private_key = private_key
        self.gas_buffer = gas_buffer
        self.receipt_timeout = receipt_timeout
        self.confirmations = confirmations
        self.w3 = w3 or create_web3(rpc_url, rpc_timeout)

        self.account = None
        self.contract = None
        self._lock = asyncio.Lock()
        self._initialized = False
        self.logger = logger.bind(service="rpc_mint_client")

    @classmethod
    def from_settings(cls, settings) -> "RpcMintClient":
        return cls(
            rpc_url=settings.rpc_url,
            chain_id=settings.chain_id,
            contract_address=settings.xpbadge_address,
            private_key=settings.minter_private_key,
            rpc_timeout=settings.rpc_timeout,
            gas_buffer=settings.gas_limit_buffer,
            receipt_timeout=settings.mint_receipt_timeout,
            confirmations=settings.mint_confirmations,
        )

    async def initialize(self) -> None:
        """Load the signer and check it holds MINTER_ROLE on the badge contract."""
        if self._initialized:
            return

        if not self.contract_address or not self.private_key:
            raise ConfigurationError(
                "XPBadge address and minter private key are required for the rpc backend"
            )

        self.account = self.w3.eth.account.from_key(self.private_key)
        self.contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(self.contract_address),
            abi=XPBADGE_ABI
        )

        try:
            has_role = await self.contract.functions.hasRole(
                ChainConfig.MINTER_ROLE, self.account.address
            ).call()
        except Exception as e:
            raise ConfigurationError(
                f"Could not check minter role: {e}",
                {"contract": self.contract_address}
            ) from e

        if not has_role:
            raise ConfigurationError(
                "Minter wallet does not hold MINTER_ROLE",
                {"minter": self.account.address, "contract": self.contract_address}
            )

        self._initialized = True
        self.logger.info(
            "RPC mint client initialized",
            minter=self.account.address,
            contract=self.contract_address,
            chain_id=self.chain_id
        )

    async def mint(self, player: str, token_id: int, xp: int, season: int) -> MintReceipt:
        if not self._initialized:
            await self.initialize()

        function = self.contract.functions.mintBadge(
            Web3.to_checksum_address(player), token_id, xp, season
        )

        async with self._lock:
            try:
                tx_hash, receipt = await send_contract_transaction(
                    self.w3,
                    function,
                    sender=self.account.address,
                    private_key=self.private_key,
                    chain_id=self.chain_id,
                    gas_buffer=self.gas_buffer,
                    receipt_timeout=self.receipt_timeout,
                    confirmations=self.confirmations,
                )
            except MintError:
                raise
            except Exception as e:
                error = classify_error(e)
                self.logger.warning(
                    "Mint submission failed",
                    player=player,
                    token_id=token_id,
                    error=error.message,
                    retryable=error.retryable
                )
                raise error from e

        self.logger.info(
            "Badge minted",
            player=player,
            token_id=token_id,
            tx_hash=tx_hash,
            block_number=receipt.get("blockNumber")
        )
        return MintReceipt(
            tx_hash=tx_hash,
            block_number=receipt.get("blockNumber"),
            gas_used=receipt.get("gasUsed"),
        )

    async def close(self) -> None:
        provider = getattr(self.w3, "provider", None)
        disconnect = getattr(provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()

    def get_info(self) -> Dict[str, Any]:
        return {
            "backend": self.name,
            "chain_id": self.chain_id,
            "contract": self.contract_address,
            "minter": self.account.address if self.account else None,
            "initialized": self._initialized,
        }
