"""
Managed-transaction mint backend.

Queues `mintBadge` writes on a thirdweb Engine instance, which owns the
backend wallet, nonce management and gas, then polls the queued
transaction until it is mined or errors out.
"""

import asyncio
from typing import Dict, Any, Optional

import aiohttp
import structlog

from badge_relay.core.exceptions import ConfigurationError, MintError
from badge_relay.services.types import MintReceipt
from .base import MintClient, is_permanent_failure
from .contracts import MINT_BADGE_SIGNATURE


logger = structlog.get_logger(__name__)

MINED_STATUSES = ("mined",)
ERRORED_STATUSES = ("errored", "cancelled")


class ThirdwebMintClient(MintClient):
    """Mints badges through the thirdweb Engine HTTP API."""

    name = "thirdweb"

    def __init__(
        self,
        engine_url: Optional[str],
        secret_key: Optional[str],
        backend_wallet: Optional[str],
        chain_id: int,
        contract_address: Optional[str],
        poll_interval: float = 3.0,
        timeout: int = 180,
        request_timeout: int = 30,
        session: Optional[aiohttp.ClientSession] = None
    ):
        self.engine_url = (engine_url or "").rstrip("/")
        self.secret_key = secret_key
        self.backend_wallet = backend_wallet
        self.chain_id = chain_id
        self.contract_address = contract_address
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.request_timeout = request_timeout

        self._session = session
        self._owns_session = session is None
        self.logger = logger.bind(service="thirdweb_mint_client")

    @classmethod
    def from_settings(cls, settings) -> "ThirdwebMintClient":
        return cls(
            engine_url=settings.thirdweb_engine_url,
            secret_key=settings.thirdweb_secret_key,
            backend_wallet=settings.thirdweb_backend_wallet,
            chain_id=settings.chain_id,
            contract_address=settings.xpbadge_address,
            poll_interval=settings.thirdweb_poll_interval,
            timeout=settings.thirdweb_timeout,
            request_timeout=settings.rpc_timeout,
        )

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "x-backend-wallet-address": self.backend_wallet or "",
            "Content-Type": "application/json",
        }

    async def initialize(self) -> None:
        missing = [
            name for name, value in (
                ("thirdweb_engine_url", self.engine_url),
                ("thirdweb_secret_key", self.secret_key),
                ("thirdweb_backend_wallet", self.backend_wallet),
                ("xpbadge_address", self.contract_address),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(
                "Thirdweb backend is not fully configured",
                {"missing": missing}
            )

        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.request_timeout)
            )

        self.logger.info(
            "Thirdweb mint client initialized",
            engine_url=self.engine_url,
            backend_wallet=self.backend_wallet,
            chain_id=self.chain_id
        )

    async def mint(self, player: str, token_id: int, xp: int, season: int) -> MintReceipt:
        if self._session is None:
            await self.initialize()

        try:
            queue_id = await self._queue_write(player, token_id, xp, season)
            self.logger.info("Mint queued", player=player, token_id=token_id, queue_id=queue_id)
            receipt = await self._wait_for_mined(queue_id)
        except MintError as e:
            self.logger.warning(
                "Mint submission failed",
                player=player,
                token_id=token_id,
                error=e.message,
                retryable=e.retryable
            )
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.logger.warning("Engine request failed", player=player, error=str(e))
            raise MintError(
                f"Engine request failed: {e}", error_code="NETWORK_ERROR", retryable=True
            ) from e

        self.logger.info(
            "Badge minted",
            player=player,
            token_id=token_id,
            tx_hash=receipt.tx_hash,
            block_number=receipt.block_number
        )
        return receipt

    async def _queue_write(self, player: str, token_id: int, xp: int, season: int) -> str:
        url = f"{self.engine_url}/contract/{self.chain_id}/{self.contract_address}/write"
        payload = {
            "functionName": MINT_BADGE_SIGNATURE,
            "args": [player, str(token_id), str(xp), str(season)],
        }

        async with self._session.post(url, json=payload, headers=self.headers) as response:
            body = await self._read_json(response)
            if response.status >= 400:
                raise self._http_error(response.status, body)

        queue_id = (body.get("result") or {}).get("queueId")
        if not queue_id:
            raise MintError(
                "Engine response did not include a queue id",
                error_code="BAD_RESPONSE",
                retryable=True,
                details={"response": body}
            )
        return queue_id

    async def _wait_for_mined(self, queue_id: str) -> MintReceipt:
        url = f"{self.engine_url}/transaction/status/{queue_id}"
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout

        while loop.time() < deadline:
            async with self._session.get(url, headers=self.headers) as response:
                body = await self._read_json(response)
                if response.status >= 400:
                    raise self._http_error(response.status, body)

            result = body.get("result") or {}
            status = (result.get("status") or "").lower()

            if status in MINED_STATUSES:
                return MintReceipt(
                    tx_hash=(result.get("transactionHash") or "").lower(),
                    block_number=result.get("blockNumber"),
                    gas_used=_to_int(result.get("gasUsed")),
                )

            if status in ERRORED_STATUSES:
                message = result.get("errorMessage") or f"Transaction {status}"
                raise MintError(
                    message,
                    error_code=status.upper(),
                    retryable=not is_permanent_failure(message),
                    details={"queue_id": queue_id}
                )

            await asyncio.sleep(self.poll_interval)

        raise MintError(
            f"Transaction {queue_id} not mined within {self.timeout}s",
            error_code="TIMEOUT",
            retryable=True,
            details={"queue_id": queue_id}
        )

    @staticmethod
    async def _read_json(response: aiohttp.ClientResponse) -> Dict[str, Any]:
        try:
            data = await response.json(content_type=None)
        except ValueError:
            return {"raw": await response.text()}
        return data if isinstance(data, dict) else {"result": data}

    @staticmethod
    def _http_error(status: int, body: Dict[str, Any]) -> MintError:
        error = body.get("error") or {}
        message = error.get("message") if isinstance(error, dict) else str(error)
        message = message or f"Engine returned HTTP {status}"
        # Timeouts, rate limits and server errors; other 4xx are request errors
        retryable = status in (408, 429) or status >= 500
        return MintError(
            message,
            error_code=status,
            retryable=retryable,
            details={"http_status": status}
        )

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    def get_info(self) -> Dict[str, Any]:
        return {
            "backend": self.name,
            "chain_id": self.chain_id,
            "contract": self.contract_address,
            "engine_url": self.engine_url,
            "backend_wallet": self.backend_wallet,
        }


def _to_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
