"""
Shared helpers for signing and sending contract transactions with web3.py.
"""

import asyncio
from typing import Any, Dict, Optional, Tuple

from web3 import AsyncWeb3, AsyncHTTPProvider
from web3.exceptions import ContractLogicError, TimeExhausted
import aiohttp
import structlog

from badge_relay.core.exceptions import MintError
from .base import is_permanent_failure


logger = structlog.get_logger(__name__)


def create_web3(rpc_url: str, timeout: int = 30) -> AsyncWeb3:
    """Create an async web3 instance over HTTP."""
    return AsyncWeb3(AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))


def _rpc_error_code(error: Exception) -> Optional[Any]:
    response = getattr(error, "rpc_response", None)
    if isinstance(response, dict):
        rpc_error = response.get("error") or {}
        if isinstance(rpc_error, dict):
            return rpc_error.get("code")
    if error.args and isinstance(error.args[0], dict):
        return error.args[0].get("code")
    return None


def classify_error(error: Exception) -> MintError:
    """Translate a web3/transport exception into a MintError."""
    if isinstance(error, MintError):
        return error

    message = str(error) or error.__class__.__name__

    if isinstance(error, ContractLogicError):
        return MintError(message, error_code="CALL_EXCEPTION", retryable=False)

    if isinstance(error, TimeExhausted):
        return MintError(message, error_code="TIMEOUT", retryable=True)

    if isinstance(error, (asyncio.TimeoutError, aiohttp.ClientError, ConnectionError)):
        return MintError(message, error_code="NETWORK_ERROR", retryable=True)

    code = _rpc_error_code(error)
    if is_permanent_failure(message):
        return MintError(message, error_code=code, retryable=False)
    return MintError(message, error_code=code, retryable=True)


def _raw_transaction(signed: Any) -> bytes:
    raw = getattr(signed, "raw_transaction", None)
    if raw is None:
        raw = getattr(signed, "rawTransaction", None)
    if raw is None:
        raise MintError("Signed transaction is missing raw bytes", retryable=False)
    return raw


async def send_contract_transaction(
    w3: AsyncWeb3,
    contract_function: Any,
    sender: str,
    private_key: str,
    chain_id: int,
    gas_buffer: int = 50000,
    receipt_timeout: int = 120,
    confirmations: int = 1,
) -> Tuple[str, Dict[str, Any]]:
    """
    Estimate, sign, send and confirm one contract call.

    Returns the transaction hash and its receipt. A mined receipt with
    status 0 raises a non-retryable MintError.
    """
    gas_estimate = await contract_function.estimate_gas({"from": sender})
    gas_price = await w3.eth.gas_price
    nonce = await w3.eth.get_transaction_count(sender, "pending")

    tx = await contract_function.build_transaction({
        "from": sender,
        "nonce": nonce,
        "chainId": chain_id,
        "gas": gas_estimate + gas_buffer,
        "gasPrice": gas_price,
    })

    signed = w3.eth.account.sign_transaction(tx, private_key=private_key)
    tx_hash_bytes = await w3.eth.send_raw_transaction(_raw_transaction(signed))
    tx_hash = w3.to_hex(tx_hash_bytes)

    logger.info("Transaction sent", tx_hash=tx_hash, nonce=nonce, gas=tx["gas"])

    receipt = await w3.eth.wait_for_transaction_receipt(tx_hash_bytes, timeout=receipt_timeout)
    if receipt["status"] != 1:
        raise MintError(
            "Transaction reverted",
            error_code="REVERTED",
            retryable=False,
            details={"tx_hash": tx_hash, "block_number": receipt["blockNumber"]}
        )

    await _wait_for_confirmations(w3, receipt["blockNumber"], confirmations, receipt_timeout)
    return tx_hash, dict(receipt)


async def _wait_for_confirmations(
    w3: AsyncWeb3,
    block_number: int,
    confirmations: int,
    timeout: int,
    poll_interval: float = 1.0
) -> None:
    if confirmations <= 1:
        return
    target = block_number + confirmations - 1
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while await w3.eth.block_number < target:
        if loop.time() >= deadline:
            raise TimeExhausted(
                f"Block {block_number} did not reach {confirmations} confirmations in {timeout}s"
            )
        await asyncio.sleep(poll_interval)
