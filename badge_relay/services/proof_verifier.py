"""
Proof verification for high-value badge claims.

A claim carries a proof payload with three fields:

    {"nullifier": "<decimal or 0x-hex field element>",
     "claim_id": <uint256>,
     "proof": "0x<proof bytes>"}

The nullifier is a one-time token: once a proof using it has been
accepted, any later payload with the same nullifier is rejected without
touching the chain. Accepted proofs are stored on-chain by the XPVerifier
contract through `verifyAndStoreClaim`.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Dict, Any, Optional

from web3 import AsyncWeb3, Web3
import structlog

from badge_relay.core.exceptions import (
    ConfigurationError,
    DatabaseError,
    ProofVerificationError,
    ValidationError,
)
from .attempt_store import AttemptStore
from .chain.contracts import XP_VERIFIER_ABI
from .chain.transactions import create_web3, send_contract_transaction, classify_error
from .types import VerificationResult


logger = structlog.get_logger(__name__)

# BN254 scalar field modulus used by the Groth16 circuit
FIELD_SIZE = 21888242871839275222246405745257275088548364400416034343698204186575808495617


def parse_nullifier(value: Any) -> int:
    """Parse a nullifier and check it is a non-zero field element."""
    try:
        if isinstance(value, str):
            nullifier = int(value, 16) if value.lower().startswith("0x") else int(value)
        else:
            nullifier = int(value)
    except (TypeError, ValueError):
        raise ValidationError("Nullifier is not an integer", {"nullifier": value})

    if not 0 < nullifier < FIELD_SIZE:
        raise ValidationError("Nullifier is outside the proof field", {"nullifier": str(value)})
    return nullifier


def parse_proof_payload(proof_data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Validate the shape of a proof payload and normalize its fields."""
    if not isinstance(proof_data, dict):
        raise ValidationError("Proof data must be an object")

    missing = [key for key in ("nullifier", "claim_id", "proof") if proof_data.get(key) in (None, "")]
    if missing:
        raise ValidationError("Proof data is missing fields", {"missing": missing})

    try:
        claim_id = int(proof_data["claim_id"])
    except (TypeError, ValueError):
        raise ValidationError("Claim id is not an integer", {"claim_id": proof_data["claim_id"]})
    if claim_id < 0:
        raise ValidationError("Claim id must be non-negative", {"claim_id": claim_id})

    proof = proof_data["proof"]
    if isinstance(proof, str):
        try:
            proof = Web3.to_bytes(hexstr=proof)
        except ValueError:
            raise ValidationError("Proof is not valid hex")
    elif not isinstance(proof, (bytes, bytearray)):
        raise ValidationError("Proof must be hex-encoded bytes")

    return {
        "nullifier": parse_nullifier(proof_data["nullifier"]),
        "claim_id": claim_id,
        "proof": bytes(proof),
    }


class ProofVerifier(ABC):
    """
    Checks proof material for a claim.

    A rejection is returned as `VerificationResult(verified=False)`. Failure
    to reach the verifier raises ProofVerificationError so the caller can
    retry later.
    """

    @abstractmethod
    async def verify(self, player_address: str, proof_data: Dict[str, Any]) -> VerificationResult:
        """Verify `proof_data` for `player_address`."""

    async def close(self) -> None:
        """Release connections. Default: nothing to do."""


class ContractProofVerifier(ProofVerifier):
    """Verifies proofs through the on-chain XPVerifier contract."""

    def __init__(
        self,
        store: AttemptStore,
        rpc_url: str,
        chain_id: int,
        contract_address: Optional[str],
        private_key: Optional[str],
        rpc_timeout: int = 30,
        gas_buffer: int = 50000,
        receipt_timeout: int = 120,
        store_attempts: int = 3,
        store_retry_delay: float = 1.0,
        w3: Optional[AsyncWeb3] = None
    ):
        if not contract_address or not private_key:
            raise ConfigurationError(
                "XPVerifier address and verifier key are required for proof verification"
            )

        self.store = store
        self.chain_id = chain_id
        self.contract_address = contract_address
        self.private_key = private_key
        self.gas_buffer = gas_buffer
        self.receipt_timeout = receipt_timeout
        self.store_attempts = store_attempts
        self.store_retry_delay = store_retry_delay
        self.w3 = w3 or create_web3(rpc_url, rpc_timeout)
        self.account = self.w3.eth.account.from_key(private_key)
        self.contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(contract_address),
            abi=XP_VERIFIER_ABI
        )
        self.logger = logger.bind(service="proof_verifier")

    @classmethod
    def from_settings(cls, store: AttemptStore, settings) -> "ContractProofVerifier":
        return cls(
            store=store,
            rpc_url=settings.rpc_url,
            chain_id=settings.chain_id,
            contract_address=settings.xp_verifier_address,
            private_key=settings.verifier_private_key or settings.minter_private_key,
            rpc_timeout=settings.rpc_timeout,
            gas_buffer=settings.gas_limit_buffer,
            receipt_timeout=settings.mint_receipt_timeout,
        )

    async def verify(self, player_address: str, proof_data: Dict[str, Any]) -> VerificationResult:
        try:
            payload = parse_proof_payload(proof_data)
        except ValidationError as e:
            self.logger.warning("Malformed proof payload", player=player_address, error=e.message)
            return VerificationResult(verified=False, reason=e.message)

        nullifier = str(payload["nullifier"])
        claim_id = str(payload["claim_id"])

        try:
            nullifier_used = await self._with_store_retry(self.store.is_nullifier_used, nullifier)
        except DatabaseError as e:
            raise ProofVerificationError(
                f"Nullifier store unavailable: {e.message}",
                {"player_address": player_address, "claim_id": claim_id}
            ) from e

        if nullifier_used:
            self.logger.warning("Nullifier replay rejected", player=player_address, claim_id=claim_id)
            return VerificationResult(
                verified=False,
                claim_id=claim_id,
                reason="Nullifier already used"
            )

        function = self.contract.functions.verifyAndStoreClaim(
            payload["claim_id"], payload["proof"]
        )

        try:
            accepted = await function.call({"from": self.account.address})
            if not accepted:
                return VerificationResult(
                    verified=False,
                    claim_id=claim_id,
                    reason="Verifier returned false"
                )

            tx_hash, _ = await send_contract_transaction(
                self.w3,
                function,
                sender=self.account.address,
                private_key=self.private_key,
                chain_id=self.chain_id,
                gas_buffer=self.gas_buffer,
                receipt_timeout=self.receipt_timeout,
            )
        except Exception as e:
            error = classify_error(e)
            if not error.retryable:
                self.logger.warning(
                    "Proof rejected by verifier",
                    player=player_address,
                    claim_id=claim_id,
                    reason=error.message
                )
                return VerificationResult(verified=False, claim_id=claim_id, reason=error.message)

            self.logger.error(
                "Proof verification call failed",
                player=player_address,
                claim_id=claim_id,
                error=error.message
            )
            raise ProofVerificationError(
                f"Verifier unavailable: {error.message}",
                {"player_address": player_address, "claim_id": claim_id}
            ) from e

        # The claim is already stored on-chain at this point
        try:
            await self._with_store_retry(
                self.store.record_nullifier, nullifier, player_address, claim_id
            )
        except DatabaseError as e:
            self.logger.error(
                "Proof accepted on-chain but nullifier was not recorded",
                player=player_address,
                claim_id=claim_id,
                tx_hash=tx_hash,
                error=e.message
            )

        self.logger.info(
            "Proof verified",
            player=player_address,
            claim_id=claim_id,
            tx_hash=tx_hash
        )
        return VerificationResult(verified=True, tx_hash=tx_hash, claim_id=claim_id)

    async def _with_store_retry(self, operation, *args):
        for try_number in range(1, self.store_attempts + 1):
            try:
                return await operation(*args)
            except DatabaseError as e:
                if try_number >= self.store_attempts:
                    raise
                self.logger.warning(
                    "Nullifier store operation failed, retrying",
                    operation=getattr(operation, "__name__", str(operation)),
                    attempt=try_number,
                    error=e.message
                )
                await asyncio.sleep(self.store_retry_delay)

    async def close(self) -> None:
        provider = getattr(self.w3, "provider", None)
        disconnect = getattr(provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()
