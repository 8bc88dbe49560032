"""
Shared fixtures: an in-memory SQLite store and fakes for the chain-facing
collaborators.
"""

import asyncio
import random
from datetime import datetime, timedelta
from typing import List, Optional, Set, Tuple, Union

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from badge_relay.core.exceptions import ScanChunkError
from badge_relay.models import Base
from badge_relay.services.attempt_store import SqlAlchemyAttemptStore
from badge_relay.services.chain.base import MintClient
from badge_relay.services.chain.event_source import LogSource
from badge_relay.services.proof_verifier import ProofVerifier
from badge_relay.services.retry_queue import RetryQueue, RetryConfig
from badge_relay.services.types import MintReceipt, RunCompletedLog, VerificationResult


PLAYER = "0x" + "ab" * 20
OTHER_PLAYER = "0x" + "cd" * 20

VALID_PROOF = {"nullifier": "123456789", "claim_id": 7, "proof": "0xdeadbeef"}


def tx_hash(n: int) -> str:
    return "0x" + format(n, "064x")


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2025, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeMintClient(MintClient):
    """Returns queued outcomes in order; succeeds once the queue is empty."""

    name = "fake"

    def __init__(self, outcomes: Optional[List[Union[MintReceipt, Exception]]] = None, always=None):
        self.outcomes = list(outcomes or [])
        self.always = always
        self.calls: List[Tuple[str, int, int, int]] = []

    async def mint(self, player: str, token_id: int, xp: int, season: int) -> MintReceipt:
        self.calls.append((player, token_id, xp, season))
        outcome = self.outcomes.pop(0) if self.outcomes else self.always
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is None:
            return MintReceipt(tx_hash=tx_hash(len(self.calls)), block_number=100, gas_used=21000)
        return outcome


class FakeProofVerifier(ProofVerifier):
    def __init__(self, result: Union[VerificationResult, Exception, None] = None):
        self.result = result or VerificationResult(verified=True, tx_hash=tx_hash(999), claim_id="7")
        self.calls: List[Tuple[str, dict]] = []

    async def verify(self, player_address: str, proof_data: dict) -> VerificationResult:
        self.calls.append((player_address, proof_data))
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class FakeLogSource(LogSource):
    """Serves a fixed list of logs; chunks starting at a block in `failing` raise."""

    def __init__(
        self,
        block_number: int = 0,
        logs: Optional[List[RunCompletedLog]] = None,
        failing: Optional[Set[int]] = None,
        gate: Optional[asyncio.Event] = None
    ):
        self.block_number = block_number
        self.logs = list(logs or [])
        self.failing = set(failing or ())
        self.gate = gate
        self.queries: List[Tuple[int, int]] = []

    async def get_block_number(self) -> int:
        if self.gate is not None:
            await self.gate.wait()
        return self.block_number

    async def get_run_completed_logs(self, from_block: int, to_block: int) -> List[RunCompletedLog]:
        self.queries.append((from_block, to_block))
        if from_block in self.failing:
            raise ScanChunkError(from_block, to_block, "query returned more than 10000 results")
        return [log for log in self.logs if from_block <= log.block_number <= to_block]


def make_log(block_number: int, n: int, player: str = PLAYER, xp: int = 30) -> RunCompletedLog:
    return RunCompletedLog(
        player_address=player,
        xp_earned=xp,
        cp_earned=5,
        dbp_minted=1.5,
        duration=42,
        bonus_throw_used=False,
        boosts_used=[1, 2],
        block_number=block_number,
        tx_hash=tx_hash(n),
        log_index=0,
    )


@pytest.fixture
async def session_maker():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
async def store(session_maker):
    return SqlAlchemyAttemptStore(session_maker)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mint_client():
    return FakeMintClient()


@pytest.fixture
def proof_verifier():
    return FakeProofVerifier()


@pytest.fixture
def retry_config():
    return RetryConfig(item_delay=0, store_retry_delay=0, processing_interval=0.05)


@pytest.fixture
async def queue(store, mint_client, proof_verifier, retry_config, clock):
    retry_queue = RetryQueue(
        store=store,
        mint_client=mint_client,
        proof_verifier=proof_verifier,
        config=retry_config,
        clock=clock,
        rng=random.Random(1234),
    )
    yield retry_queue
    await retry_queue.shutdown()
