"""
Test the badge mint retry queue.
"""

import asyncio
import random

import pytest

from badge_relay.core.exceptions import (
    AttemptNotFoundError,
    DatabaseError,
    DuplicateAttemptError,
    MintError,
    ProofVerificationError,
    ValidationError,
)
from badge_relay.models.attempt import AttemptStatus
from badge_relay.services.attempt_store import SqlAlchemyAttemptStore
from badge_relay.services.retry_queue import RetryQueue, RetryConfig
from badge_relay.services.types import AttemptRecord, VerificationResult

from .conftest import (
    PLAYER,
    OTHER_PLAYER,
    VALID_PROOF,
    FakeMintClient,
    FakeProofVerifier,
    tx_hash,
)


def make_queue(store, mint_client, clock, proof_verifier=None, **config):
    config.setdefault("item_delay", 0)
    config.setdefault("store_retry_delay", 0)
    return RetryQueue(
        store=store,
        mint_client=mint_client,
        proof_verifier=proof_verifier,
        config=RetryConfig(**config),
        clock=clock,
        rng=random.Random(7),
    )


class TestAddAttempt:
    """Attempt intake."""

    @pytest.mark.asyncio
    async def test_low_value_attempt_is_pending(self, queue, store):
        """A low-XP run needs no proof and goes straight to PENDING."""
        attempt_id = await queue.add_attempt(PLAYER, "run-1", 10, 1)

        record = await store.get_attempt(attempt_id)
        assert record.status == AttemptStatus.PENDING
        assert record.token_id == 0
        assert record.requires_zk_proof is False
        assert record.retry_count == 0
        assert attempt_id in queue
        assert len(queue) == 1

    @pytest.mark.asyncio
    async def test_high_value_attempt_waits_for_verification(self, queue, store):
        """A high-XP run is created in PENDING_VERIFICATION with its proof data."""
        attempt_id = await queue.add_attempt(PLAYER, "run-1", 80, 1, proof_data=VALID_PROOF)

        record = await store.get_attempt(attempt_id)
        assert record.status == AttemptStatus.PENDING_VERIFICATION
        assert record.token_id == 3
        assert record.requires_zk_proof is True
        assert record.zk_proof_data == VALID_PROOF
        assert record.zk_proof_verified is None

    @pytest.mark.asyncio
    async def test_proof_data_dropped_when_not_required(self, queue, store):
        attempt_id = await queue.add_attempt(PLAYER, "run-1", 30, 1, proof_data=VALID_PROOF)

        record = await store.get_attempt(attempt_id)
        assert record.zk_proof_data is None

    @pytest.mark.asyncio
    async def test_duplicate_attempt_rejected(self, queue, store):
        """A second attempt for the same player and run is refused."""
        await queue.add_attempt(PLAYER, "run-1", 30, 1)

        with pytest.raises(DuplicateAttemptError):
            await queue.add_attempt(PLAYER.upper().replace("0X", "0x"), "run-1", 30, 1)

        counts = await store.count_attempts_by_status()
        assert sum(counts.values()) == 1
        assert len(queue) == 1

    @pytest.mark.asyncio
    async def test_concurrent_duplicate_attempts_rejected(self, queue, store):
        """Two simultaneous claims for one run produce a single attempt."""
        results = await asyncio.gather(
            queue.add_attempt(PLAYER, "run-1", 30, 1),
            queue.add_attempt(PLAYER, "run-1", 30, 1),
            return_exceptions=True,
        )

        ids = [r for r in results if isinstance(r, str)]
        errors = [r for r in results if isinstance(r, Exception)]
        assert len(ids) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], DuplicateAttemptError)

        counts = await store.count_attempts_by_status()
        assert sum(counts.values()) == 1
        assert len(queue) == 1

    @pytest.mark.asyncio
    async def test_same_run_for_other_player_allowed(self, queue):
        await queue.add_attempt(PLAYER, "run-1", 30, 1)
        await queue.add_attempt(OTHER_PLAYER, "run-1", 30, 1)

        assert len(queue) == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("player,run_id,xp,season", [
        ("not-an-address", "run-1", 30, 1),
        ("0x1234", "run-1", 30, 1),
        (PLAYER, "", 30, 1),
        (PLAYER, "run-1", 0, 1),
        (PLAYER, "run-1", -5, 1),
        (PLAYER, "run-1", 30, 0),
        (PLAYER, "run-1", True, 1),
    ])
    async def test_invalid_input_rejected(self, queue, store, player, run_id, xp, season):
        with pytest.raises(ValidationError):
            await queue.add_attempt(player, run_id, xp, season)

        counts = await store.count_attempts_by_status()
        assert sum(counts.values()) == 0


class TestProcessing:
    """Scheduling ticks and state transitions."""

    @pytest.mark.asyncio
    async def test_fast_path_mints_without_proof(self, queue, store, mint_client, proof_verifier):
        """xp=10 mints token 0 and never touches the verifier."""
        attempt_id = await queue.add_attempt(PLAYER, "run-1", 10, 1)

        handled = await queue.process_queue()

        assert handled == 1
        assert mint_client.calls == [(PLAYER, 0, 10, 1)]
        assert proof_verifier.calls == []

        record = await store.get_attempt(attempt_id)
        assert record.status == AttemptStatus.COMPLETED
        assert record.tx_hash is not None
        assert attempt_id not in queue

    @pytest.mark.asyncio
    async def test_success_path_with_proof(self, queue, store, mint_client, proof_verifier):
        """xp=80 verifies the proof, then mints token 3."""
        attempt_id = await queue.add_attempt(PLAYER, "run-1", 80, 1, proof_data=VALID_PROOF)

        await queue.process_queue()

        assert proof_verifier.calls == [(PLAYER, VALID_PROOF)]
        assert mint_client.calls == [(PLAYER, 3, 80, 1)]

        record = await store.get_attempt(attempt_id)
        assert record.status == AttemptStatus.COMPLETED
        assert record.zk_proof_verified is True
        assert record.tx_hash == tx_hash(1)
        assert queue.stats.proofs_verified == 1
        assert queue.stats.mints_succeeded == 1

    @pytest.mark.asyncio
    async def test_attempt_waits_until_proof_submitted(self, queue, store, mint_client, proof_verifier):
        """Without proof data the attempt is skipped, not failed."""
        attempt_id = await queue.add_attempt(PLAYER, "run-1", 90, 1)

        assert await queue.process_queue() == 0
        assert proof_verifier.calls == []
        assert mint_client.calls == []

        await queue.submit_proof(attempt_id, VALID_PROOF)
        await queue.process_queue()

        record = await store.get_attempt(attempt_id)
        assert record.status == AttemptStatus.COMPLETED
        assert record.zk_proof_data == VALID_PROOF

    @pytest.mark.asyncio
    async def test_submit_proof_validates_payload(self, queue):
        attempt_id = await queue.add_attempt(PLAYER, "run-1", 90, 1)

        with pytest.raises(ValidationError):
            await queue.submit_proof(attempt_id, {"nullifier": "1"})

    @pytest.mark.asyncio
    async def test_submit_proof_unknown_attempt(self, queue):
        with pytest.raises(AttemptNotFoundError):
            await queue.submit_proof("missing", VALID_PROOF)

    @pytest.mark.asyncio
    async def test_submit_proof_to_low_value_attempt_rejected(self, queue):
        attempt_id = await queue.add_attempt(PLAYER, "run-1", 10, 1)

        with pytest.raises(ValidationError):
            await queue.submit_proof(attempt_id, VALID_PROOF)

    @pytest.mark.asyncio
    async def test_rejected_proof_is_terminal(self, store, mint_client, clock):
        """A rejected proof fails the attempt for good and never mints."""
        verifier = FakeProofVerifier(VerificationResult(verified=False, reason="Nullifier already used"))
        queue = make_queue(store, mint_client, clock, proof_verifier=verifier)

        attempt_id = await queue.add_attempt(PLAYER, "run-1", 80, 1, proof_data=VALID_PROOF)
        await queue.process_queue()

        record = await store.get_attempt(attempt_id)
        assert record.status == AttemptStatus.FAILED
        assert record.zk_proof_verified is False
        assert record.is_terminal
        assert "Nullifier already used" in record.error_message
        assert mint_client.calls == []
        assert attempt_id not in queue

        # A restart does not resurrect it
        restarted = make_queue(store, mint_client, clock, proof_verifier=verifier)
        assert await restarted.load_pending_attempts() == 0

    @pytest.mark.asyncio
    async def test_verifier_outage_counts_as_failure(self, store, mint_client, clock):
        verifier = FakeProofVerifier(ProofVerificationError("verifier unreachable"))
        queue = make_queue(store, mint_client, clock, proof_verifier=verifier)

        attempt_id = await queue.add_attempt(PLAYER, "run-1", 80, 1, proof_data=VALID_PROOF)
        await queue.process_queue()

        record = await store.get_attempt(attempt_id)
        assert record.status == AttemptStatus.FAILED
        assert record.retry_count == 1
        assert record.zk_proof_verified is None
        assert attempt_id in queue
        assert mint_client.calls == []

    @pytest.mark.asyncio
    async def test_verifier_store_error_does_not_stop_tick(self, store, mint_client, clock):
        """An unexpected verifier error fails that attempt only; later attempts still mint."""
        verifier = FakeProofVerifier(DatabaseError("connection reset"))
        queue = make_queue(store, mint_client, clock, proof_verifier=verifier)

        high_id = await queue.add_attempt(PLAYER, "run-1", 80, 1, proof_data=VALID_PROOF)
        low_id = await queue.add_attempt(PLAYER, "run-2", 30, 1)

        assert await queue.process_queue() == 2

        high = await store.get_attempt(high_id)
        assert high.status == AttemptStatus.FAILED
        assert high.retry_count == 1
        assert high.error_message == "connection reset"
        assert high_id in queue

        low = await store.get_attempt(low_id)
        assert low.status == AttemptStatus.COMPLETED
        assert len(mint_client.calls) == 1

    @pytest.mark.asyncio
    async def test_missing_verifier_leaves_attempt_pending(self, store, mint_client, clock):
        queue = make_queue(store, mint_client, clock, proof_verifier=None)

        attempt_id = await queue.add_attempt(PLAYER, "run-1", 80, 1, proof_data=VALID_PROOF)
        assert await queue.process_queue() == 0

        record = await store.get_attempt(attempt_id)
        assert record.status == AttemptStatus.PENDING_VERIFICATION
        assert record.retry_count == 0
        assert mint_client.calls == []

    @pytest.mark.asyncio
    async def test_failed_attempt_waits_for_backoff(self, store, clock):
        """A failed attempt is not retried before its backoff delay elapses."""
        mint_client = FakeMintClient(outcomes=[MintError("timeout")])
        queue = make_queue(store, mint_client, clock)

        attempt_id = await queue.add_attempt(PLAYER, "run-1", 30, 1)
        await queue.process_queue()

        record = await store.get_attempt(attempt_id)
        assert record.status == AttemptStatus.FAILED
        assert record.retry_count == 1
        assert record.last_retry_at == clock.now
        assert record.error_message == "timeout"

        # Backoff after one failure is at least 15 * 2 * 0.9 seconds
        clock.advance(5)
        assert await queue.process_queue() == 0
        assert len(mint_client.calls) == 1

        clock.advance(400)
        assert await queue.process_queue() == 1
        record = await store.get_attempt(attempt_id)
        assert record.status == AttemptStatus.COMPLETED
        assert record.retry_count == 1
        assert record.error_message is None

    @pytest.mark.asyncio
    async def test_retries_converge_to_abandoned(self, store, clock):
        """After max_retries failures the attempt is abandoned and leaves the queue."""
        mint_client = FakeMintClient(always=MintError("rpc unavailable"))
        queue = make_queue(store, mint_client, clock)

        attempt_id = await queue.add_attempt(PLAYER, "run-1", 30, 1)

        for expected_retries in range(1, 5):
            await queue.process_queue()
            record = await store.get_attempt(attempt_id)
            assert record.status == AttemptStatus.FAILED
            assert record.retry_count == expected_retries
            assert attempt_id in queue
            clock.advance(400)

        await queue.process_queue()

        record = await store.get_attempt(attempt_id)
        assert record.status == AttemptStatus.ABANDONED
        assert record.retry_count == 5
        assert attempt_id not in queue
        assert len(mint_client.calls) == 5

        # Nothing left to do
        clock.advance(400)
        assert await queue.process_queue() == 0
        assert len(mint_client.calls) == 5

        abandoned = await queue.get_abandoned()
        assert [a.id for a in abandoned] == [attempt_id]

    @pytest.mark.asyncio
    async def test_permanent_mint_error_abandons_immediately(self, store, clock):
        mint_client = FakeMintClient(outcomes=[MintError("already minted", retryable=False)])
        queue = make_queue(store, mint_client, clock)

        attempt_id = await queue.add_attempt(PLAYER, "run-1", 30, 1)
        await queue.process_queue()

        record = await store.get_attempt(attempt_id)
        assert record.status == AttemptStatus.ABANDONED
        assert record.retry_count == 1
        assert "already minted" in record.error_message
        assert attempt_id not in queue

    @pytest.mark.asyncio
    async def test_unexpected_mint_exception_is_retryable(self, store, clock):
        mint_client = FakeMintClient(outcomes=[RuntimeError("boom")])
        queue = make_queue(store, mint_client, clock)

        attempt_id = await queue.add_attempt(PLAYER, "run-1", 30, 1)
        await queue.process_queue()

        record = await store.get_attempt(attempt_id)
        assert record.status == AttemptStatus.FAILED
        assert record.retry_count == 1
        assert record.error_message == "boom"

    @pytest.mark.asyncio
    async def test_completed_run_cannot_be_claimed_again(self, queue):
        await queue.add_attempt(PLAYER, "run-1", 30, 1)
        await queue.process_queue()

        with pytest.raises(DuplicateAttemptError):
            await queue.add_attempt(PLAYER, "run-1", 30, 1)


class TestBackoff:
    """Retry delay calculation."""

    @pytest.mark.parametrize("retry_count", [0, 1, 2, 3, 4])
    def test_delay_within_jitter_bounds(self, retry_count):
        queue = RetryQueue(store=None, mint_client=None, rng=random.Random(retry_count))
        nominal = 15.0 * (2 ** retry_count)
        low = min(nominal, 300.0) * 0.9
        high = min(300.0, nominal * 1.1)

        for _ in range(200):
            delay = queue.calculate_retry_delay(retry_count)
            assert low <= delay <= high
            assert delay >= 1.0

    def test_delay_capped_at_max(self):
        queue = RetryQueue(store=None, mint_client=None, rng=random.Random(3))

        for retry_count in range(5, 20):
            assert queue.calculate_retry_delay(retry_count) <= 300.0

    def test_delay_has_floor(self):
        config = RetryConfig(base_delay=0.01, jitter_range=0.5)
        queue = RetryQueue(store=None, mint_client=None, config=config, rng=random.Random(3))

        for _ in range(50):
            assert queue.calculate_retry_delay(0) >= 1.0

    @pytest.mark.asyncio
    async def test_jitter_drawn_once_per_failure(self, store, clock):
        """Idle ticks reuse the scheduled retry time instead of redrawing it."""
        mint_client = FakeMintClient(outcomes=[MintError("timeout"), MintError("timeout")])
        queue = make_queue(store, mint_client, clock)

        draws = []
        calculate = queue.calculate_retry_delay

        def recording_delay(retry_count):
            delay = calculate(retry_count)
            draws.append(delay)
            return delay

        queue.calculate_retry_delay = recording_delay

        await queue.add_attempt(PLAYER, "run-1", 30, 1)
        await queue.process_queue()
        assert len(draws) == 1
        delay = draws[0]

        for _ in range(10):
            clock.advance((delay - 1) / 10)
            assert await queue.process_queue() == 0
        assert len(draws) == 1

        clock.advance(2)
        assert await queue.process_queue() == 1
        assert len(mint_client.calls) == 2
        assert len(draws) == 2

    @pytest.mark.asyncio
    async def test_reloaded_failure_scheduled_once(self, store, mint_client, clock):
        """An attempt reloaded after a restart gets one retry time, kept across ticks."""
        await store.insert_attempt(AttemptRecord(
            player_address=PLAYER,
            run_id="run-1",
            xp_earned=30,
            season=1,
            token_id=1,
            status=AttemptStatus.FAILED,
            retry_count=1,
            last_retry_at=clock.now,
        ))
        queue = make_queue(store, mint_client, clock)
        await queue.load_pending_attempts()

        draws = []
        calculate = queue.calculate_retry_delay
        queue.calculate_retry_delay = lambda retry_count: draws.append(retry_count) or calculate(retry_count)

        for _ in range(5):
            assert await queue.process_queue() == 0
            clock.advance(1)

        assert draws == [1]
        assert mint_client.calls == []


class TestLoadPendingAttempts:
    """Startup reload from the store."""

    async def _insert(self, store, run_id, status, retry_count=0, zk_proof_verified=None):
        record = AttemptRecord(
            player_address=PLAYER,
            run_id=run_id,
            xp_earned=30,
            season=1,
            token_id=1,
            status=status,
            retry_count=retry_count,
            zk_proof_verified=zk_proof_verified,
        )
        return await store.insert_attempt(record)

    @pytest.mark.asyncio
    async def test_reload_selects_unfinished_attempts(self, store, mint_client, clock):
        pending = await self._insert(store, "run-1", AttemptStatus.PENDING)
        failed = await self._insert(store, "run-2", AttemptStatus.FAILED, retry_count=2)
        exhausted = await self._insert(store, "run-3", AttemptStatus.FAILED, retry_count=5)
        minting = await self._insert(store, "run-4", AttemptStatus.MINTING)
        rejected = await self._insert(
            store, "run-5", AttemptStatus.FAILED, zk_proof_verified=False
        )
        completed = await self._insert(store, "run-6", AttemptStatus.COMPLETED)

        queue = make_queue(store, mint_client, clock)
        loaded = await queue.load_pending_attempts()

        assert loaded == 2
        assert pending in queue
        assert failed in queue
        for attempt_id in (exhausted, minting, rejected, completed):
            assert attempt_id not in queue

        assert (await store.get_attempt(exhausted)).status == AttemptStatus.ABANDONED
        assert (await store.get_attempt(minting)).status == AttemptStatus.MINTING

    @pytest.mark.asyncio
    async def test_reload_keeps_in_memory_state(self, queue, store):
        attempt_id = await queue.add_attempt(PLAYER, "run-1", 30, 1)
        in_memory = queue.get_attempt(attempt_id)

        assert await queue.load_pending_attempts() == 0
        assert queue.get_attempt(attempt_id) is in_memory

    @pytest.mark.asyncio
    async def test_restarted_queue_finishes_the_work(self, store, clock):
        first = make_queue(store, FakeMintClient(outcomes=[MintError("timeout")]), clock)
        attempt_id = await first.add_attempt(PLAYER, "run-1", 30, 1)
        await first.process_queue()

        mint_client = FakeMintClient()
        second = make_queue(store, mint_client, clock)
        assert await second.load_pending_attempts() == 1

        clock.advance(400)
        await second.process_queue()

        record = await store.get_attempt(attempt_id)
        assert record.status == AttemptStatus.COMPLETED
        assert len(mint_client.calls) == 1


class FlakyStore(SqlAlchemyAttemptStore):
    """Fails the first `failures` updates with a DatabaseError."""

    def __init__(self, session_maker, failures):
        super().__init__(session_maker)
        self.failures = failures

    async def update_attempt(self, attempt_id, patch):
        if self.failures:
            self.failures -= 1
            raise DatabaseError("database is locked")
        await super().update_attempt(attempt_id, patch)


class TestStoreFailures:
    """Store write retries."""

    @pytest.mark.asyncio
    async def test_transient_store_failure_is_retried(self, session_maker, mint_client, clock):
        store = FlakyStore(session_maker, failures=2)
        queue = make_queue(store, mint_client, clock)

        attempt_id = await queue.add_attempt(PLAYER, "run-1", 30, 1)
        await queue.process_queue()

        record = await store.get_attempt(attempt_id)
        assert record.status == AttemptStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_persistent_store_failure_skips_mint(self, session_maker, mint_client, clock):
        """When MINTING cannot be stored, nothing is sent to the chain."""
        store = FlakyStore(session_maker, failures=3)
        queue = make_queue(store, mint_client, clock)

        attempt_id = await queue.add_attempt(PLAYER, "run-1", 30, 1)
        assert await queue.process_queue() == 0

        assert mint_client.calls == []
        record = await store.get_attempt(attempt_id)
        assert record.status == AttemptStatus.PENDING
        assert attempt_id in queue


class TestLifecycle:
    """Worker start and shutdown."""

    @pytest.mark.asyncio
    async def test_worker_processes_new_attempts(self, queue, store):
        await queue.start()
        assert queue.is_running

        attempt_id = await queue.add_attempt(PLAYER, "run-1", 30, 1)

        for _ in range(200):
            record = await store.get_attempt(attempt_id)
            if record.status == AttemptStatus.COMPLETED:
                break
            await asyncio.sleep(0.01)

        assert record.status == AttemptStatus.COMPLETED

        health = await queue.health_check()
        assert health["healthy"] is True

        await queue.shutdown()
        assert not queue.is_running

    @pytest.mark.asyncio
    async def test_context_manager(self, store, mint_client, clock):
        async with make_queue(store, mint_client, clock, processing_interval=0.05) as queue:
            assert queue.is_running
        assert not queue.is_running

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, queue):
        await queue.start()
        await queue.stop()
        await queue.stop()
        assert not queue.is_running


class TestStats:

    @pytest.mark.asyncio
    async def test_stats_report_retry_distribution(self, store, clock):
        mint_client = FakeMintClient(outcomes=[MintError("timeout")])
        queue = make_queue(store, mint_client, clock)

        await queue.add_attempt(PLAYER, "run-1", 30, 1)
        await queue.process_queue()
        await queue.add_attempt(PLAYER, "run-2", 30, 1)

        stats = queue.get_stats()
        assert stats["queue_size"] == 2
        assert stats["processing"] is False
        assert stats["retry_distribution"] == {"retry_1": 1, "retry_0": 1}
        assert stats["status_counts"] == {"failed": 1, "pending": 1}
        assert stats["totals"]["mints_failed"] == 1

        counts = await queue.get_status_counts()
        assert counts["failed"] == 1
        assert counts["pending"] == 1
        assert counts["completed"] == 0
