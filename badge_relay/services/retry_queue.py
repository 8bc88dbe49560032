"""
Durable retry queue for badge mints.

Every run that earned XP gets one badge claim attempt. The queue keeps the
active attempts in memory, persists every transition to the attempt
store, and drives each attempt to a terminal state:

    PENDING_VERIFICATION -> PENDING -> MINTING -> COMPLETED
    PENDING / MINTING    -> FAILED (retry with backoff) -> ... -> ABANDONED
    PENDING_VERIFICATION -> FAILED (proof rejected, terminal)

Attempts are processed sequentially by a single worker task. The minting
backend usually shares one signer, so concurrent submissions would race
on the nonce.
"""

import asyncio
import random
from collections import Counter
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Dict, Any, Optional, List, Callable, Awaitable, TypeVar

from web3 import Web3
import structlog

from badge_relay.core.exceptions import (
    DatabaseError,
    AttemptNotFoundError,
    ValidationError,
    MintError,
    ProofVerificationError,
)
from badge_relay.models.attempt import AttemptStatus
from .attempt_store import AttemptStore
from .badge_tiers import token_id_for, requires_proof
from .chain.base import MintClient
from .proof_verifier import ProofVerifier, parse_proof_payload
from .types import AttemptRecord, AttemptFilter


logger = structlog.get_logger(__name__)

T = TypeVar("T")

RELOADABLE_STATUSES = [
    AttemptStatus.PENDING_VERIFICATION,
    AttemptStatus.PENDING,
    AttemptStatus.FAILED,
]


@dataclass
class RetryConfig:
    """Retry queue tuning. Delays are in seconds."""
    max_retries: int = 5
    base_delay: float = 15.0
    max_delay: float = 300.0
    backoff_multiplier: float = 2.0
    jitter_range: float = 0.1
    min_delay: float = 1.0
    processing_interval: float = 30.0
    item_delay: float = 2.0
    shutdown_timeout: float = 60.0
    reload_interval: float = 300.0
    store_write_attempts: int = 3
    store_retry_delay: float = 1.0

    @classmethod
    def from_settings(cls, settings) -> "RetryConfig":
        return cls(
            max_retries=settings.retry_max_retries,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            backoff_multiplier=settings.retry_backoff_multiplier,
            jitter_range=settings.retry_jitter_range,
            processing_interval=settings.retry_processing_interval,
            item_delay=settings.retry_item_delay,
            shutdown_timeout=settings.retry_shutdown_timeout,
            reload_interval=settings.retry_reload_interval,
        )


@dataclass
class QueueStats:
    """Counters since the queue was created."""
    attempts_added: int = 0
    attempts_loaded: int = 0
    mints_succeeded: int = 0
    mints_failed: int = 0
    abandoned: int = 0
    proofs_verified: int = 0
    proofs_rejected: int = 0
    ticks: int = 0
    last_tick_at: Optional[datetime] = None


class RetryQueue:
    """
    Badge mint retry queue.

    Collaborators are injected: the attempt store, the mint backend and an
    optional proof verifier. `clock` and `rng` exist so tests can control
    time and jitter.
    """

    def __init__(
        self,
        store: AttemptStore,
        mint_client: MintClient,
        proof_verifier: Optional[ProofVerifier] = None,
        config: Optional[RetryConfig] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
        rng: Optional[random.Random] = None
    ):
        self.store = store
        self.mint_client = mint_client
        self.proof_verifier = proof_verifier
        self.config = config or RetryConfig()
        self.clock = clock
        self.rng = rng or random.Random()

        self._attempts: Dict[str, AttemptRecord] = {}
        self._retry_due_at: Dict[str, datetime] = {}
        self._intake_lock = asyncio.Lock()
        self.processing = False
        self.stats = QueueStats()

        self._running = False
        self._worker_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._last_reload_at: Optional[datetime] = None

        self.logger = logger.bind(service="retry_queue")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.shutdown()

    @property
    def is_running(self) -> bool:
        return self._running

    def __len__(self) -> int:
        return len(self._attempts)

    def __contains__(self, attempt_id: str) -> bool:
        return attempt_id in self._attempts

    def get_attempt(self, attempt_id: str) -> Optional[AttemptRecord]:
        """In-memory copy of an active attempt."""
        return self._attempts.get(attempt_id)

    # Intake

    async def add_attempt(
        self,
        player_address: str,
        run_id: str,
        xp_earned: int,
        season: int,
        proof_data: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Create a badge claim attempt for a completed run.

        Raises ValidationError for bad input and DuplicateAttemptError when
        the run already has a live or completed attempt.
        """
        self._validate_attempt(player_address, run_id, xp_earned, season)

        token_id = token_id_for(xp_earned)
        needs_proof = requires_proof(xp_earned, token_id)

        record = AttemptRecord(
            player_address=player_address.lower(),
            run_id=str(run_id),
            xp_earned=xp_earned,
            season=season,
            token_id=token_id,
            status=AttemptStatus.PENDING_VERIFICATION if needs_proof else AttemptStatus.PENDING,
            requires_zk_proof=needs_proof,
            zk_proof_data=proof_data if needs_proof else None,
        )

        # Serializes the duplicate check and insert within this process.
        # The store's unique index covers other processes.
        async with self._intake_lock:
            attempt_id = await self._with_store_retry(self.store.insert_attempt, record)
            self._attempts[attempt_id] = record
        self.stats.attempts_added += 1

        self.logger.info(
            "Badge claim attempt added",
            attempt_id=attempt_id,
            player=record.player_address,
            run_id=record.run_id,
            xp=xp_earned,
            token_id=token_id,
            requires_proof=needs_proof
        )

        self._wake()
        return attempt_id

    @staticmethod
    def _validate_attempt(player_address: str, run_id: str, xp_earned: int, season: int) -> None:
        if not player_address or not Web3.is_address(player_address):
            raise ValidationError("Invalid player address", {"player_address": player_address})
        if run_id is None or str(run_id) == "":
            raise ValidationError("Run id is required")
        if isinstance(xp_earned, bool) or not isinstance(xp_earned, int) or xp_earned <= 0:
            raise ValidationError("XP earned must be a positive integer", {"xp_earned": xp_earned})
        if isinstance(season, bool) or not isinstance(season, int) or season <= 0:
            raise ValidationError("Season must be a positive integer", {"season": season})

    async def submit_proof(self, attempt_id: str, proof_data: Dict[str, Any]) -> None:
        """Attach proof material to an attempt waiting for verification."""
        parse_proof_payload(proof_data)

        attempt = self._attempts.get(attempt_id)
        if attempt is None:
            attempt = await self._with_store_retry(self.store.get_attempt, attempt_id)
            if attempt is None:
                raise AttemptNotFoundError(attempt_id)

        if attempt.is_terminal or not attempt.awaiting_proof:
            raise ValidationError(
                "Attempt is not waiting for a proof",
                {"attempt_id": attempt_id, "status": attempt.status.value}
            )

        await self._with_store_retry(
            self.store.update_attempt, attempt_id, {"zk_proof_data": proof_data}
        )
        attempt.zk_proof_data = proof_data
        self._attempts[attempt_id] = attempt

        self.logger.info("Proof submitted", attempt_id=attempt_id, player=attempt.player_address)
        self._wake()

    async def load_pending_attempts(self) -> int:
        """
        Load unfinished attempts from the store into the working set.

        Called at startup, and periodically by the worker to pick up
        attempts queued by other processes. Attempts already in the
        working set are left untouched.

        Attempts that already used up their retries are abandoned instead
        of being loaded. Attempts left in MINTING are not reloaded: whether
        their transaction landed is unknown, so they are left for an
        operator to reconcile.
        """
        records = await self._with_store_retry(
            self.store.query_attempts,
            AttemptFilter(statuses=RELOADABLE_STATUSES)
        )

        loaded = 0
        abandoned = 0
        for record in records:
            if record.id in self._attempts or record.is_terminal:
                continue
            if record.retry_count >= self.config.max_retries:
                await self._abandon(record, "Max retries exceeded")
                abandoned += 1
                continue
            self._attempts[record.id] = record
            loaded += 1

        self.stats.attempts_loaded += loaded
        self._last_reload_at = self.clock()
        log = self.logger.info if loaded or abandoned else self.logger.debug
        log(
            "Pending attempts loaded",
            loaded=loaded,
            abandoned=abandoned,
            queue_size=len(self._attempts)
        )
        return loaded

    # Processing

    def calculate_retry_delay(self, retry_count: int) -> float:
        """Exponential backoff with jitter, in seconds."""
        delay = min(
            self.config.base_delay * (self.config.backoff_multiplier ** retry_count),
            self.config.max_delay
        )
        jitter = self.config.jitter_range * (self.rng.random() * 2 - 1)
        return max(self.config.min_delay, min(self.config.max_delay, delay * (1 + jitter)))

    def _schedule_retry(self, attempt: AttemptRecord) -> datetime:
        """Fix the next retry time. Jitter is drawn once per failure."""
        delay = self.calculate_retry_delay(attempt.retry_count)
        due_at = attempt.last_retry_at + timedelta(seconds=delay)
        self._retry_due_at[attempt.id] = due_at
        return due_at

    def _is_due(self, attempt: AttemptRecord) -> bool:
        if attempt.last_retry_at is None:
            return True
        due_at = self._retry_due_at.get(attempt.id)
        if due_at is None:
            # Reloaded from the store after a restart
            due_at = self._schedule_retry(attempt)
        return self.clock() >= due_at

    def _forget(self, attempt_id: str) -> None:
        self._attempts.pop(attempt_id, None)
        self._retry_due_at.pop(attempt_id, None)

    async def process_queue(self) -> int:
        """
        Run one scheduling tick over a snapshot of the working set.

        Returns the number of attempts that reached the proof verifier or
        the mint backend during this tick.
        """
        if self.processing or not self._attempts:
            return 0

        self.processing = True
        handled = 0
        try:
            snapshot = list(self._attempts.values())
            self.logger.debug("Processing queue", queue_size=len(snapshot))

            for attempt in snapshot:
                if self._stop_event.is_set():
                    break
                if attempt.id not in self._attempts or not self._is_due(attempt):
                    continue

                if handled:
                    await self._sleep(self.config.item_delay)
                    if self._stop_event.is_set():
                        break

                if await self._process_attempt(attempt):
                    handled += 1
        finally:
            self.processing = False
            self.stats.ticks += 1
            self.stats.last_tick_at = self.clock()

        return handled

    async def _process_attempt(self, attempt: AttemptRecord) -> bool:
        if attempt.awaiting_proof:
            if not attempt.zk_proof_data:
                return False
            if self.proof_verifier is None:
                self.logger.warning(
                    "No proof verifier configured, attempt stays pending",
                    attempt_id=attempt.id
                )
                return False
            if not await self._verify_proof(attempt):
                return True

        if not await self._persist(attempt, {"status": AttemptStatus.MINTING}):
            return False
        attempt.status = AttemptStatus.MINTING

        self.logger.info(
            "Minting badge",
            attempt_id=attempt.id,
            player=attempt.player_address,
            token_id=attempt.token_id,
            retry_count=attempt.retry_count
        )

        try:
            receipt = await self.mint_client.mint(
                attempt.player_address,
                attempt.token_id,
                attempt.xp_earned,
                attempt.season
            )
        except MintError as e:
            self.stats.mints_failed += 1
            if not e.retryable:
                attempt.retry_count += 1
                attempt.last_retry_at = self.clock()
                await self._abandon(attempt, f"Permanent mint failure: {e.message}")
            else:
                await self._record_failure(attempt, e.message)
            return True
        except Exception as e:
            self.stats.mints_failed += 1
            self.logger.exception("Unexpected mint error", attempt_id=attempt.id)
            await self._record_failure(attempt, str(e) or e.__class__.__name__)
            return True

        attempt.status = AttemptStatus.COMPLETED
        attempt.tx_hash = receipt.tx_hash
        attempt.error_message = None
        self._forget(attempt.id)
        self.stats.mints_succeeded += 1

        persisted = await self._persist(attempt, {
            "status": AttemptStatus.COMPLETED,
            "tx_hash": receipt.tx_hash,
            "error_message": None,
        })
        if not persisted:
            self.logger.error(
                "Badge minted but completion was not stored",
                attempt_id=attempt.id,
                tx_hash=receipt.tx_hash
            )

        self.logger.info(
            "Badge mint completed",
            attempt_id=attempt.id,
            player=attempt.player_address,
            token_id=attempt.token_id,
            tx_hash=receipt.tx_hash,
            block_number=receipt.block_number
        )
        return True

    async def _verify_proof(self, attempt: AttemptRecord) -> bool:
        """Returns True when the attempt may proceed to minting."""
        try:
            result = await self.proof_verifier.verify(attempt.player_address, attempt.zk_proof_data)
        except ProofVerificationError as e:
            await self._record_failure(attempt, e.message)
            return False
        except Exception as e:
            self.logger.exception("Unexpected proof verification error", attempt_id=attempt.id)
            await self._record_failure(attempt, str(e) or e.__class__.__name__)
            return False

        if not result.verified:
            self.stats.proofs_rejected += 1
            attempt.status = AttemptStatus.FAILED
            attempt.zk_proof_verified = False
            attempt.error_message = f"Proof rejected: {result.reason or 'verification failed'}"
            self._forget(attempt.id)
            await self._persist(attempt, {
                "status": AttemptStatus.FAILED,
                "zk_proof_verified": False,
                "error_message": attempt.error_message,
            })
            self.logger.warning(
                "Proof rejected, attempt failed",
                attempt_id=attempt.id,
                player=attempt.player_address,
                reason=result.reason
            )
            return False

        self.stats.proofs_verified += 1
        attempt.zk_proof_verified = True
        attempt.status = AttemptStatus.PENDING
        await self._persist(attempt, {
            "status": AttemptStatus.PENDING,
            "zk_proof_verified": True,
        })
        self.logger.info(
            "Proof verified",
            attempt_id=attempt.id,
            claim_id=result.claim_id,
            tx_hash=result.tx_hash
        )
        return True

    async def _record_failure(self, attempt: AttemptRecord, message: str) -> None:
        attempt.retry_count += 1
        attempt.last_retry_at = self.clock()

        if attempt.retry_count >= self.config.max_retries:
            await self._abandon(attempt, message)
            return

        attempt.status = AttemptStatus.FAILED
        attempt.error_message = message
        self._schedule_retry(attempt)
        await self._persist(attempt, {
            "status": AttemptStatus.FAILED,
            "retry_count": attempt.retry_count,
            "last_retry_at": attempt.last_retry_at,
            "error_message": message,
        })
        self.logger.warning(
            "Badge mint attempt failed",
            attempt_id=attempt.id,
            player=attempt.player_address,
            retry_count=attempt.retry_count,
            max_retries=self.config.max_retries,
            error=message
        )

    async def _abandon(self, attempt: AttemptRecord, message: str) -> None:
        attempt.status = AttemptStatus.ABANDONED
        attempt.error_message = message
        self._forget(attempt.id)
        self.stats.abandoned += 1

        await self._persist(attempt, {
            "status": AttemptStatus.ABANDONED,
            "retry_count": attempt.retry_count,
            "last_retry_at": attempt.last_retry_at,
            "error_message": message,
        })
        self.logger.error(
            "Badge mint attempt abandoned",
            attempt_id=attempt.id,
            player=attempt.player_address,
            run_id=attempt.run_id,
            retry_count=attempt.retry_count,
            error=message
        )

    # Store access

    async def _with_store_retry(self, operation: Callable[..., Awaitable[T]], *args) -> T:
        for try_number in range(1, self.config.store_write_attempts + 1):
            try:
                return await operation(*args)
            except DatabaseError as e:
                if try_number >= self.config.store_write_attempts:
                    raise
                self.logger.warning(
                    "Store operation failed, retrying",
                    operation=getattr(operation, "__name__", str(operation)),
                    attempt=try_number,
                    error=e.message
                )
                await asyncio.sleep(self.config.store_retry_delay)

    async def _persist(self, attempt: AttemptRecord, patch: Dict[str, Any]) -> bool:
        try:
            await self._with_store_retry(self.store.update_attempt, attempt.id, patch)
            return True
        except AttemptNotFoundError:
            self.logger.error("Attempt missing from store, dropping", attempt_id=attempt.id)
            self._forget(attempt.id)
            return False
        except DatabaseError as e:
            self.logger.error(
                "Failed to persist attempt update",
                attempt_id=attempt.id,
                patch=list(patch),
                error=e.message
            )
            return False

    # Lifecycle

    def _wake(self) -> None:
        if self._running and not self.processing:
            self._wake_event.set()

    async def _sleep(self, seconds: float) -> None:
        """Sleep that returns early when the queue is stopping."""
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _wait_for_tick(self) -> None:
        try:
            await asyncio.wait_for(
                self._wake_event.wait(),
                timeout=self.config.processing_interval
            )
        except asyncio.TimeoutError:
            pass
        self._wake_event.clear()

    async def start(self) -> None:
        """Start the periodic worker task."""
        if self._running:
            self.logger.warning("Retry queue already running")
            return

        self._running = True
        self._stop_event.clear()
        self._wake_event.clear()
        self._worker_task = asyncio.create_task(self._worker_loop())

        self.logger.info(
            "Retry queue started",
            queue_size=len(self._attempts),
            interval=self.config.processing_interval
        )

    def _reload_due(self) -> bool:
        if self._last_reload_at is None:
            return False
        elapsed = (self.clock() - self._last_reload_at).total_seconds()
        return elapsed >= self.config.reload_interval

    async def _worker_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.process_queue()
            except Exception as e:
                self.logger.error("Queue tick failed", error=str(e))

            if self._reload_due():
                try:
                    await self.load_pending_attempts()
                except Exception as e:
                    self.logger.error("Attempt reload failed", error=str(e))

            if self._stop_event.is_set():
                break
            await self._wait_for_tick()

        self.logger.info("Retry queue worker stopped")

    async def stop(self) -> None:
        """
        Stop the worker. An in-flight mint is given `shutdown_timeout`
        seconds to finish before the worker is cancelled.
        """
        if not self._running:
            return

        self.logger.info("Stopping retry queue")
        self._stop_event.set()
        self._wake_event.set()

        task = self._worker_task
        if task and not task.done():
            done, _ = await asyncio.wait({task}, timeout=self.config.shutdown_timeout)
            if not done:
                self.logger.warning(
                    "Worker did not finish in time, cancelling",
                    timeout=self.config.shutdown_timeout
                )
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        self._worker_task = None
        self._running = False
        self.logger.info("Retry queue stopped")

    async def shutdown(self) -> None:
        """Stop processing. Unfinished attempts stay in the store for the next start."""
        await self.stop()
        self.logger.info(
            "Retry queue shut down",
            remaining=len(self._attempts),
            stats=asdict(self.stats)
        )

    # Observability

    def get_stats(self) -> Dict[str, Any]:
        """Queue size, processing flag and retry histogram of the working set."""
        attempts = list(self._attempts.values())
        retry_distribution = Counter(f"retry_{a.retry_count}" for a in attempts)
        status_counts = Counter(a.status.value for a in attempts)

        return {
            "queue_size": len(attempts),
            "processing": self.processing,
            "running": self._running,
            "retry_distribution": dict(retry_distribution),
            "status_counts": dict(status_counts),
            "totals": asdict(self.stats),
            "config": {
                "max_retries": self.config.max_retries,
                "base_delay": self.config.base_delay,
                "max_delay": self.config.max_delay,
                "processing_interval": self.config.processing_interval,
            },
        }

    async def get_status_counts(self) -> Dict[str, int]:
        """Attempt counts per status across the whole store."""
        return await self.store.count_attempts_by_status()

    async def get_abandoned(self, limit: int = 100) -> List[AttemptRecord]:
        """Abandoned attempts, for operator follow-up."""
        return await self.store.query_attempts(
            AttemptFilter(statuses=[AttemptStatus.ABANDONED], limit=limit)
        )

    async def health_check(self) -> Dict[str, Any]:
        return {
            "healthy": self._running and (self._worker_task is None or not self._worker_task.done()),
            "running": self._running,
            "queue_size": len(self._attempts),
            "last_tick_at": self.stats.last_tick_at.isoformat() if self.stats.last_tick_at else None,
        }
