"""
Event recovery for RunCompleted logs missed by the live listener.

On startup, and whenever an operator asks for it, the scanner walks the
chain in fixed-size block chunks, keeps the logs that have no matching
run record, stores them as missed events and replays them through the
run-completion pipeline. Replayed runs with XP are handed to the retry
queue, so a badge is claimed for every run even when the listener was
down.

The start block comes from a persisted checkpoint. Before the first
checkpoint exists it is estimated from the timestamp of the latest run.
"""

import asyncio
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Dict, Any, List, Optional, Tuple, Callable

import structlog

from badge_relay.core.exceptions import (
    BadgeRelayException,
    DuplicateAttemptError,
    ScanChunkError,
    ValidationError,
)
from badge_relay.services.attempt_store import AttemptStore
from badge_relay.services.chain.event_source import LogSource
from badge_relay.services.retry_queue import RetryQueue
from badge_relay.services.run_completion import RunCompletionHandler
from badge_relay.services.types import (
    MissedEventRecord,
    MissedEventFilter,
    RunCompletionData,
    RecoveryResult,
    RecoveryStatus,
)


logger = structlog.get_logger(__name__)

CHECKPOINT_NAME = "run_completed"


@dataclass
class RecoveryConfig:
    """Scanner tuning. Delays are in seconds, ranges in blocks."""
    chunk_size: int = 1000
    chunk_delay: float = 0.1
    default_lookback: int = 1000
    block_time: float = 2.0
    safety_buffer: int = 100
    event_delay: float = 0.5
    max_manual_range: int = 100000
    season: int = 1

    @classmethod
    def from_settings(cls, settings) -> "RecoveryConfig":
        return cls(
            chunk_size=settings.recovery_chunk_size,
            chunk_delay=settings.recovery_chunk_delay,
            default_lookback=settings.recovery_default_lookback,
            block_time=settings.recovery_block_time,
            safety_buffer=settings.recovery_safety_buffer,
            event_delay=settings.recovery_event_delay,
            max_manual_range=settings.recovery_max_manual_range,
            season=settings.badge_season,
        )


@dataclass
class ScanResult:
    """Missed events found in a block range, and the chunks that failed."""
    from_block: int
    to_block: int
    events: List[MissedEventRecord] = field(default_factory=list)
    chunks_scanned: int = 0
    failed_chunks: List[Tuple[int, int]] = field(default_factory=list)
    logs_seen: int = 0
    stopped: bool = False
    # Last block of the unbroken run of successful chunks from from_block
    contiguous_to_block: Optional[int] = None


class EventRecoveryScanner:
    """
    Finds and replays RunCompleted events that never reached the backend.

    Only one recovery runs at a time; a call made while another is in
    progress returns a result with status ALREADY_RUNNING.
    """

    def __init__(
        self,
        store: AttemptStore,
        log_source: LogSource,
        completion_handler: RunCompletionHandler,
        retry_queue: RetryQueue,
        config: Optional[RecoveryConfig] = None,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.store = store
        self.log_source = log_source
        self.completion_handler = completion_handler
        self.retry_queue = retry_queue
        self.config = config or RecoveryConfig()
        self.clock = clock

        self.recovery_in_progress = False
        self.last_result: Optional[RecoveryResult] = None
        self.last_recovery_at: Optional[datetime] = None
        self._stop_event = asyncio.Event()

        self.logger = logger.bind(service="event_recovery")

    # Start block

    async def determine_start_block(self, current_block: int) -> int:
        """First block that still needs scanning."""
        checkpoint = await self.store.get_checkpoint(CHECKPOINT_NAME)
        if checkpoint is not None:
            self.logger.debug("Using scan checkpoint", checkpoint=checkpoint)
            return checkpoint + 1

        latest_run = await self.store.get_latest_run()
        if latest_run is None or latest_run.created_at is None:
            start = max(0, current_block - self.config.default_lookback)
            self.logger.info(
                "No prior runs, scanning recent blocks",
                start_block=start,
                current_block=current_block
            )
            return start

        elapsed = max(0.0, (self.clock() - latest_run.created_at).total_seconds())
        blocks_since = int(elapsed // self.config.block_time)
        start = max(0, current_block - blocks_since - self.config.safety_buffer)

        self.logger.info(
            "Estimated start block from latest run",
            start_block=start,
            current_block=current_block,
            last_run_at=latest_run.created_at.isoformat()
        )
        return start

    # Scanning

    async def scan(self, from_block: int, to_block: int) -> ScanResult:
        """
        Scan [from_block, to_block] chunk by chunk for unprocessed logs.

        A failed chunk is logged and skipped; it never aborts the scan.
        """
        result = ScanResult(from_block=from_block, to_block=to_block)
        seen: set = set()
        contiguous = True

        for start in range(from_block, to_block + 1, self.config.chunk_size):
            if self._stop_event.is_set():
                result.stopped = True
                break

            end = min(start + self.config.chunk_size - 1, to_block)
            if start > from_block:
                await self._sleep(self.config.chunk_delay)

            try:
                logs = await self.log_source.get_run_completed_logs(start, end)
            except ScanChunkError as e:
                result.failed_chunks.append((start, end))
                contiguous = False
                self.logger.warning(
                    "Chunk scan failed, skipping",
                    from_block=start,
                    to_block=end,
                    error=e.message
                )
                continue

            result.chunks_scanned += 1
            result.logs_seen += len(logs)

            for log in logs:
                key = (log.tx_hash.lower(), log.log_index)
                if key in seen or await self._is_processed(log.tx_hash, log.log_index):
                    continue
                seen.add(key)
                result.events.append(MissedEventRecord.from_log(log))

            if contiguous:
                result.contiguous_to_block = end

            self.logger.debug(
                "Chunk scanned",
                from_block=start,
                to_block=end,
                logs=len(logs),
                missed_total=len(result.events)
            )

        self.logger.info(
            "Scan finished",
            from_block=from_block,
            to_block=to_block,
            chunks_scanned=result.chunks_scanned,
            chunks_failed=len(result.failed_chunks),
            logs_seen=result.logs_seen,
            missed=len(result.events)
        )
        return result

    async def _is_processed(self, tx_hash: str, log_index: int) -> bool:
        """A log is processed when a run exists for its tx or it is already a stored missed event."""
        if await self.store.find_run_by_tx_hash(tx_hash) is not None:
            return True
        return await self.store.missed_event_exists(tx_hash, log_index)

    # Replay

    async def process_missed_events(self) -> Tuple[int, int]:
        """
        Replay every unprocessed missed event in block order.

        Returns (events processed, attempts enqueued). A failing event stays
        unprocessed and is retried on the next recovery.
        """
        events = await self.store.query_missed_events(MissedEventFilter(processed=False))
        if not events:
            return 0, 0

        self.logger.info("Processing missed events", count=len(events))
        processed = 0
        enqueued = 0

        for index, event in enumerate(events):
            if self._stop_event.is_set():
                break
            if index:
                await self._sleep(self.config.event_delay)

            try:
                if await self._replay_event(event):
                    enqueued += 1
                await self.store.update_missed_event(
                    event.id,
                    {"processed": True, "processed_at": self.clock()}
                )
                processed += 1
            except Exception as e:
                self.logger.error(
                    "Failed to process missed event",
                    event_id=event.id,
                    tx_hash=event.tx_hash,
                    error=str(e)
                )

        self.logger.info(
            "Missed events processed",
            processed=processed,
            enqueued=enqueued,
            remaining=len(events) - processed
        )
        return processed, enqueued

    async def _replay_event(self, event: MissedEventRecord) -> bool:
        """Run the completion pipeline for one event; True when a new attempt was queued."""
        run_id = await self.completion_handler.handle_run_completion(
            RunCompletionData.from_missed_event(event)
        )

        if event.xp_earned <= 0:
            return False

        try:
            attempt_id = await self.retry_queue.add_attempt(
                event.player_address,
                run_id,
                event.xp_earned,
                self.config.season
            )
        except DuplicateAttemptError:
            self.logger.debug("Badge claim already queued", run_id=run_id, tx_hash=event.tx_hash)
            return False

        self.logger.info(
            "Recovered run queued for badge",
            attempt_id=attempt_id,
            run_id=run_id,
            player=event.player_address,
            xp=event.xp_earned,
            block_number=event.block_number
        )
        return True

    # Orchestration

    async def recover(self) -> RecoveryResult:
        """Scan from the last checkpoint to the chain head and replay what was missed."""
        if self.recovery_in_progress:
            self.logger.info("Recovery already in progress")
            return RecoveryResult(status=RecoveryStatus.ALREADY_RUNNING)

        self.recovery_in_progress = True
        try:
            current_block = await self.log_source.get_block_number()
            start_block = await self.determine_start_block(current_block)

            if start_block > current_block:
                processed, enqueued = await self.process_missed_events()
                result = RecoveryResult(
                    status=RecoveryStatus.NOTHING_TO_SCAN,
                    from_block=start_block,
                    to_block=current_block,
                    events_processed=processed,
                    attempts_enqueued=enqueued,
                )
            else:
                result = await self._recover_range(start_block, current_block, advance_checkpoint=True)
        except BadgeRelayException as e:
            self.logger.error("Recovery failed", error=e.message, code=e.code)
            result = RecoveryResult(status=RecoveryStatus.FAILED, error=e.message)
        except Exception as e:
            self.logger.exception("Recovery failed")
            result = RecoveryResult(status=RecoveryStatus.FAILED, error=str(e))
        finally:
            self.recovery_in_progress = False

        return self._finish(result)

    async def manual_recovery(self, from_block: int, to_block: int) -> RecoveryResult:
        """
        Operator-triggered backfill over an explicit range.

        Raises ValidationError for an invalid range. Does not move the
        checkpoint.
        """
        self._validate_range(from_block, to_block)

        if self.recovery_in_progress:
            self.logger.info("Recovery already in progress")
            return RecoveryResult(status=RecoveryStatus.ALREADY_RUNNING)

        self.logger.info("Manual recovery requested", from_block=from_block, to_block=to_block)
        self.recovery_in_progress = True
        try:
            result = await self._recover_range(from_block, to_block, advance_checkpoint=False)
        except BadgeRelayException as e:
            self.logger.error("Manual recovery failed", error=e.message, code=e.code)
            result = RecoveryResult(
                status=RecoveryStatus.FAILED,
                from_block=from_block,
                to_block=to_block,
                error=e.message
            )
        except Exception as e:
            self.logger.exception("Manual recovery failed")
            result = RecoveryResult(
                status=RecoveryStatus.FAILED,
                from_block=from_block,
                to_block=to_block,
                error=str(e)
            )
        finally:
            self.recovery_in_progress = False

        return self._finish(result)

    def _validate_range(self, from_block: int, to_block: int) -> None:
        if not isinstance(from_block, int) or not isinstance(to_block, int):
            raise ValidationError("Block numbers must be integers")
        if from_block < 0 or to_block < 0:
            raise ValidationError("Block numbers must be non-negative")
        if from_block > to_block:
            raise ValidationError(
                "from_block must not be greater than to_block",
                {"from_block": from_block, "to_block": to_block}
            )
        if to_block - from_block + 1 > self.config.max_manual_range:
            raise ValidationError(
                f"Range exceeds {self.config.max_manual_range} blocks",
                {"from_block": from_block, "to_block": to_block}
            )

    async def _recover_range(
        self,
        from_block: int,
        to_block: int,
        advance_checkpoint: bool
    ) -> RecoveryResult:
        self.logger.info(
            "Starting event recovery",
            from_block=from_block,
            to_block=to_block,
            blocks=to_block - from_block + 1
        )

        scan = await self.scan(from_block, to_block)
        if scan.events:
            await self.store.insert_missed_events(scan.events)
            self.logger.info("Missed events stored", count=len(scan.events))

        processed, enqueued = await self.process_missed_events()

        if advance_checkpoint and scan.contiguous_to_block is not None:
            await self.store.save_checkpoint(CHECKPOINT_NAME, scan.contiguous_to_block)

        stopped = scan.stopped or self._stop_event.is_set()
        return RecoveryResult(
            status=RecoveryStatus.STOPPED if stopped else RecoveryStatus.COMPLETED,
            from_block=from_block,
            to_block=to_block,
            events_found=len(scan.events),
            events_processed=processed,
            attempts_enqueued=enqueued,
            chunks_failed=len(scan.failed_chunks),
        )

    def _finish(self, result: RecoveryResult) -> RecoveryResult:
        self.last_result = result
        self.last_recovery_at = self.clock()
        self.logger.info(
            "Event recovery finished",
            status=result.status.value,
            from_block=result.from_block,
            to_block=result.to_block,
            events_found=result.events_found,
            events_processed=result.events_processed,
            attempts_enqueued=result.attempts_enqueued,
            chunks_failed=result.chunks_failed
        )
        return result

    # Lifecycle and stats

    async def _sleep(self, seconds: float) -> None:
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def stop(self) -> None:
        """Ask a running recovery to stop at the next chunk or event boundary."""
        self._stop_event.set()

    async def get_stats(self) -> Dict[str, Any]:
        counts = await self.store.count_missed_events()
        last_result = None
        if self.last_result is not None:
            last_result = asdict(self.last_result)
            last_result["status"] = self.last_result.status.value

        return {
            "total_missed_events": counts["total"],
            "processed_events": counts["processed"],
            "pending_events": counts["pending"],
            "recovery_in_progress": self.recovery_in_progress,
            "checkpoint": await self.store.get_checkpoint(CHECKPOINT_NAME),
            "last_recovery_at": self.last_recovery_at.isoformat() if self.last_recovery_at else None,
            "last_result": last_result,
        }
