"""
Main entry point for the badge relay service.
Wires the store, chain clients, retry queue and event recovery together.
"""

import asyncio
import signal
from typing import Optional, List

import structlog

from badge_relay.core.config import Settings, DatabaseConfig, settings as default_settings
from badge_relay.core.database import init_database, close_database, DatabaseManager
from badge_relay.core.logging import setup_logging
from badge_relay.indexer.event_recovery import EventRecoveryScanner, RecoveryConfig
from badge_relay.services.attempt_store import SqlAlchemyAttemptStore
from badge_relay.services.chain import MintClient, RunCompletedLogSource, build_mint_client
from badge_relay.services.proof_verifier import ContractProofVerifier, ProofVerifier
from badge_relay.services.retry_queue import RetryQueue, RetryConfig
from badge_relay.services.run_completion import RunLogCompletionHandler


logger = structlog.get_logger(__name__)

STATS_INTERVAL = 300  # 5 minutes


class BadgeRelayService:
    """Badge relay service coordinator."""

    def __init__(self, config: Optional[Settings] = None):
        self.settings = config or default_settings
        self.store: Optional[SqlAlchemyAttemptStore] = None
        self.mint_client: Optional[MintClient] = None
        self.proof_verifier: Optional[ProofVerifier] = None
        self.log_source: Optional[RunCompletedLogSource] = None
        self.retry_queue: Optional[RetryQueue] = None
        self.scanner: Optional[EventRecoveryScanner] = None

        self.running = False
        self.tasks: List[asyncio.Task] = []
        self._shutdown_event = asyncio.Event()
        self.logger = logger.bind(service="badge_relay")

    async def initialize(self, with_minting: bool = True) -> None:
        """Build every component. `with_minting=False` skips the mint backend checks."""
        try:
            self.logger.info(
                "Initializing badge relay",
                environment=self.settings.environment,
                mint_backend=self.settings.mint_backend
            )

            session_maker = await init_database(
                DatabaseConfig.get_database_url(async_driver=True, url=self.settings.database_url)
            )
            if self.settings.database_create_tables:
                await DatabaseManager.create_tables()

            self.store = SqlAlchemyAttemptStore(session_maker)

            self.mint_client = build_mint_client(self.settings)
            if with_minting:
                await self.mint_client.initialize()

            if self.settings.xp_verifier_address:
                self.proof_verifier = ContractProofVerifier.from_settings(self.store, self.settings)
            else:
                self.logger.warning(
                    "No XP verifier configured, high-value badges will wait for verification"
                )

            self.retry_queue = RetryQueue(
                store=self.store,
                mint_client=self.mint_client,
                proof_verifier=self.proof_verifier,
                config=RetryConfig.from_settings(self.settings),
            )

            if self.settings.recovery_enabled and self.settings.hodl_manager_address:
                self.log_source = RunCompletedLogSource.from_settings(self.settings)
                self.scanner = EventRecoveryScanner(
                    store=self.store,
                    log_source=self.log_source,
                    completion_handler=RunLogCompletionHandler(self.store),
                    retry_queue=self.retry_queue,
                    config=RecoveryConfig.from_settings(self.settings),
                )
            else:
                self.logger.warning("Event recovery disabled")

            self.logger.info("Badge relay initialized")

        except Exception as e:
            self.logger.error("Failed to initialize badge relay", error=str(e))
            raise

    async def start(self) -> None:
        """Reload unfinished attempts, start the queue and run startup recovery."""
        self.logger.info("Starting badge relay")
        self.running = True

        await self.retry_queue.load_pending_attempts()
        await self.retry_queue.start()

        if self.scanner is not None:
            self.tasks.append(asyncio.create_task(self.scanner.recover()))
        self.tasks.append(asyncio.create_task(self._periodic_stats()))

        self.logger.info("Badge relay started")

    async def run_until_stopped(self) -> None:
        await self._shutdown_event.wait()

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    async def stop(self) -> None:
        """Stop background work, let the in-flight mint finish, close connections."""
        if not self.running and not self.tasks:
            await self._close_clients()
            return

        self.logger.info("Stopping badge relay")
        self.running = False

        if self.scanner is not None:
            self.scanner.stop()

        for task in self.tasks:
            if not task.done():
                task.cancel()
        if self.tasks:
            await asyncio.gather(*self.tasks, return_exceptions=True)
        self.tasks = []

        if self.retry_queue is not None:
            await self.retry_queue.shutdown()

        await self._close_clients()
        self.logger.info("Badge relay stopped")

    async def _close_clients(self) -> None:
        for client in (self.mint_client, self.proof_verifier, self.log_source):
            if client is None:
                continue
            try:
                await client.close()
            except Exception as e:
                self.logger.warning("Error closing client", client=type(client).__name__, error=str(e))
        await close_database()

    async def _periodic_stats(self) -> None:
        """Log queue and recovery statistics every few minutes."""
        while self.running:
            try:
                await asyncio.sleep(STATS_INTERVAL)
                if not self.running:
                    break

                queue_stats = self.retry_queue.get_stats()
                status_counts = await self.retry_queue.get_status_counts()
                recovery_stats = await self.scanner.get_stats() if self.scanner is not None else None

                self.logger.info(
                    "Badge relay stats",
                    queue=queue_stats,
                    attempts=status_counts,
                    recovery=recovery_stats
                )

                health = await self.retry_queue.health_check()
                if not health["healthy"]:
                    self.logger.warning("Retry queue worker is not running, restarting")
                    await self.retry_queue.stop()
                    await self.retry_queue.start()

            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error("Stats collection error", error=str(e))


async def main() -> None:
    """Run the badge relay until SIGINT or SIGTERM."""
    setup_logging()

    service = BadgeRelayService()
    loop = asyncio.get_running_loop()

    def signal_handler(signum, frame):
        logger.info("Received signal, shutting down", signal=signum)
        loop.call_soon_threadsafe(service.request_shutdown)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await service.initialize()
        await service.start()
        await service.run_until_stopped()
    except Exception as e:
        logger.error("Badge relay failed", error=str(e))
        raise
    finally:
        await service.stop()


if __name__ == "__main__":
    asyncio.run(main())
