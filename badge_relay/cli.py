"""
Operator commands for the badge relay.
"""

import asyncio
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from alembic import command
from alembic.config import Config

from badge_relay.core.database import init_database, close_database, DatabaseManager
from badge_relay.core.exceptions import ValidationError
from badge_relay.core.logging import setup_logging, get_logger
from badge_relay.models.attempt import AttemptStatus
from badge_relay.scheduler.main import BadgeRelayService, main as run_service
from badge_relay.services.attempt_store import SqlAlchemyAttemptStore
from badge_relay.services.badge_tiers import tier_name
from badge_relay.services.types import AttemptFilter, RecoveryResult

console = Console()
logger = get_logger(__name__)
app = typer.Typer(help="HamBaller badge relay commands")


def _print_recovery(result: RecoveryResult) -> None:
    table = Table(title="Event Recovery")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Status", result.status.value)
    table.add_row("Blocks", f"{result.from_block} - {result.to_block}")
    table.add_row("Missed events found", str(result.events_found))
    table.add_row("Events processed", str(result.events_processed))
    table.add_row("Attempts queued", str(result.attempts_enqueued))
    table.add_row("Chunks failed", str(result.chunks_failed))
    if result.error:
        table.add_row("Error", result.error)
    console.print(table)


@app.command()
def run():
    """Run the relay: retry queue, startup recovery and periodic stats."""
    asyncio.run(run_service())


@app.command("init-db")
def init_db():
    """Create all tables without running migrations."""
    async def _init():
        setup_logging()
        await init_database()
        await DatabaseManager.create_tables()
        await close_database()
        console.print("✅ Database initialized successfully!")

    asyncio.run(_init())


@app.command()
def upgrade(revision: str = "head"):
    """Apply migrations."""
    alembic_cfg = Config("alembic.ini")
    command.upgrade(alembic_cfg, revision)
    console.print(f"✅ Database upgraded to: {revision}")


@app.command()
def downgrade(revision: str):
    """Downgrade database to specific revision."""
    alembic_cfg = Config("alembic.ini")
    command.downgrade(alembic_cfg, revision)
    console.print(f"⬇️ Database downgraded to: {revision}")


@app.command("reset-db")
def reset_db():
    """Drop all relay tables."""
    if not typer.confirm("Are you sure you want to drop all tables?"):
        console.print("❌ Operation cancelled")
        return

    async def _reset():
        setup_logging()
        await init_database()
        await DatabaseManager.drop_tables()
        await close_database()
        console.print("🗑️ All tables dropped!")

    asyncio.run(_reset())


@app.command()
def recover():
    """Scan from the last checkpoint to the chain head and replay missed runs."""
    async def _recover():
        setup_logging()
        service = BadgeRelayService()
        try:
            await service.initialize(with_minting=False)
            if service.scanner is None:
                console.print("❌ Event recovery is disabled or HODL manager address is not set")
                raise typer.Exit(code=1)
            _print_recovery(await service.scanner.recover())
        finally:
            await service.stop()

    asyncio.run(_recover())


@app.command("manual-recover")
def manual_recover(from_block: int, to_block: int):
    """Backfill an explicit block range. Does not move the checkpoint."""
    async def _manual():
        setup_logging()
        service = BadgeRelayService()
        try:
            await service.initialize(with_minting=False)
            if service.scanner is None:
                console.print("❌ Event recovery is disabled or HODL manager address is not set")
                raise typer.Exit(code=1)
            try:
                result = await service.scanner.manual_recovery(from_block, to_block)
            except ValidationError as e:
                console.print(f"❌ {e.message}")
                raise typer.Exit(code=1)
            _print_recovery(result)
        finally:
            await service.stop()

    asyncio.run(_manual())


@app.command()
def stats():
    """Show attempt counts by status and missed event totals."""
    async def _stats():
        setup_logging()
        session_maker = await init_database()
        store = SqlAlchemyAttemptStore(session_maker)
        try:
            attempt_counts = await store.count_attempts_by_status()
            event_counts = await store.count_missed_events()
            checkpoint = await store.get_checkpoint("run_completed")
        finally:
            await close_database()

        table = Table(title="Badge Claim Attempts")
        table.add_column("Status", style="cyan")
        table.add_column("Count", style="green", justify="right")
        for status, count in attempt_counts.items():
            table.add_row(status, str(count))
        console.print(table)

        events = Table(title="Missed Run Events")
        events.add_column("Metric", style="cyan")
        events.add_column("Value", style="green", justify="right")
        events.add_row("Total", str(event_counts["total"]))
        events.add_row("Processed", str(event_counts["processed"]))
        events.add_row("Pending", str(event_counts["pending"]))
        events.add_row("Checkpoint block", str(checkpoint) if checkpoint is not None else "-")
        console.print(events)

    asyncio.run(_stats())


@app.command()
def attempts(
    status: Optional[AttemptStatus] = typer.Option(None, help="Only show attempts with this status"),
    player: Optional[str] = typer.Option(None, help="Only show attempts for this player"),
    limit: int = typer.Option(50, help="Maximum rows to show"),
):
    """List badge claim attempts."""
    async def _attempts():
        setup_logging()
        session_maker = await init_database()
        store = SqlAlchemyAttemptStore(session_maker)
        try:
            records = await store.query_attempts(AttemptFilter(
                statuses=[status] if status else None,
                player_address=player,
                limit=limit,
            ))
        finally:
            await close_database()

        table = Table(title="Badge Claim Attempts")
        table.add_column("ID", style="dim")
        table.add_column("Player", style="cyan")
        table.add_column("Run")
        table.add_column("XP", justify="right")
        table.add_column("Badge")
        table.add_column("Status", style="green")
        table.add_column("Retries", justify="right")
        table.add_column("Tx / Error")

        for record in records:
            table.add_row(
                record.id,
                record.player_address,
                record.run_id,
                str(record.xp_earned),
                tier_name(record.token_id),
                record.status.value,
                str(record.retry_count),
                record.tx_hash or record.error_message or "",
            )
        console.print(table)

    asyncio.run(_attempts())


@app.command()
def health():
    """Check database health."""
    async def _health():
        setup_logging()
        await init_database()
        is_healthy = await DatabaseManager.health_check()
        await close_database()
        if not is_healthy:
            console.print("❌ Database health check failed!")
            sys.exit(1)
        console.print("✅ Database is healthy!")

    asyncio.run(_health())


if __name__ == "__main__":
    app()
