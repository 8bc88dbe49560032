"""
Run-completion pipeline.

Turns a completed game run into a stored run record. Event recovery
replays missed RunCompleted logs through the same handler the live
listener uses, and uses the returned run id for the badge claim.
"""

from abc import ABC, abstractmethod

import structlog

from badge_relay.core.exceptions import ValidationError
from .attempt_store import AttemptStore
from .types import RunCompletionData, RunRecord


logger = structlog.get_logger(__name__)


class RunCompletionHandler(ABC):
    """Processes one completed run and returns its run id."""

    @abstractmethod
    async def handle_run_completion(self, data: RunCompletionData) -> str:
        """Persist the run and return its id."""


class RunLogCompletionHandler(RunCompletionHandler):
    """
    Stores completed runs in `run_logs`.

    The originating transaction hash is stored as the run seed, so the
    recovery scanner recognizes the log as processed on its next pass.
    Handling the same transaction twice returns the existing run id.
    """

    def __init__(self, store: AttemptStore):
        self.store = store
        self.logger = logger.bind(service="run_completion")

    async def handle_run_completion(self, data: RunCompletionData) -> str:
        if not data.player_address:
            raise ValidationError("Run completion is missing a player address")

        if data.tx_hash:
            existing = await self.store.find_run_by_tx_hash(data.tx_hash)
            if existing and existing.seed == data.tx_hash.lower():
                self.logger.debug(
                    "Run already recorded",
                    run_id=existing.id,
                    tx_hash=data.tx_hash
                )
                return existing.id

        record = RunRecord(
            player_address=data.player_address.lower(),
            seed=data.tx_hash.lower() if data.tx_hash else None,
            xp_earned=data.xp_earned,
            cp_earned=data.cp_earned,
            dbp_minted=data.dbp_minted,
            duration=data.duration,
            bonus_throw_used=data.bonus_throw_used,
            boosts_used=list(data.boosts_used),
            block_number=data.block_number,
            status=data.status,
            recovered=data.recovered,
        )
        run_id = await self.store.insert_run(record)

        self.logger.info(
            "Run recorded",
            run_id=run_id,
            player=record.player_address,
            xp=data.xp_earned,
            block_number=data.block_number,
            recovered=data.recovered
        )
        return run_id
