"""
Test the run-completion handler.
"""

import pytest

from badge_relay.core.exceptions import ValidationError
from badge_relay.services.run_completion import RunLogCompletionHandler
from badge_relay.services.types import MissedEventRecord, RunCompletionData

from .conftest import PLAYER, make_log, tx_hash


@pytest.fixture
def handler(store):
    return RunLogCompletionHandler(store)


@pytest.mark.asyncio
async def test_run_recorded_with_tx_hash_seed(handler, store):
    event = MissedEventRecord.from_log(make_log(123, 1, xp=55))

    run_id = await handler.handle_run_completion(RunCompletionData.from_missed_event(event))

    run = await store.find_run_by_tx_hash(tx_hash(1))
    assert run.id == run_id
    assert run.seed == tx_hash(1)
    assert run.xp_earned == 55
    assert run.block_number == 123
    assert run.recovered is True


@pytest.mark.asyncio
async def test_same_transaction_is_idempotent(handler):
    """Replaying the same log twice yields the same run."""
    data = RunCompletionData.from_missed_event(MissedEventRecord.from_log(make_log(123, 1)))

    first = await handler.handle_run_completion(data)
    second = await handler.handle_run_completion(data)

    assert first == second


@pytest.mark.asyncio
async def test_run_without_tx_hash(handler, store):
    data = RunCompletionData(
        player_address=PLAYER,
        xp_earned=10,
        cp_earned=1,
        dbp_minted=0.0,
        duration=30,
        bonus_throw_used=True,
        boosts_used=[],
    )

    run_id = await handler.handle_run_completion(data)

    latest = await store.get_latest_run()
    assert latest.id == run_id
    assert latest.seed is None
    assert latest.recovered is False


@pytest.mark.asyncio
async def test_missing_player_rejected(handler):
    data = RunCompletionData(
        player_address="",
        xp_earned=10,
        cp_earned=1,
        dbp_minted=0.0,
        duration=30,
        bonus_throw_used=False,
        boosts_used=[],
    )

    with pytest.raises(ValidationError):
        await handler.handle_run_completion(data)
