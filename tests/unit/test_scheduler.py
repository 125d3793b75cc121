"""Unit tests for SweepScheduler."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from escrow_service.application.scheduler import SweepScheduler
from tests.conftest import NOW


def make_scheduler(release_result=0, resolve_result=0, **kwargs) -> tuple[SweepScheduler, MagicMock, MagicMock]:
    escrow = MagicMock()
    escrow.auto_release_sweep = AsyncMock(return_value=release_result)
    disputes = MagicMock()
    disputes.auto_resolve_sweep = AsyncMock(return_value=resolve_result)
    return SweepScheduler(escrow, disputes, **kwargs), escrow, disputes


class TestSweepScheduler:
    """Tests for SweepScheduler."""

    @pytest.mark.asyncio
    async def test_run_once_runs_every_sweep(self) -> None:
        scheduler, escrow, disputes = make_scheduler(release_result=2, resolve_result=1)

        results = await scheduler.run_once(NOW)

        assert results == {"auto_release": 2, "auto_resolve": 1}
        escrow.auto_release_sweep.assert_awaited_once_with(NOW)
        disputes.auto_resolve_sweep.assert_awaited_once_with(NOW)

    @pytest.mark.asyncio
    async def test_failing_sweep_does_not_block_others(self) -> None:
        """A sweep that raises counts as zero and the next sweep still runs."""
        scheduler, escrow, disputes = make_scheduler(resolve_result=3)
        escrow.auto_release_sweep.side_effect = RuntimeError("database down")

        results = await scheduler.run_once(NOW)

        assert results == {"auto_release": 0, "auto_resolve": 3}
        disputes.auto_resolve_sweep.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_start_and_stop(self) -> None:
        scheduler, escrow, disputes = make_scheduler(
            release_interval_seconds=0.01,
            resolve_interval_seconds=0.01,
        )

        await scheduler.start()
        assert scheduler.running
        await asyncio.sleep(0.05)
        await scheduler.stop()

        assert not scheduler.running
        assert escrow.auto_release_sweep.await_count >= 1
        assert disputes.auto_resolve_sweep.await_count >= 1

    @pytest.mark.asyncio
    async def test_loop_survives_failures(self) -> None:
        scheduler, escrow, _ = make_scheduler(release_interval_seconds=0.01, resolve_interval_seconds=10)
        escrow.auto_release_sweep.side_effect = RuntimeError("boom")

        await scheduler.start()
        await asyncio.sleep(0.05)
        await scheduler.stop()

        assert escrow.auto_release_sweep.await_count >= 2

    @pytest.mark.asyncio
    async def test_stop_without_start(self) -> None:
        scheduler, _, _ = make_scheduler()

        await scheduler.stop()

        assert not scheduler.running
