import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

import structlog

from escrow_service.application.disputes import DisputeEngine
from escrow_service.application.escrow import EscrowEngine


logger = structlog.get_logger()

Sweep = Callable[[datetime], Awaitable[int]]


class SweepScheduler:
    """
    Runs the escrow auto-release and dispute auto-resolve sweeps periodically.

    Each sweep has its own loop; a failing run is logged and the loop waits
    for the next interval. Per-item isolation lives inside the sweeps.
    """

    def __init__(
        self,
        escrow: EscrowEngine,
        disputes: DisputeEngine,
        release_interval_seconds: float = 3600.0,
        resolve_interval_seconds: float = 14400.0,
    ) -> None:
        self._sweeps: dict[str, tuple[Sweep, float]] = {
            "auto_release": (escrow.auto_release_sweep, release_interval_seconds),
            "auto_resolve": (disputes.auto_resolve_sweep, resolve_interval_seconds),
        }
        self._running = False
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        self._running = True
        self._tasks = [
            asyncio.create_task(self._loop(name, sweep, interval), name=f"sweep-{name}")
            for name, (sweep, interval) in self._sweeps.items()
        ]
        logger.info(
            "sweep_scheduler_started",
            sweeps={name: interval for name, (_, interval) in self._sweeps.items()},
        )

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks = []
        logger.info("sweep_scheduler_stopped")

    async def run_once(self, now: datetime | None = None) -> dict[str, int]:
        """Run every sweep once, in order. Used by the admin trigger and tests."""
        now = now or datetime.now(UTC)
        results: dict[str, int] = {}
        for name, (sweep, _) in self._sweeps.items():
            results[name] = await self._run(name, sweep, now)
        return results

    async def _loop(self, name: str, sweep: Sweep, interval: float) -> None:
        while self._running:
            await self._run(name, sweep, datetime.now(UTC))
            await asyncio.sleep(interval)

    async def _run(self, name: str, sweep: Sweep, now: datetime) -> int:
        try:
            count = await sweep(now)
        except Exception as e:
            logger.error("sweep_run_failed", sweep=name, error=str(e), exc_info=True)
            return 0
        logger.info("sweep_run_completed", sweep=name, count=count)
        return count
