import asyncio
import contextlib
import logging

from config.settings import settings

from .engine import EnforcementCore, SweepReport

logger = logging.getLogger(__name__)


class SweepScheduler:
    """Runs the periodic sweeps in a background task until stopped."""

    def __init__(self, core: EnforcementCore, interval: float | None = None) -> None:
        self.core = core
        self.interval = interval or settings.sweep_interval_seconds
        self.passes = 0
        self._task: asyncio.Task | None = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> SweepReport | None:
        """One sweep pass. Failures are logged and the next pass tries again."""
        try:
            report = await self.core.run_sweeps()
        except Exception as e:
            logger.exception(f"Sweep pass failed: {e}")
            return None
        finally:
            self.passes += 1

        logger.debug(
            f"Sweep pass {self.passes}: {len(report.lifted_mutes)} mute(s) lifted, "
            f"{len(report.closed_incidents)} incident(s) closed"
        )
        return report

    async def _loop(self) -> None:
        logger.info(f"Sweep scheduler started (every {self.interval}s)")
        while not self._stopping.is_set():
            await self.run_once()
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
        logger.info("Sweep scheduler stopped")

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._loop(), name="tss-sweeps")

    async def stop(self) -> None:
        self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None
