"""TickScheduler - epoch-guarded driver for runtime ticks.

One tick at a time: try_tick() refuses to start while another tick is in
flight. Work is invalidated by bumping the epoch; every tick callback gets
an abort check bound to the epoch it started in, and stops applying
anything once that epoch is gone.

Usage:
    scheduler = TickScheduler()
    scheduler.start()
    await scheduler.run_forever(session.tick_once)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from ..config import get

logger = logging.getLogger(__name__)

AbortCheck = Callable[[], bool]
# A tick callback returns True when the run is finished
TickCallback = Callable[[AbortCheck], bool]

MODES = ("auto", "step")


class TickScheduler:
    """Owns the epoch counter, the in-flight flag and the auto-run loop."""

    def __init__(self, tick_interval_ms: int | None = None, mode: str | None = None) -> None:
        self.epoch = 0
        self.in_flight = False
        self.running = False
        self.mode = mode or str(get("runtime.mode", "auto"))
        if self.mode not in MODES:
            raise ValueError(f"mode must be one of {MODES}, got {self.mode!r}")
        self.tick_interval_ms = (
            tick_interval_ms if tick_interval_ms is not None
            else int(get("runtime.tick_interval_ms", 2000))
        )
        self.ticks_run = 0
        self.skipped_ticks = 0

    def bump_epoch(self, reason: str = "") -> int:
        """Invalidate all in-flight work and stop auto mode."""
        self.epoch += 1
        self.running = False
        logger.info("Epoch -> %d (%s)", self.epoch, reason or "unspecified")
        return self.epoch

    def should_abort_for(self, epoch: int) -> AbortCheck:
        def should_abort() -> bool:
            return self.epoch != epoch
        return should_abort

    @property
    def is_active(self) -> bool:
        """True while auto mode is on or a tick is executing."""
        return self.running or self.in_flight

    def try_tick(self, callback: TickCallback) -> bool | None:
        """Run one tick unless one is already executing.

        Returns:
            None if skipped, otherwise the callback's "done" flag.
        """
        if self.in_flight:
            self.skipped_ticks += 1
            logger.debug("Tick skipped: previous tick still in flight")
            return None
        self.in_flight = True
        try:
            done = callback(self.should_abort_for(self.epoch))
        finally:
            self.in_flight = False
        self.ticks_run += 1
        return bool(done)

    def start(self) -> None:
        self.mode = "auto"
        self.running = True

    def stop(self, reason: str = "stop") -> None:
        self.bump_epoch(reason)

    async def run_forever(
        self,
        callback: TickCallback,
        max_ticks: int | None = None,
        delay: float | None = None,
    ) -> int:
        """Drive ticks until stopped, done, or ``max_ticks`` have run.

        Args:
            callback: Tick callback, see try_tick().
            max_ticks: Stop after this many ticks (None = no limit).
            delay: Seconds between ticks; defaults to tick_interval_ms.

        Returns:
            Number of ticks executed.
        """
        if not self.running:
            self.start()
        epoch = self.epoch
        pause = self.tick_interval_ms / 1000 if delay is None else delay
        executed = 0
        try:
            while self.running and self.epoch == epoch:
                if max_ticks is not None and executed >= max_ticks:
                    break
                done = self.try_tick(callback)
                if done is not None:
                    executed += 1
                if done:
                    logger.info("Run complete after %d tick(s)", executed)
                    break
                await asyncio.sleep(pause)
        finally:
            if self.epoch == epoch:
                self.running = False
        return executed

    async def run_for(self, callback: TickCallback, n: int, delay: float = 0) -> int:
        """Run at most ``n`` ticks back to back."""
        return await self.run_forever(callback, max_ticks=n, delay=delay)

    def get_status(self) -> dict[str, Any]:
        return {
            "epoch": self.epoch,
            "in_flight": self.in_flight,
            "running": self.running,
            "mode": self.mode,
            "tick_interval_ms": self.tick_interval_ms,
            "ticks_run": self.ticks_run,
            "skipped_ticks": self.skipped_ticks,
        }
