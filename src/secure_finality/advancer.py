"""
Keep the verification watermark moving with the finalized head.

Every ``interval`` seconds the loop starts a tick. A tick reads the
finalized height and the watermark concurrently; if the lag is at least
``min_lag`` it submits one privileged advancement call targeting the
finalized height and waits for that call to finalize. A tick that starts
while another tick's advancement is still outstanding does nothing: work
is dropped, never queued.

Errors never end the loop. A failed tick (transport error or dispatch
error) adds a fixed cooldown before the next regular interval.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from secure_finality.exceptions import SubmissionError
from secure_finality.models import AdvanceCall, BlockNumber, TxStatus, TxStatusUpdate
from secure_finality.protocols import ChainClient

logger = logging.getLogger(__name__)


class TickOutcome(str, Enum):
    UP_TO_DATE = "up_to_date"
    ADVANCED = "advanced"
    DRY_RUN = "dry_run"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class TickResult:
    outcome: TickOutcome
    finalized: Optional[BlockNumber] = None
    watermark: Optional[BlockNumber] = None
    target: Optional[BlockNumber] = None
    error: Optional[BaseException] = None


class WatermarkAdvancer:
    """
    Periodic watermark advancement loop.

    All loop state (the in-flight guard, the stop signal, the pending
    cooldown) belongs to the instance, so several advancers can run side by
    side against different clients.
    """

    def __init__(
        self,
        client: ChainClient,
        *,
        interval: float = 6.0,
        cooldown: float = 1.0,
        grace_period: float = 5.0,
        dry_run: bool = False,
        min_lag: int = 1,
        call_label: str = "Anchor.note_anchor_verified",
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        if cooldown < 0 or grace_period < 0:
            raise ValueError("cooldown and grace_period must be non-negative")
        if min_lag < 1:
            raise ValueError("min_lag must be at least 1")

        self._client = client
        self.interval = interval
        self.cooldown = cooldown
        self.grace_period = grace_period
        self.dry_run = dry_run
        self.min_lag = min_lag
        self.call_label = call_label

        self._in_flight = False
        self._cooldown_pending = False
        self._stop = asyncio.Event()
        self._tick_task: Optional[asyncio.Task[TickResult]] = None

        self.ticks = 0
        self.skipped_ticks = 0
        self.advancements_issued = 0
        self.failures = 0

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        """Ask the loop to stop at the next tick boundary."""
        if not self._stop.is_set():
            logger.info("Stopping watermark advancer", extra={"event": "advancer.stop_requested"})
        self._stop.set()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "ticks": self.ticks,
            "skipped_ticks": self.skipped_ticks,
            "advancements_issued": self.advancements_issued,
            "failures": self.failures,
            "in_flight": self._in_flight,
            "dry_run": self.dry_run,
        }

    async def run(self) -> None:
        """Run until ``stop()`` is called."""
        logger.info(
            "Watermark advancer started: interval=%ss dry_run=%s",
            self.interval,
            self.dry_run,
            extra={"event": "advancer.started", "interval": self.interval, "dry_run": self.dry_run},
        )
        try:
            while not self._stop.is_set():
                if self._tick_task is None or self._tick_task.done():
                    self._tick_task = asyncio.create_task(self.tick())
                else:
                    self._record_skip()
                await self._pause(self.interval)
                if self._cooldown_pending and not self._stop.is_set():
                    self._cooldown_pending = False
                    await self._pause(self.cooldown)
        finally:
            await self._drain()
            logger.info(
                "Watermark advancer stopped",
                extra={"event": "advancer.stopped", **self.get_stats()},
            )

    async def tick(self) -> TickResult:
        """Run one comparison and, if needed, one advancement."""
        if self._in_flight:
            self._record_skip()
            return TickResult(TickOutcome.SKIPPED)

        self._in_flight = True
        self.ticks += 1
        finalized: Optional[BlockNumber] = None
        watermark: Optional[BlockNumber] = None
        try:
            finalized, watermark = await asyncio.gather(
                self._client.get_finalized_height(),
                self._client.get_watermark(),
            )
            lag = finalized - watermark
            if lag < self.min_lag:
                logger.debug(
                    "Tick: finalized=#%d watermark=#%d up-to-date",
                    finalized,
                    watermark,
                    extra={"event": "advancer.up_to_date", "finalized": finalized, "watermark": watermark},
                )
                return TickResult(TickOutcome.UP_TO_DATE, finalized, watermark)

            logger.info(
                "Advancing watermark from #%d to #%d",
                watermark,
                finalized,
                extra={"event": "advancer.advancing", "finalized": finalized, "watermark": watermark},
            )
            if self.dry_run:
                logger.info(
                    "[DRY] Would call Sudo.sudo(%s(%d))",
                    self.call_label,
                    finalized,
                    extra={"event": "advancer.dry_run", "target": finalized},
                )
                return TickResult(TickOutcome.DRY_RUN, finalized, watermark, target=finalized)

            await self._advance(finalized)
            after = await self._client.get_watermark()
            logger.info(
                "Watermark is now #%d",
                after,
                extra={"event": "advancer.advanced", "target": finalized, "watermark": after},
            )
            return TickResult(TickOutcome.ADVANCED, finalized, after, target=finalized)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.failures += 1
            self._cooldown_pending = True
            logger.error(
                "Tick failed: %s",
                exc,
                extra={"event": "advancer.tick_failed", "error_type": type(exc).__name__},
            )
            return TickResult(TickOutcome.FAILED, finalized, watermark, error=exc)
        finally:
            self._in_flight = False

    async def _advance(self, target: BlockNumber) -> str:
        """Submit the advancement and wait for it to finalize; return the block hash."""
        loop = asyncio.get_running_loop()
        finalized: asyncio.Future[str] = loop.create_future()

        def on_status(update: TxStatusUpdate) -> None:
            if finalized.done():
                return
            status = update.status
            logger.debug(
                "[sudo] %s %s",
                status.value,
                update.block_hash or "",
                extra={"event": "advancer.call_status", "status": status.value, "target": target},
            )
            if status is TxStatus.FINALIZED:
                outcome = update.dispatch
                if outcome is not None and not outcome.success:
                    finalized.set_exception(outcome.error)
                else:
                    finalized.set_result(update.block_hash or "")
            elif status is TxStatus.ERROR:
                finalized.set_exception(update.error or SubmissionError("advancement watch failed"))
            elif status.is_pool_failure:
                finalized.set_exception(
                    SubmissionError(
                        f"Advancement call {status.value}",
                        details={"status": status.value, "target": target},
                    )
                )

        unsubscribe = await self._client.submit_privileged_call(AdvanceCall(target), on_status)
        self.advancements_issued += 1
        try:
            return await finalized
        finally:
            unsubscribe()

    def _record_skip(self) -> None:
        self.skipped_ticks += 1
        logger.debug(
            "Advancement still in flight; skipping tick",
            extra={"event": "advancer.tick_skipped"},
        )

    async def _pause(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _drain(self) -> None:
        task, self._tick_task = self._tick_task, None
        if task is None or task.done():
            return
        done, _ = await asyncio.wait({task}, timeout=self.grace_period)
        if done:
            return
        logger.warning(
            "Abandoning in-flight tick after %ss grace period",
            self.grace_period,
            extra={"event": "advancer.tick_abandoned"},
        )
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
