"""
Drive one submitted transaction through to "secure finalized".

The ordinary pool lifecycle (Ready, Broadcast, InBlock, Finalized) is
forwarded to the caller as it happens. Once the transaction is finalized
without a dispatch error, the tracker waits for the verification watermark
to pass the inclusion block and then emits one synthetic
``SecureFinalized`` event, which is always the last callback on the
success path.

Usage:
    tracker = await sign_and_send_secure(client, signed_hex, on_event)
    terminal = await tracker.wait()
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from secure_finality.models import (
    BlockNumber,
    Broadcast,
    Failed,
    Finalized,
    InBlock,
    LifecycleEvent,
    Ready,
    SecureFinalized,
    TxStatus,
    TxStatusUpdate,
)
from secure_finality.protocols import ChainClient, Unsubscribe
from secure_finality.watermark import wait_for_watermark

logger = logging.getLogger(__name__)

EventCallback = Callable[[LifecycleEvent], Union[None, Awaitable[None]]]


class TrackerState(Enum):
    SUBMITTED = 0
    READY = 1
    BROADCAST = 2
    IN_BLOCK = 3
    FINALIZED = 4
    AWAITING_SECURE = 5
    FAILED = 6
    SECURE_FINALIZED = 7

    @property
    def is_terminal(self) -> bool:
        return self in (TrackerState.FAILED, TrackerState.SECURE_FINALIZED)


_ORDINARY_STATES = {
    TxStatus.READY: TrackerState.READY,
    TxStatus.BROADCAST: TrackerState.BROADCAST,
    TxStatus.IN_BLOCK: TrackerState.IN_BLOCK,
}


class TxFinalityTracker:
    """
    Lifecycle tracker for a single transaction.

    State only moves forward: Submitted -> Ready -> Broadcast -> InBlock ->
    Finalized -> (Failed | AwaitingSecure -> SecureFinalized). Pool updates
    that would move it backwards or repeat a state are dropped.

    ``unsubscribe()`` stops ordinary notifications only. A secure wait that
    has already started keeps running and still delivers
    ``SecureFinalized``.
    """

    def __init__(
        self,
        client: ChainClient,
        callback: Optional[EventCallback] = None,
        *,
        wait_timeout: Optional[float] = None,
        label: str = "tx",
    ) -> None:
        self._client = client
        self._callback = callback
        self._wait_timeout = wait_timeout
        self.label = label
        self._state = TrackerState.SUBMITTED
        self._updates: asyncio.Queue[TxStatusUpdate] = asyncio.Queue()
        self._done: asyncio.Future[LifecycleEvent] = asyncio.get_running_loop().create_future()
        self._worker: Optional[asyncio.Task[None]] = None
        self._stream_unsubscribe: Optional[Unsubscribe] = None
        self._listening = True
        self.inclusion_block: Optional[BlockNumber] = None
        self.block_hash: Optional[str] = None

    @property
    def state(self) -> TrackerState:
        return self._state

    @property
    def done(self) -> bool:
        return self._done.done()

    async def submit(self, signed_payload: str) -> "TxFinalityTracker":
        """Submit ``signed_payload`` and start tracking it."""
        if self._worker is not None:
            raise RuntimeError("Tracker already submitted")
        self._worker = asyncio.create_task(self._run())
        try:
            self._stream_unsubscribe = await self._client.submit_transaction(
                signed_payload, self._updates.put_nowait
            )
        except Exception as exc:
            self._worker.cancel()
            if not self._done.done():
                self._done.set_exception(exc)
            raise
        logger.info(
            "Submitted %s",
            self.label,
            extra={"event": "tracker.submitted", "tx": self.label},
        )
        return self

    def unsubscribe(self) -> None:
        """Stop receiving ordinary lifecycle notifications."""
        self._listening = False
        self._close_stream()
        if self._state.value < TrackerState.FINALIZED.value:
            # Nothing can arrive any more; the secure phase will never start.
            if self._worker is not None:
                self._worker.cancel()
            if not self._done.done():
                self._done.cancel()

    async def wait(self) -> LifecycleEvent:
        """
        Wait for the terminal event.

        Returns:
            ``SecureFinalized`` or ``Failed``

        Raises:
            ChainConnectionError: Transport failure before reaching a terminal state
            WatermarkTimeoutError: When a wait deadline was configured and elapsed
            asyncio.CancelledError: If unsubscribed before finalization
        """
        return await asyncio.shield(self._done)

    async def _run(self) -> None:
        try:
            while not self._state.is_terminal:
                update = await self._updates.get()
                await self._handle(update)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(
                "Tracking %s failed: %s",
                self.label,
                exc,
                extra={"event": "tracker.failed", "tx": self.label, "state": self._state.name},
            )
            self._close_stream()
            if not self._done.done():
                self._done.set_exception(exc)

    async def _handle(self, update: TxStatusUpdate) -> None:
        status = update.status
        if status is TxStatus.ERROR:
            raise update.error or RuntimeError("transaction watch failed")

        if status in _ORDINARY_STATES:
            target = _ORDINARY_STATES[status]
            if not self._advance(target):
                return
            if status is TxStatus.READY:
                await self._emit(Ready())
            elif status is TxStatus.BROADCAST:
                await self._emit(Broadcast())
            else:
                self.block_hash = update.block_hash
                await self._emit(InBlock(block_hash=update.block_hash or ""))
            return

        if status is TxStatus.FINALIZED:
            await self._on_finalized(update)
            return

        if status.is_pool_failure:
            self._close_stream()
            self._state = TrackerState.FAILED
            event = Failed(detail=f"Transaction {status.value}")
            await self._emit(event, always=True)
            self._finish(event)
            return

        # future / retracted: informational only
        logger.debug(
            "%s status %s",
            self.label,
            status.value,
            extra={"event": "tracker.status_ignored", "tx": self.label, "status": status.value},
        )

    async def _on_finalized(self, update: TxStatusUpdate) -> None:
        if not self._advance(TrackerState.FINALIZED):
            return
        self._close_stream()
        block_hash = update.block_hash or ""
        header = await self._client.get_header(block_hash)
        self.block_hash = block_hash
        self.inclusion_block = header.number
        await self._emit(Finalized(block_hash=block_hash, block_number=header.number))

        outcome = update.dispatch
        if outcome is not None and not outcome.success:
            error = outcome.error
            self._state = TrackerState.FAILED
            logger.warning(
                "%s failed in block #%d: %s",
                self.label,
                header.number,
                error,
                extra={"event": "tracker.dispatch_failed", "tx": self.label, "block": header.number},
            )
            event = Failed(detail=str(error), error=error)
            await self._emit(event, always=True)
            self._finish(event)
            return

        self._state = TrackerState.AWAITING_SECURE
        logger.info(
            "%s finalized in block #%d; waiting for watermark",
            self.label,
            header.number,
            extra={"event": "tracker.awaiting_secure", "tx": self.label, "block": header.number},
        )
        await wait_for_watermark(self._client, header.number, timeout=self._wait_timeout)

        self._state = TrackerState.SECURE_FINALIZED
        event = SecureFinalized(block_number=header.number)
        logger.info(
            "%s secure finalized at #%d",
            self.label,
            header.number,
            extra={"event": "tracker.secure_finalized", "tx": self.label, "block": header.number},
        )
        await self._emit(event, always=True)
        self._finish(event)

    def _advance(self, target: TrackerState) -> bool:
        if target.value <= self._state.value:
            logger.debug(
                "%s dropping %s update in state %s",
                self.label,
                target.name,
                self._state.name,
                extra={"event": "tracker.out_of_order", "tx": self.label},
            )
            return False
        self._state = target
        return True

    async def _emit(self, event: LifecycleEvent, always: bool = False) -> None:
        if self._callback is None:
            return
        if not self._listening and not always:
            return
        result: Any = self._callback(event)
        if inspect.isawaitable(result):
            await result

    def _finish(self, event: LifecycleEvent) -> None:
        if not self._done.done():
            self._done.set_result(event)

    def _close_stream(self) -> None:
        unsubscribe, self._stream_unsubscribe = self._stream_unsubscribe, None
        if unsubscribe is not None:
            unsubscribe()


async def sign_and_send_secure(
    client: ChainClient,
    signed_payload: str,
    callback: Optional[EventCallback] = None,
    *,
    wait_timeout: Optional[float] = None,
    label: str = "tx",
) -> TxFinalityTracker:
    """
    Submit ``signed_payload`` and track it until secure finalized.

    ``callback`` is invoked once per lifecycle event in chronological
    order. The returned tracker's ``unsubscribe()`` stops ordinary
    notifications; ``wait()`` returns the terminal event.
    """
    tracker = TxFinalityTracker(client, callback, wait_timeout=wait_timeout, label=label)
    return await tracker.submit(signed_payload)
