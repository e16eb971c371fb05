"""
Wait for the verification watermark to reach a target block.

A ``WatermarkWaiter`` owns exactly one watermark subscription and one
future. The future resolves with the first observed value that is at or
above the target, or fails if the subscription source fails. Either way the
subscription is released immediately. ``cancel()`` releases it without
touching the future.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from secure_finality.exceptions import WatermarkTimeoutError
from secure_finality.models import BlockNumber
from secure_finality.protocols import ChainClient, Unsubscribe

logger = logging.getLogger(__name__)


class WatermarkWaiter:
    """Single-shot wait for ``watermark >= target``."""

    def __init__(
        self,
        client: ChainClient,
        target: BlockNumber,
        on_observe: Optional[Callable[[BlockNumber], None]] = None,
    ) -> None:
        if target < 0:
            raise ValueError(f"Target block must be non-negative, got {target}")
        self._client = client
        self.target = target
        self._on_observe = on_observe
        self._future: asyncio.Future[BlockNumber] = asyncio.get_running_loop().create_future()
        self._unsubscribe: Optional[Unsubscribe] = None
        self._closed = False
        self.observed: Optional[BlockNumber] = None

    @property
    def future(self) -> asyncio.Future[BlockNumber]:
        return self._future

    @property
    def closed(self) -> bool:
        return self._closed

    async def start(self) -> asyncio.Future[BlockNumber]:
        """Open the subscription and return the future."""
        try:
            unsubscribe = await self._client.subscribe_watermark(self._on_value, self._on_error)
        except Exception as exc:
            self._on_error(exc)
            return self._future

        # The replayed current value may already have settled the wait.
        if self._closed:
            unsubscribe()
        else:
            self._unsubscribe = unsubscribe
        return self._future

    def cancel(self) -> None:
        """Tear down the subscription; the future is left pending."""
        if self._closed:
            return
        logger.debug(
            "Watermark wait for #%d cancelled",
            self.target,
            extra={"event": "watermark.wait_cancelled", "target": self.target},
        )
        self._close()

    def _on_value(self, value: Optional[BlockNumber]) -> None:
        if self._closed or value is None:
            return
        self.observed = value
        if self._on_observe is not None:
            self._on_observe(value)
        if value >= self.target:
            logger.debug(
                "Watermark #%d reached target #%d",
                value,
                self.target,
                extra={"event": "watermark.reached", "target": self.target, "watermark": value},
            )
            self._close()
            if not self._future.done():
                self._future.set_result(value)

    def _on_error(self, exc: BaseException) -> None:
        if self._closed:
            return
        logger.warning(
            "Watermark subscription failed while waiting for #%d: %s",
            self.target,
            exc,
            extra={"event": "watermark.subscription_failed", "target": self.target},
        )
        self._close()
        if not self._future.done():
            self._future.set_exception(exc)

    def _close(self) -> None:
        self._closed = True
        unsubscribe, self._unsubscribe = self._unsubscribe, None
        if unsubscribe is not None:
            unsubscribe()


async def wait_for_watermark(
    client: ChainClient,
    target: BlockNumber,
    *,
    timeout: Optional[float] = None,
    on_observe: Optional[Callable[[BlockNumber], None]] = None,
) -> BlockNumber:
    """
    Wait until the watermark is at or above ``target``.

    Args:
        client: Node connection
        target: Block number the watermark must reach
        timeout: Optional deadline in seconds
        on_observe: Called with every watermark value seen while waiting

    Returns:
        The first watermark value that satisfied the target

    Raises:
        ChainConnectionError: If the subscription fails
        WatermarkTimeoutError: If ``timeout`` elapses first
    """
    waiter = WatermarkWaiter(client, target, on_observe=on_observe)
    future = await waiter.start()
    try:
        if timeout is None:
            return await future
        try:
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            raise WatermarkTimeoutError(target, waiter.observed, timeout) from None
    finally:
        waiter.cancel()
