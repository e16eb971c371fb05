"""
Shared fixtures: an in-memory ChainClient and event-loop helpers.
"""
import asyncio
from collections import deque
from typing import Any, Callable, List, Optional, Tuple

import pytest

from secure_finality.exceptions import NotFoundError
from secure_finality.models import (
    AdvanceCall,
    BlockHeader,
    DispatchOutcome,
    TxStatus,
    TxStatusUpdate,
)


class FakeChainClient:
    """
    In-memory ChainClient.

    - ``finalized_heights``: samples consumed one per read; the last one sticks
    - ``watermark``: current value; ``set_watermark`` notifies subscribers
    - ``script``: updates delivered (via ``call_soon``) after each submission
    - ``privileged_mode``: "finalize" (advance the watermark and finalize),
      "fail" (finalize with a dispatch error) or "hold" (until ``release``)
    """

    def __init__(self, finalized: int = 0, watermark: int = 0):
        self.finalized_heights: deque = deque()
        self._finalized = finalized
        self.watermark = watermark
        self.headers: dict = {}
        self.read_errors: deque = deque()
        self.replay_on_subscribe = True
        self.subscribe_error: Optional[BaseException] = None
        self.submit_error: Optional[BaseException] = None

        self.watermark_subscribers: List[Tuple[Callable, Callable]] = []
        self.subscribe_calls = 0
        self.unsubscribe_calls = 0

        self.script: List[TxStatusUpdate] = []
        self.submitted: List[str] = []
        self.tx_listeners: List[Callable] = []
        self.tx_unsubscribed = 0

        self.privileged_mode = "finalize"
        self.privileged_calls: List[AdvanceCall] = []
        self.privileged_unsubscribed = 0
        self.held: List[Tuple[AdvanceCall, Callable]] = []

        self.signer_address = "5GrwvaEF5zXb26Fz9rcQpDWS57CtERHpNehXCPcNoHGKutQY"
        self.closed = False

    # ---- reads -------------------------------------------------------

    async def get_finalized_height(self) -> int:
        if self.read_errors:
            raise self.read_errors.popleft()
        if self.finalized_heights:
            self._finalized = self.finalized_heights.popleft()
        return self._finalized

    async def get_header(self, block_hash: str) -> BlockHeader:
        if block_hash not in self.headers:
            raise NotFoundError(f"Unknown block {block_hash}")
        return BlockHeader(number=self.headers[block_hash], hash=block_hash)

    async def get_watermark(self) -> int:
        return self.watermark

    # ---- watermark subscription -------------------------------------

    async def subscribe_watermark(self, on_value, on_error):
        if self.subscribe_error is not None:
            raise self.subscribe_error
        entry = (on_value, on_error)
        self.watermark_subscribers.append(entry)
        self.subscribe_calls += 1
        if self.replay_on_subscribe:
            on_value(self.watermark)

        def unsubscribe():
            if entry in self.watermark_subscribers:
                self.watermark_subscribers.remove(entry)
                self.unsubscribe_calls += 1

        return unsubscribe

    def set_watermark(self, value: int) -> None:
        self.watermark = value
        for on_value, _ in list(self.watermark_subscribers):
            on_value(value)

    def fail_watermark(self, exc: BaseException) -> None:
        subscribers, self.watermark_subscribers = self.watermark_subscribers, []
        for _, on_error in subscribers:
            on_error(exc)

    # ---- submissions -------------------------------------------------

    async def submit_transaction(self, signed_payload: str, on_status):
        if self.submit_error is not None:
            raise self.submit_error
        self.submitted.append(signed_payload)
        self.tx_listeners.append(on_status)
        loop = asyncio.get_running_loop()
        for update in self.script:
            loop.call_soon(on_status, update)

        def unsubscribe():
            self.tx_unsubscribed += 1

        return unsubscribe

    def emit(self, update: TxStatusUpdate, index: int = -1) -> None:
        self.tx_listeners[index](update)

    async def submit_privileged_call(self, call: AdvanceCall, on_status):
        self.privileged_calls.append(call)
        loop = asyncio.get_running_loop()
        if self.privileged_mode == "finalize":
            loop.call_soon(self._finalize, call, on_status)
        elif self.privileged_mode == "fail":
            loop.call_soon(
                on_status,
                TxStatusUpdate(
                    TxStatus.FINALIZED,
                    block_hash="0xadv",
                    dispatch=DispatchOutcome.failed("Sudo", "RequireSudo", ("Sender must be the Sudo account",)),
                ),
            )
        else:
            self.held.append((call, on_status))

        def unsubscribe():
            self.privileged_unsubscribed += 1

        return unsubscribe

    def release(self) -> None:
        held, self.held = self.held, []
        for call, on_status in held:
            self._finalize(call, on_status)

    def _finalize(self, call: AdvanceCall, on_status) -> None:
        on_status(TxStatusUpdate(TxStatus.READY))
        on_status(TxStatusUpdate(TxStatus.IN_BLOCK, block_hash="0xadv"))
        self.set_watermark(max(self.watermark, call.target))
        on_status(TxStatusUpdate(TxStatus.FINALIZED, block_hash="0xadv", dispatch=DispatchOutcome.ok()))

    # ---- extras used by the CLI -------------------------------------

    async def sign_transfer(self, dest: str, amount: int) -> str:
        return "0x" + "00" * 8

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_client():
    return FakeChainClient()


@pytest.fixture
def make_client():
    """Factory for clients with a given finalized height and watermark."""
    return FakeChainClient


async def _settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


async def _wait_until(predicate: Callable[[], Any], timeout: float = 1.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def settle():
    """Let queued callbacks and woken tasks run."""
    return _settle


@pytest.fixture
def wait_until():
    """Poll ``predicate`` on the loop until it holds."""
    return _wait_until
