"""
Protocol interfaces for the collaborators of the secure finality components.

The waiter, tracker and advancer depend only on ``ChainClient``; the
concrete node client depends on ``ExtrinsicCodec`` for everything that
needs runtime metadata or a signing key.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Protocol, runtime_checkable

from secure_finality.models import (
    AdvanceCall,
    BlockHeader,
    BlockNumber,
    DispatchOutcome,
    TxStatusUpdate,
)

Unsubscribe = Callable[[], None]
WatermarkCallback = Callable[[BlockNumber], None]
ErrorCallback = Callable[[BaseException], None]
StatusCallback = Callable[[TxStatusUpdate], None]


@runtime_checkable
class ChainClient(Protocol):
    """
    Protocol for the node connection.

    Concurrency: one instance is shared by every tracker and the advancer.
    Implementations MUST allow concurrent reads, subscriptions and
    submissions. Callbacks are invoked on the event loop thread, in the
    order the node produced the notifications.
    """

    async def get_finalized_height(self) -> BlockNumber:
        """
        Return the number of the latest finalized block.

        Raises:
            ChainConnectionError: On transport failure
        """
        ...

    async def get_header(self, block_hash: str) -> BlockHeader:
        """
        Return the header of ``block_hash``.

        Raises:
            NotFoundError: If the block is unknown
        """
        ...

    async def get_watermark(self) -> BlockNumber:
        """Return the current watermark value (0 when never set)."""
        ...

    async def subscribe_watermark(
        self,
        on_value: WatermarkCallback,
        on_error: ErrorCallback,
    ) -> Unsubscribe:
        """
        Subscribe to watermark changes.

        ``on_value`` fires with the current value as soon as the
        subscription is established, then on every change. ``on_error``
        fires once if the subscription source fails.
        """
        ...

    async def submit_transaction(
        self,
        signed_payload: str,
        on_status: StatusCallback,
    ) -> Unsubscribe:
        """
        Submit a signed extrinsic and watch it.

        The ``FINALIZED`` update carries the decoded dispatch outcome.
        Transport failures arrive as a ``TxStatus.ERROR`` update.
        """
        ...

    async def submit_privileged_call(
        self,
        call: AdvanceCall,
        on_status: StatusCallback,
    ) -> Unsubscribe:
        """Sign and submit the watermark advancement call; same status shape."""
        ...


@runtime_checkable
class ExtrinsicCodec(Protocol):
    """
    Protocol for metadata-aware encoding and signing.

    Methods are blocking; the node client runs them in a worker thread.
    """

    @property
    def signer_address(self) -> str:
        """SS58 address of the signing key."""
        ...

    def has_storage(self, pallet: str, storage: str) -> bool:
        ...

    def has_call(self, pallet: str, function: str) -> bool:
        ...

    def storage_key(self, pallet: str, storage: str) -> str:
        """Hex storage key of a plain storage value."""
        ...

    def sign_call(
        self,
        pallet: str,
        function: str,
        params: Dict[str, Any],
        wrap_in: tuple[str, str] | None = None,
    ) -> str:
        """Compose, optionally wrap (e.g. ``("Sudo", "sudo")``), sign and return the hex extrinsic."""
        ...

    def dispatch_outcome(self, block_hash: str, extrinsic_hash: str) -> DispatchOutcome:
        """Decode the dispatch result of ``extrinsic_hash`` from the events of ``block_hash``."""
        ...
