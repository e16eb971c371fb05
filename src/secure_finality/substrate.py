"""
Concrete ``ChainClient`` for Substrate nodes.

Reads and subscriptions go over the shared JSON-RPC WebSocket; anything
needing runtime metadata or the signing key is delegated to an
``ExtrinsicCodec`` running in a worker thread. Wire payloads are converted
to the model types here and nowhere else.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from typing import Any, Optional, Set, Tuple

from secure_finality.codec import SubstrateInterfaceCodec
from secure_finality.config import ChainSurface, Settings
from secure_finality.exceptions import ConfigurationError, NotFoundError
from secure_finality.models import (
    AdvanceCall,
    BlockHeader,
    BlockNumber,
    TxStatus,
    TxStatusUpdate,
)
from secure_finality.protocols import (
    ErrorCallback,
    ExtrinsicCodec,
    StatusCallback,
    Unsubscribe,
    WatermarkCallback,
)
from secure_finality.rpc import JsonRpcWebSocket

logger = logging.getLogger(__name__)

TRANSFER_CALLS = ("transfer_keep_alive", "transfer_allow_death", "transfer")


def decode_watermark(value: Optional[str]) -> BlockNumber:
    """Decode a SCALE unsigned integer storage value; empty storage is 0."""
    if not value:
        return 0
    raw = bytes.fromhex(value[2:] if value.startswith("0x") else value)
    return int.from_bytes(raw, "little")


def parse_block_number(value: Any) -> BlockNumber:
    if isinstance(value, int):
        return value
    return int(str(value), 16) if str(value).startswith("0x") else int(value)


def extrinsic_hash(signed_payload: str) -> str:
    """blake2b-256 of the encoded extrinsic, as the node computes it."""
    raw = bytes.fromhex(signed_payload[2:] if signed_payload.startswith("0x") else signed_payload)
    return "0x" + hashlib.blake2b(raw, digest_size=32).hexdigest()


def parse_extrinsic_status(result: Any) -> Tuple[TxStatus, Optional[str]]:
    """
    Map an ``author_extrinsicUpdate`` result to a status and block hash.

    Unit variants arrive as strings (``"ready"``), the others as a
    single-key object (``{"inBlock": "0x.."}``).
    """
    if isinstance(result, str):
        return TxStatus(result), None
    if isinstance(result, dict) and len(result) == 1:
        key, value = next(iter(result.items()))
        status = TxStatus(key)
        return status, value if isinstance(value, str) else None
    raise ValueError(f"Unrecognized extrinsic status: {result!r}")


class SubstrateChainClient:
    """``ChainClient`` over a JSON-RPC transport and an extrinsic codec."""

    def __init__(
        self,
        transport: JsonRpcWebSocket,
        codec: ExtrinsicCodec,
        surface: Optional[ChainSurface] = None,
    ) -> None:
        self._transport = transport
        self._codec = codec
        self.surface = surface or ChainSurface()
        self._watermark_key: Optional[str] = None
        self._background: Set[asyncio.Task[Any]] = set()

    @classmethod
    async def connect(cls, settings: Settings, require_advance: bool = True) -> "SubstrateChainClient":
        """Open the transport and codec and validate the runtime surface."""
        transport = JsonRpcWebSocket(settings.ws_url, request_timeout=settings.request_timeout)
        await transport.connect()
        try:
            codec = await asyncio.to_thread(SubstrateInterfaceCodec, settings.ws_url, settings.seed)
            client = cls(transport, codec, settings.surface)
            await client.validate_surface(require_advance=require_advance)
        except BaseException:
            await transport.close()
            raise
        return client

    @property
    def signer_address(self) -> str:
        return self._codec.signer_address

    async def close(self) -> None:
        for task in list(self._background):
            task.cancel()
        await self._transport.close()
        close = getattr(self._codec, "close", None)
        if close is not None:
            await asyncio.to_thread(close)

    async def validate_surface(self, require_advance: bool = True) -> None:
        """
        Check the watermark storage exists and, when ``require_advance`` is
        set, the advancement call and the privileged wrapper too.

        Raises:
            ConfigurationError: Naming the first missing item
        """
        surface = self.surface
        if not await asyncio.to_thread(self._codec.has_storage, surface.pallet, surface.watermark_storage):
            raise ConfigurationError(
                f"Missing storage '{surface.watermark_label}'. Adjust PALLET or WATERMARK_STORAGE.",
                details={"pallet": surface.pallet, "storage": surface.watermark_storage},
            )
        if require_advance:
            await self._validate_advance_call()
        self._watermark_key = await asyncio.to_thread(
            self._codec.storage_key, surface.pallet, surface.watermark_storage
        )
        logger.info(
            "Runtime surface validated: %s",
            surface.watermark_label,
            extra={"event": "client.surface_validated", "advance": require_advance},
        )

    async def _validate_advance_call(self) -> None:
        surface = self.surface
        if not await asyncio.to_thread(self._codec.has_call, surface.pallet, surface.advance_call):
            raise ConfigurationError(
                f"Missing call '{surface.call_label}'. Check PALLET or ADVANCE_CALL.",
                details={"pallet": surface.pallet, "call": surface.advance_call},
            )
        if not await asyncio.to_thread(self._codec.has_call, *surface.wrapper):
            raise ConfigurationError(
                f"Missing call '{surface.privileged_pallet}.{surface.privileged_call}'.",
                details={"pallet": surface.privileged_pallet, "call": surface.privileged_call},
            )

    async def get_finalized_height(self) -> BlockNumber:
        block_hash = await self._transport.request("chain_getFinalizedHead")
        header = await self.get_header(block_hash)
        return header.number

    async def get_header(self, block_hash: str) -> BlockHeader:
        result = await self._transport.request("chain_getHeader", [block_hash])
        if result is None:
            raise NotFoundError(f"Unknown block {block_hash}", details={"block_hash": block_hash})
        return BlockHeader(
            number=parse_block_number(result["number"]),
            hash=block_hash,
            parent_hash=result.get("parentHash"),
        )

    async def get_watermark(self) -> BlockNumber:
        value = await self._transport.request("state_getStorage", [await self._storage_key()])
        return decode_watermark(value)

    async def subscribe_watermark(
        self,
        on_value: WatermarkCallback,
        on_error: ErrorCallback,
    ) -> Unsubscribe:
        key = await self._storage_key()

        def on_result(result: Any) -> None:
            for changed_key, value in result.get("changes", []):
                if changed_key == key:
                    on_value(decode_watermark(value))

        return await self._transport.subscribe(
            "state_subscribeStorage",
            [[key]],
            notification="state_storage",
            unsubscribe_method="state_unsubscribeStorage",
            on_result=on_result,
            on_error=on_error,
        )

    async def submit_transaction(self, signed_payload: str, on_status: StatusCallback) -> Unsubscribe:
        tx_hash = extrinsic_hash(signed_payload)

        def on_result(result: Any) -> None:
            try:
                status, block_hash = parse_extrinsic_status(result)
            except ValueError as exc:
                on_status(TxStatusUpdate(TxStatus.ERROR, error=exc))
                return
            if status is TxStatus.FINALIZED:
                self._spawn(self._deliver_finalized(tx_hash, block_hash or "", on_status))
            else:
                on_status(TxStatusUpdate(status, block_hash=block_hash))

        def on_error(exc: BaseException) -> None:
            on_status(TxStatusUpdate(TxStatus.ERROR, error=exc))

        unsubscribe = await self._transport.subscribe(
            "author_submitAndWatchExtrinsic",
            [signed_payload],
            notification="author_extrinsicUpdate",
            unsubscribe_method="author_unwatchExtrinsic",
            on_result=on_result,
            on_error=on_error,
        )
        logger.debug("Watching extrinsic %s", tx_hash, extra={"event": "client.submitted", "tx": tx_hash})
        return unsubscribe

    async def submit_privileged_call(self, call: AdvanceCall, on_status: StatusCallback) -> Unsubscribe:
        surface = self.surface
        payload = await asyncio.to_thread(
            self._codec.sign_call,
            surface.pallet,
            surface.advance_call,
            {surface.advance_param: call.target},
            surface.wrapper,
        )
        return await self.submit_transaction(payload, on_status)

    async def sign_transfer(self, dest: str, amount: int) -> str:
        """Sign a balance transfer using the first transfer call the runtime offers."""
        for function in TRANSFER_CALLS:
            if await asyncio.to_thread(self._codec.has_call, "Balances", function):
                return await asyncio.to_thread(
                    self._codec.sign_call,
                    "Balances",
                    function,
                    {"dest": dest, "value": amount},
                )
        raise ConfigurationError("Could not find Balances.transfer_keep_alive/transfer on this chain.")

    async def _storage_key(self) -> str:
        if self._watermark_key is None:
            self._watermark_key = await asyncio.to_thread(
                self._codec.storage_key, self.surface.pallet, self.surface.watermark_storage
            )
        return self._watermark_key

    async def _deliver_finalized(self, tx_hash: str, block_hash: str, on_status: StatusCallback) -> None:
        try:
            outcome = await asyncio.to_thread(self._codec.dispatch_outcome, block_hash, tx_hash)
        except Exception as exc:
            logger.error(
                "Could not decode dispatch outcome of %s: %s",
                tx_hash,
                exc,
                extra={"event": "client.outcome_failed", "tx": tx_hash},
            )
            on_status(TxStatusUpdate(TxStatus.ERROR, block_hash=block_hash, error=exc))
            return
        on_status(TxStatusUpdate(TxStatus.FINALIZED, block_hash=block_hash, dispatch=outcome))

    def _spawn(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
