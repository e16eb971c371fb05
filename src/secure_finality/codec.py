"""
Metadata-aware encoding and signing backed by substrate-interface.

This is the only module that touches SCALE types or private keys. It keeps
its own node connection for metadata lookups, nonce queries and event
decoding; every method blocks and is meant to be called from a worker
thread.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Optional

from substrateinterface import ExtrinsicReceipt, Keypair, SubstrateInterface

from secure_finality.models import DispatchOutcome

logger = logging.getLogger(__name__)


class SubstrateInterfaceCodec:
    """``ExtrinsicCodec`` implementation over ``SubstrateInterface``."""

    def __init__(self, url: str, seed: str, substrate: Optional[SubstrateInterface] = None) -> None:
        self._substrate = substrate or SubstrateInterface(url=url)
        self._keypair = Keypair.create_from_uri(seed)
        # SubstrateInterface reuses one websocket; serialize access to it.
        self._lock = threading.RLock()

    @property
    def signer_address(self) -> str:
        return self._keypair.ss58_address

    def has_storage(self, pallet: str, storage: str) -> bool:
        with self._lock:
            return self._substrate.get_metadata_storage_function(pallet, storage) is not None

    def has_call(self, pallet: str, function: str) -> bool:
        with self._lock:
            return self._substrate.get_metadata_call_function(pallet, function) is not None

    def storage_key(self, pallet: str, storage: str) -> str:
        with self._lock:
            return self._substrate.create_storage_key(pallet, storage).to_hex()

    def sign_call(
        self,
        pallet: str,
        function: str,
        params: Dict[str, Any],
        wrap_in: tuple[str, str] | None = None,
    ) -> str:
        with self._lock:
            call = self._substrate.compose_call(
                call_module=pallet,
                call_function=function,
                call_params=params,
            )
            if wrap_in is not None:
                call = self._substrate.compose_call(
                    call_module=wrap_in[0],
                    call_function=wrap_in[1],
                    call_params={"call": call},
                )
            extrinsic = self._substrate.create_signed_extrinsic(call=call, keypair=self._keypair)
        logger.debug(
            "Signed %s.%s as %s",
            pallet,
            function,
            self.signer_address,
            extra={"event": "codec.signed", "call": f"{pallet}.{function}"},
        )
        return str(extrinsic.data)

    def dispatch_outcome(self, block_hash: str, extrinsic_hash: str) -> DispatchOutcome:
        with self._lock:
            receipt = ExtrinsicReceipt(
                substrate=self._substrate,
                extrinsic_hash=extrinsic_hash,
                block_hash=block_hash,
            )
            if receipt.is_success:
                return DispatchOutcome.ok()
            error = receipt.error_message or {}
            module = error.get("type")
            if module == "Module":
                module = self._failed_pallet(receipt)
        docs = error.get("docs") or ()
        if isinstance(docs, str):
            docs = (docs,)
        return DispatchOutcome.failed(module, error.get("name"), tuple(docs))

    def _failed_pallet(self, receipt: ExtrinsicReceipt) -> Optional[str]:
        """Name of the pallet that raised a module error, if it can be resolved."""
        try:
            for event in receipt.triggered_events:
                data = event.value
                if data.get("event_id") != "ExtrinsicFailed":
                    continue
                dispatch_error = data["attributes"]["dispatch_error"]
                if not isinstance(dispatch_error, dict) or "Module" not in dispatch_error:
                    return None
                index = dispatch_error["Module"]["index"]
                for pallet in self._substrate.metadata.pallets:
                    if pallet["index"] == index:
                        return pallet.name
        except (AttributeError, KeyError, TypeError) as exc:
            logger.debug("Could not resolve failing pallet: %s", exc, extra={"event": "codec.pallet_unresolved"})
        return None

    def close(self) -> None:
        with self._lock:
            self._substrate.close()
