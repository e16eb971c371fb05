"""
Data model shared by the watermark waiter, the transaction tracker and the
advancement loop.

Raw node payloads are converted into these types at the ChainClient
boundary; nothing past that boundary touches wire data.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar, Optional, Tuple

from secure_finality.exceptions import DispatchError

BlockNumber = int


class TxStatus(str, Enum):
    """Transaction pool status as reported by ``author_extrinsicUpdate``."""

    READY = "ready"
    FUTURE = "future"
    BROADCAST = "broadcast"
    IN_BLOCK = "inBlock"
    RETRACTED = "retracted"
    FINALITY_TIMEOUT = "finalityTimeout"
    FINALIZED = "finalized"
    USURPED = "usurped"
    DROPPED = "dropped"
    INVALID = "invalid"
    # Synthetic: the transport failed while the transaction was being watched.
    ERROR = "error"

    @property
    def is_pool_failure(self) -> bool:
        return self in _POOL_FAILURES


_POOL_FAILURES = frozenset(
    {TxStatus.FINALITY_TIMEOUT, TxStatus.USURPED, TxStatus.DROPPED, TxStatus.INVALID}
)


@dataclass(frozen=True)
class BlockHeader:
    """The part of a block header the tracker needs."""

    number: BlockNumber
    hash: str
    parent_hash: Optional[str] = None

    def __post_init__(self) -> None:
        if self.number < 0:
            raise ValueError(f"Block number must be non-negative, got {self.number}")


@dataclass(frozen=True)
class DispatchOutcome:
    """Result of dispatching one extrinsic, decoded from its block's events."""

    success: bool
    module: Optional[str] = None
    name: Optional[str] = None
    docs: Tuple[str, ...] = ()

    @classmethod
    def ok(cls) -> "DispatchOutcome":
        return cls(success=True)

    @classmethod
    def failed(
        cls,
        module: Optional[str],
        name: Optional[str],
        docs: Tuple[str, ...] = (),
    ) -> "DispatchOutcome":
        return cls(success=False, module=module, name=name, docs=tuple(docs))

    @property
    def error(self) -> Optional[DispatchError]:
        if self.success:
            return None
        return DispatchError(self.module, self.name, self.docs)


@dataclass(frozen=True)
class TxStatusUpdate:
    """One status notification for a submitted extrinsic.

    ``dispatch`` is only set on ``FINALIZED``; ``error`` only on ``ERROR``.
    """

    status: TxStatus
    block_hash: Optional[str] = None
    dispatch: Optional[DispatchOutcome] = None
    error: Optional[BaseException] = None


@dataclass(frozen=True)
class AdvanceCall:
    """Privileged call that records ``target`` as verified."""

    target: BlockNumber

    def __post_init__(self) -> None:
        if self.target < 0:
            raise ValueError(f"Advancement target must be non-negative, got {self.target}")


# ==================== Lifecycle Events ====================


@dataclass(frozen=True)
class LifecycleEvent:
    """Base class of the events handed to a tracker callback."""

    kind: ClassVar[str] = "event"

    @property
    def is_terminal(self) -> bool:
        return False


@dataclass(frozen=True)
class Ready(LifecycleEvent):
    kind: ClassVar[str] = "Ready"


@dataclass(frozen=True)
class Broadcast(LifecycleEvent):
    kind: ClassVar[str] = "Broadcast"


@dataclass(frozen=True)
class InBlock(LifecycleEvent):
    kind: ClassVar[str] = "InBlock"

    block_hash: str = ""


@dataclass(frozen=True)
class Finalized(LifecycleEvent):
    kind: ClassVar[str] = "Finalized"

    block_hash: str = ""
    block_number: BlockNumber = 0


@dataclass(frozen=True)
class Failed(LifecycleEvent):
    """Terminal failure: a dispatch error or a pool rejection.

    ``error`` is set only for dispatch failures; pool rejections carry just
    the ``detail`` text.
    """

    kind: ClassVar[str] = "Failed"

    detail: str = ""
    error: Optional[DispatchError] = field(default=None, compare=False)

    @property
    def is_terminal(self) -> bool:
        return True


@dataclass(frozen=True)
class SecureFinalized(LifecycleEvent):
    """Synthetic event: the watermark has passed the inclusion block."""

    kind: ClassVar[str] = "SecureFinalized"

    block_number: BlockNumber = 0

    @property
    def is_terminal(self) -> bool:
        return True
