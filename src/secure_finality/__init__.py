"""
Secure finality for Substrate chains.

Layers a "secure finalized" status on top of native finality: a
transaction is secure finalized once the chain's verification watermark
has reached the block that included it.

Example:
    >>> tracker = await sign_and_send_secure(client, signed_hex, print)
    >>> event = await tracker.wait()
"""

from .advancer import TickOutcome, TickResult, WatermarkAdvancer
from .exceptions import (
    ChainConnectionError,
    ConfigurationError,
    DispatchError,
    NotFoundError,
    RpcError,
    SecureFinalityError,
    SubmissionError,
    WatermarkTimeoutError,
)
from .models import (
    AdvanceCall,
    BlockHeader,
    Broadcast,
    DispatchOutcome,
    Failed,
    Finalized,
    InBlock,
    LifecycleEvent,
    Ready,
    SecureFinalized,
    TxStatus,
    TxStatusUpdate,
)
from .protocols import ChainClient
from .tracker import TrackerState, TxFinalityTracker, sign_and_send_secure
from .watermark import WatermarkWaiter, wait_for_watermark

__version__ = "0.1.0"

__all__ = [
    "AdvanceCall",
    "BlockHeader",
    "Broadcast",
    "ChainClient",
    "ChainConnectionError",
    "ConfigurationError",
    "DispatchError",
    "DispatchOutcome",
    "Failed",
    "Finalized",
    "InBlock",
    "LifecycleEvent",
    "NotFoundError",
    "Ready",
    "RpcError",
    "SecureFinalityError",
    "SecureFinalized",
    "SubmissionError",
    "TickOutcome",
    "TickResult",
    "TrackerState",
    "TxFinalityTracker",
    "TxStatus",
    "TxStatusUpdate",
    "WatermarkAdvancer",
    "WatermarkTimeoutError",
    "WatermarkWaiter",
    "sign_and_send_secure",
    "wait_for_watermark",
]
