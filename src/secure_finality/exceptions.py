"""
Exception hierarchy for secure finality tracking.

Provides typed exceptions so callers can tell transport trouble (retryable)
apart from on-chain rejections (not retryable for the same payload) and
startup misconfiguration (fatal).
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Sequence


class SecureFinalityError(Exception):
    """Base exception for all secure finality errors.

    Attributes:
        message: Human-readable error description
        details: Additional context about the error
        recoverable: Whether the operation can be retried
    """

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.recoverable = recoverable


# ==================== Transport Errors ====================


class ChainConnectionError(SecureFinalityError, ConnectionError):
    """Raised when the node connection fails or a request times out.

    Always recoverable: the advancement loop retries after its cooldown.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, details=details, recoverable=True)


class RpcError(SecureFinalityError):
    """Raised when the node answers a JSON-RPC request with an error object."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(
            f"RPC error {code}: {message}",
            details={"code": code, "data": data},
        )
        self.code = code
        self.data = data


class NotFoundError(SecureFinalityError):
    """Raised when a block or storage entry is unknown to the node."""
    pass


# ==================== Dispatch Errors ====================


class DispatchError(SecureFinalityError):
    """Raised when an included extrinsic was rejected by the runtime.

    Carries the decoded module error: the pallet (``module``), the error
    ``name`` and its documentation lines.
    """

    def __init__(
        self,
        module: Optional[str],
        name: Optional[str],
        docs: Sequence[str] = (),
    ) -> None:
        self.module = module
        self.name = name
        self.docs = tuple(docs)
        label = f"{module}.{name}" if module else (name or "Unknown")
        text = " ".join(self.docs)
        message = f"DispatchError: {label} - {text}" if text else f"DispatchError: {label}"
        super().__init__(
            message,
            details={"module": module, "name": name, "docs": list(self.docs)},
        )


class SubmissionError(SecureFinalityError):
    """Raised when the transaction pool drops, invalidates or replaces a submission."""
    pass


# ==================== Setup and Wait Errors ====================


class ConfigurationError(SecureFinalityError):
    """Raised when configuration or the expected runtime surface is missing or invalid."""
    pass


class WatermarkTimeoutError(SecureFinalityError, TimeoutError):
    """Raised only when a caller wraps a watermark wait with an explicit deadline."""

    def __init__(self, target: int, observed: Optional[int], timeout: float) -> None:
        super().__init__(
            f"Watermark did not reach #{target} within {timeout}s (last observed: {observed})",
            details={"target": target, "observed": observed, "timeout": timeout},
            recoverable=True,
        )
        self.target = target
        self.observed = observed
        self.timeout = timeout
