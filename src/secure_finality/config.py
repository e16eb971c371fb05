"""
Secure finality configuration.

Settings come from environment variables and may be overridden by CLI
options. The runtime surface (watermark storage, advancement call and
privileged wrapper) is explicit configuration, checked once against
runtime metadata at startup.

SECURITY NOTICE:
- The signing seed MUST come from the environment (or a CLI option) in
  any shared deployment
- The development seed //Alice is only used with a warning
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Optional

from secure_finality.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_WS = "ws://127.0.0.1:9944"
DEV_SEED = "//Alice"
DEFAULT_TRANSFER_TO = "5FHneW46xGXgs5mUiveU4sbTyGBzmstUspZC92UhjJM694ty"  # Bob
DEFAULT_TRANSFER_AMOUNT = 1_000_000_000_000


@dataclass(frozen=True)
class ChainSurface:
    """Names of the runtime items the components rely on."""

    pallet: str = "Anchor"
    watermark_storage: str = "SecureUpTo"
    advance_call: str = "note_anchor_verified"
    advance_param: str = "block_number"
    privileged_pallet: str = "Sudo"
    privileged_call: str = "sudo"

    @property
    def watermark_label(self) -> str:
        return f"{self.pallet}.{self.watermark_storage}"

    @property
    def call_label(self) -> str:
        return f"{self.pallet}.{self.advance_call}"

    @property
    def wrapper(self) -> tuple[str, str]:
        return (self.privileged_pallet, self.privileged_call)


@dataclass(frozen=True)
class Settings:
    ws_url: str = DEFAULT_WS
    seed: str = DEV_SEED
    surface: ChainSurface = field(default_factory=ChainSurface)
    interval: float = 6.0
    cooldown: float = 1.0
    grace_period: float = 5.0
    min_lag: int = 1
    dry_run: bool = False
    transfer_to: str = DEFAULT_TRANSFER_TO
    transfer_amount: int = DEFAULT_TRANSFER_AMOUNT
    watch_only_target: Optional[int] = None
    request_timeout: float = 30.0
    log_level: str = "INFO"
    log_json: bool = False
    log_file: Optional[str] = None

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from ``env`` (defaults to ``os.environ``)."""
        env = os.environ if env is None else env
        surface = ChainSurface(
            pallet=_get_str(env, "PALLET", ChainSurface.pallet),
            watermark_storage=_get_str(env, "WATERMARK_STORAGE", ChainSurface.watermark_storage),
            advance_call=_get_str(env, "ADVANCE_CALL", ChainSurface.advance_call),
            advance_param=_get_str(env, "ADVANCE_PARAM", ChainSurface.advance_param),
        )
        watch_only = _get_str(env, "WATCH_ONLY_TARGET_BLOCK", "")
        settings = cls(
            ws_url=_get_str(env, "WS", DEFAULT_WS),
            seed=_get_seed(env),
            surface=surface,
            interval=_get_float(env, "INTERVAL_SEC", 6.0),
            cooldown=_get_float(env, "COOLDOWN_SEC", 1.0),
            grace_period=_get_float(env, "GRACE_SEC", 5.0),
            min_lag=_get_int(env, "MIN_LAG", 1),
            dry_run=_get_bool(env, "DRY_RUN"),
            transfer_to=_get_str(env, "TO", DEFAULT_TRANSFER_TO),
            transfer_amount=_get_int(env, "AMOUNT", DEFAULT_TRANSFER_AMOUNT),
            watch_only_target=_parse_int("WATCH_ONLY_TARGET_BLOCK", watch_only) if watch_only else None,
            request_timeout=_get_float(env, "RPC_TIMEOUT_SEC", 30.0),
            log_level=_get_str(env, "LOG_LEVEL", "INFO").upper(),
            log_json=_get_bool(env, "LOG_JSON"),
            log_file=env.get("LOG_FILE", "").strip() or None,
        )
        settings.validate()
        return settings

    def with_overrides(self, **overrides: Any) -> "Settings":
        """Return a copy with every non-``None`` override applied, validated."""
        values = {key: value for key, value in overrides.items() if value is not None}
        updated = replace(self, **values)
        updated.validate()
        return updated

    def validate(self) -> None:
        if not self.ws_url.startswith(("ws://", "wss://")):
            raise ConfigurationError(
                f"WS must be a ws:// or wss:// URL, got {self.ws_url!r}",
                details={"ws_url": self.ws_url},
            )
        if self.interval <= 0:
            raise ConfigurationError("INTERVAL_SEC must be positive")
        if self.cooldown < 0 or self.grace_period < 0 or self.request_timeout <= 0:
            raise ConfigurationError("COOLDOWN_SEC and GRACE_SEC must be non-negative, RPC_TIMEOUT_SEC positive")
        if self.min_lag < 1:
            raise ConfigurationError("MIN_LAG must be at least 1")
        if self.transfer_amount < 0:
            raise ConfigurationError("AMOUNT must be non-negative")
        if self.watch_only_target is not None and self.watch_only_target < 0:
            raise ConfigurationError("WATCH_ONLY_TARGET_BLOCK must be non-negative")
        if self.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigurationError(f"Unknown LOG_LEVEL {self.log_level!r}")
        for name in ("pallet", "watermark_storage", "advance_call", "advance_param"):
            if not getattr(self.surface, name):
                raise ConfigurationError(f"Runtime surface field {name!r} must not be empty")


def _get_str(env: Mapping[str, str], name: str, default: str) -> str:
    value = env.get(name, "").strip()
    return value or default


def _get_seed(env: Mapping[str, str]) -> str:
    value = env.get("SEED", "").strip()
    if value:
        return value
    logger.warning(
        "Security: SEED not set, using development seed %s. "
        "Set this environment variable for any shared network.",
        DEV_SEED,
        extra={"event": "config.dev_seed"},
    )
    return DEV_SEED


def _parse_int(name: str, raw: str) -> int:
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from None


def _get_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name, "").strip()
    return _parse_int(name, raw) if raw else default


def _get_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from None


def _get_bool(env: Mapping[str, str], name: str) -> bool:
    return env.get(name, "").strip().lower() in ("1", "true", "yes")
