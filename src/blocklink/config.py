"""Engine configuration with environment overrides."""
from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, replace
from pathlib import Path

ENV_PREFIX = "BLOCKLINK_"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass(frozen=True, slots=True)
class EngineConfig:
    db_path: Path = Path("blocklink.duckdb")
    lease_ttl_seconds: float = 30.0
    flush_debounce_seconds: float = 2.0
    max_flush_interval_seconds: float = 10.0
    verify_on_close: bool = True
    history_limit: int = 100

    def __post_init__(self) -> None:
        if self.lease_ttl_seconds <= 0:
            raise ValueError("lease_ttl_seconds must be > 0")
        if self.flush_debounce_seconds < 0:
            raise ValueError("flush_debounce_seconds must be >= 0")
        if self.max_flush_interval_seconds < self.flush_debounce_seconds:
            raise ValueError(
                "max_flush_interval_seconds must be >= flush_debounce_seconds"
            )
        if self.history_limit < 0:
            raise ValueError("history_limit must be >= 0")

    @property
    def lease_ttl_ms(self) -> int:
        return int(self.lease_ttl_seconds * 1000)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> EngineConfig:
        """Build a config from ``BLOCKLINK_*`` variables over the defaults."""
        env = os.environ if environ is None else environ
        cfg = cls()
        overrides: dict[str, object] = {}

        raw = env.get(f"{ENV_PREFIX}DB_PATH")
        if raw:
            overrides["db_path"] = Path(raw)
        for key, attr in (
            ("LEASE_TTL", "lease_ttl_seconds"),
            ("FLUSH_DEBOUNCE", "flush_debounce_seconds"),
            ("MAX_FLUSH_INTERVAL", "max_flush_interval_seconds"),
        ):
            raw = env.get(f"{ENV_PREFIX}{key}")
            if raw:
                overrides[attr] = _parse_float(f"{ENV_PREFIX}{key}", raw)
        raw = env.get(f"{ENV_PREFIX}VERIFY_ON_CLOSE")
        if raw:
            overrides["verify_on_close"] = _parse_bool(f"{ENV_PREFIX}VERIFY_ON_CLOSE", raw)
        raw = env.get(f"{ENV_PREFIX}HISTORY_LIMIT")
        if raw:
            overrides["history_limit"] = _parse_int(f"{ENV_PREFIX}HISTORY_LIMIT", raw)

        return replace(cfg, **overrides) if overrides else cfg


def _parse_float(key: str, raw: str) -> float:
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{key} must be a number, got {raw!r}") from None


def _parse_int(key: str, raw: str) -> int:
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{key} must be an integer, got {raw!r}") from None


def _parse_bool(key: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"{key} must be a boolean, got {raw!r}")
