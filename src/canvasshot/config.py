"""Timing and sizing knobs for canvas export."""
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Mapping, Optional


@dataclass(frozen=True)
class ExportConfig:
    settle_delay_ms: float = 10.0
    poll_interval_ms: float = 10.0
    max_wait_ms: float = 15000.0
    zoom_margin: float = 1.1
    label_margin: float = 1.1
    default_settle_timeout_ms: float = 1000.0
    pixel_ratio_factor: float = 1.0

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ExportConfig":
        env = os.environ if environ is None else environ
        config = cls()
        overrides = {}
        for var, field_name in _ENV_FIELDS.items():
            raw = env.get(var)
            if raw is None or not raw.strip():
                continue
            try:
                value = float(raw)
            except ValueError as exc:
                raise ValueError(f"{var} must be a number, got {raw!r}") from exc
            if value < 0:
                raise ValueError(f"{var} must be >= 0, got {raw!r}")
            overrides[field_name] = value
        return replace(config, **overrides) if overrides else config


_ENV_FIELDS = {
    "CANVASSHOT_MAX_WAIT_MS": "max_wait_ms",
    "CANVASSHOT_SETTLE_TIMEOUT_MS": "default_settle_timeout_ms",
    "CANVASSHOT_PIXEL_RATIO_FACTOR": "pixel_ratio_factor",
}
