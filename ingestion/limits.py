"""Resolve per-run resource limits from environment overrides.

Both guards fail safe: a malformed override is reported once and replaced with
the documented default so a typo can never silently disable the byte ceiling.
This is the only module that reads the process environment; everything
downstream receives the resulting ``ResourceLimits`` by parameter.
"""

from __future__ import annotations

import logging
import math
import os
from collections.abc import Mapping

import config
from ingestion.errors import ConfigInvalid
from types_models import ResourceLimits

logger = logging.getLogger(__name__)


def _read(environ: Mapping[str, str] | None, name: str) -> str | None:
    source = os.environ if environ is None else environ
    raw = source.get(name)
    if raw is None or not raw.strip():
        return None
    return raw.strip()


def _parse_number(name: str, raw: str) -> float:
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigInvalid(name, raw, "not a number") from exc
    if not math.isfinite(value):
        raise ConfigInvalid(name, raw, "not a finite number")
    return value


def parse_byte_ceiling(raw: str, name: str = config.MAX_EMBED_BYTES_ENV) -> int:
    """Parse a byte ceiling override, flooring fractional values."""
    value = _parse_number(name, raw)
    if value <= 0:
        raise ConfigInvalid(name, raw, "must be a positive number of bytes")
    ceiling = math.floor(value)
    if ceiling < 1:
        raise ConfigInvalid(name, raw, "rounds down to zero bytes")
    return ceiling


def parse_layer_budget(raw: str, name: str = config.GPU_LAYERS_ENV) -> int | None:
    """Parse an accelerator layer override; ``"auto"`` means let the guard decide."""
    if raw.lower() == "auto":
        return None
    value = _parse_number(name, raw)
    layers = math.floor(value)
    if layers > config.MAX_GPU_LAYERS:
        raise ConfigInvalid(
            name, raw, f"exceeds the maximum of {config.MAX_GPU_LAYERS} layers"
        )
    # Negative budgets clamp to CPU-only rather than to "all layers".
    return max(layers, 0)


def resolve_byte_ceiling(environ: Mapping[str, str] | None = None) -> int:
    """Return the embedding byte ceiling, falling back to the default on bad input."""
    raw = _read(environ, config.MAX_EMBED_BYTES_ENV)
    if raw is None:
        return config.DEFAULT_MAX_EMBED_BYTES
    try:
        return parse_byte_ceiling(raw)
    except ConfigInvalid as exc:
        logger.warning(
            "⚠️ %s; using default limit of %d bytes",
            exc,
            config.DEFAULT_MAX_EMBED_BYTES,
        )
        return config.DEFAULT_MAX_EMBED_BYTES


def resolve_layer_budget(environ: Mapping[str, str] | None = None) -> int | None:
    """Return the accelerator layer budget, or ``None`` for automatic placement."""
    raw = _read(environ, config.GPU_LAYERS_ENV)
    if raw is None:
        return None
    try:
        return parse_layer_budget(raw)
    except ConfigInvalid as exc:
        logger.warning("⚠️ %s; letting the accelerator guard decide (auto)", exc)
        return None


def resolve_limits(
    environ: Mapping[str, str] | None = None,
    *,
    disable_accelerator: bool = False,
) -> ResourceLimits:
    """Build the immutable limits for one run."""
    ceiling = resolve_byte_ceiling(environ)
    layers = 0 if disable_accelerator else resolve_layer_budget(environ)
    return ResourceLimits(max_embed_bytes=ceiling, gpu_layers=layers)


__all__ = [
    "parse_byte_ceiling",
    "parse_layer_budget",
    "resolve_byte_ceiling",
    "resolve_layer_budget",
    "resolve_limits",
]
