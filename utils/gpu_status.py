"""Utilities for checking accelerator headroom before offloading model layers."""

from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass

logger = logging.getLogger(__name__)

_MIB = 1024 * 1024


@dataclass(frozen=True)
class AcceleratorStatus:
    """Simple container for the probed accelerator state."""

    source: str
    free_bytes: int


def _query_nvidia_smi(timeout: float) -> int | None:
    # nvidia-smi reports without creating a CUDA context in this process.
    executable = shutil.which("nvidia-smi")
    if executable is None:
        return None
    try:
        result = subprocess.run(
            [
                executable,
                "--query-gpu=memory.free",
                "--format=csv,noheader,nounits",
            ],
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.debug("nvidia-smi probe failed: %s", exc)
        return None

    if result.returncode != 0:
        return None
    try:
        first_gpu = result.stdout.strip().splitlines()[0]
        return int(float(first_gpu)) * _MIB
    except (IndexError, ValueError):
        return None


def _query_torch() -> int | None:
    try:
        import torch
    except ImportError:
        return None

    if not torch.cuda.is_available():
        return None
    try:
        free_bytes, _total = torch.cuda.mem_get_info()
    except RuntimeError as exc:
        logger.debug("torch.cuda.mem_get_info failed: %s", exc)
        return None
    return int(free_bytes)


def probe_accelerator(timeout: float = 2.0) -> AcceleratorStatus | None:
    """Report free accelerator memory, or None when no accelerator is usable."""
    free_bytes = _query_nvidia_smi(timeout)
    if free_bytes is not None:
        return AcceleratorStatus(source="nvidia-smi", free_bytes=free_bytes)

    free_bytes = _query_torch()
    if free_bytes is not None:
        return AcceleratorStatus(source="torch", free_bytes=free_bytes)
    return None


def query_free_accelerator_memory() -> int | None:
    """``MemoryProbe`` used by the accelerator guard."""
    status = probe_accelerator()
    if status is None:
        return None
    logger.debug(
        "Accelerator free memory: %.0f MiB (via %s)",
        status.free_bytes / _MIB,
        status.source,
    )
    return status.free_bytes


__all__ = ["AcceleratorStatus", "probe_accelerator", "query_free_accelerator_memory"]
