"""Process-wide environment configuration for an embedding run.

Thread counts and the CUDA allocator are read by native libraries when they
first initialise, and spawned embedding workers inherit the parent's
environment. ``EnvironmentManager.apply()`` therefore mirrors the values from
``config`` into ``os.environ`` before the first worker starts. Nothing here
imports torch; the supervising process never needs it.
"""

from __future__ import annotations

import logging
import os

import config

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"

_NOISY_LOGGERS = [
    "sentence_transformers",
    "transformers",
    "torch",
    "urllib3",
    "filelock",
]


def configure_logging(level: int = logging.INFO) -> None:
    """Log to stderr and to the ingestion log so long runs keep durable diagnostics."""
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(config.INGESTION_LOG_FILE, encoding="utf-8"),
        ],
    )
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.WARNING)


class EnvironmentManager:
    """Apply embedding-specific environment tuning before workers spawn."""

    def __init__(self) -> None:
        super().__init__()
        self._applied = False

    def values(self) -> dict[str, str]:
        return {
            "OPENBLAS_NUM_THREADS": str(config.OPENBLAS_NUM_THREADS),
            "MKL_NUM_THREADS": str(config.MKL_NUM_THREADS),
            "OMP_NUM_THREADS": str(config.OMP_NUM_THREADS),
            "CUDA_VISIBLE_DEVICES": config.CUDA_VISIBLE_DEVICES,
            "PYTORCH_CUDA_ALLOC_CONF": config.PYTORCH_CUDA_ALLOC_CONF,
            "TOKENIZERS_PARALLELISM": "false",
        }

    def apply(self) -> None:
        """Materialise config-driven env vars; explicit user settings win."""
        if self._applied:
            return
        for name, value in self.values().items():
            _ = os.environ.setdefault(name, value)
        self._applied = True
        logger.debug(
            "Worker environment: %s",
            {name: os.environ[name] for name in self.values()},
        )


__all__ = ["EnvironmentManager", "LOG_FORMAT", "configure_logging"]
