# ======================================
# Config for the embedding ingestion run
# Default: tuned for 16GB RAM / 6GB VRAM laptop
# ======================================

from typing import Literal

# Type definitions
StartMethod = Literal["spawn", "forkserver", "fork"]

# CPU / Threading
TORCH_NUM_THREADS: int = 4
OPENBLAS_NUM_THREADS: int = 4
MKL_NUM_THREADS: int = 4
OMP_NUM_THREADS: int = 4

# GPU / CUDA
CUDA_VISIBLE_DEVICES: str = "0"  # single GPU
PYTORCH_CUDA_ALLOC_CONF: str = "max_split_size_mb:1024,garbage_collection_threshold:0.9"

# Sentence-Transformers
EMBED_MODEL: str = "sentence-transformers/all-MiniLM-L6-v2"
BATCH_SIZE: int = 16
BATCH_SIZE_RETRY_DIVISOR: int = 4  # Divisor for reducing batch size on memory errors

# Chunking (measured in tokens, not bytes)
TOKENIZER_ENCODING: str = "cl100k_base"
CHUNK_SIZE_TOKENS: int = 800
CHUNK_OVERLAP_TOKENS: int = 120  # 15% of CHUNK_SIZE_TOKENS

# Resource guards
MAX_EMBED_BYTES_ENV: str = "DOCVEC_MAX_EMBED_BYTES"
GPU_LAYERS_ENV: str = "DOCVEC_GPU_LAYERS"
DEFAULT_MAX_EMBED_BYTES: int = 5 * 1024 * 1024
MAX_GPU_LAYERS: int = 512
MIN_GPU_HEADROOM_MB: int = 1024  # below this, skip offload entirely

# Embedding worker process
WORKER_START_METHOD: StartMethod = "spawn"  # CUDA cannot be re-initialised in forked children
WORKER_POLL_INTERVAL: float = 0.5

# Persistence
DB_PATH: str = "documents.db"
DEFAULT_COLLECTION: str = "default"
WRITE_RETRY_ATTEMPTS: int = 3

# File paths and logging
INGESTION_LOG_FILE: str = "ingestion.log"
CRASH_LOG_FILE: str = "crash_log.txt"


def validate_config() -> None:
    """Validate configuration values at startup."""
    # Integer configs that should be positive
    positive_int_configs = [
        ("TORCH_NUM_THREADS", TORCH_NUM_THREADS),
        ("OPENBLAS_NUM_THREADS", OPENBLAS_NUM_THREADS),
        ("MKL_NUM_THREADS", MKL_NUM_THREADS),
        ("OMP_NUM_THREADS", OMP_NUM_THREADS),
        ("BATCH_SIZE", BATCH_SIZE),
        ("BATCH_SIZE_RETRY_DIVISOR", BATCH_SIZE_RETRY_DIVISOR),
        ("CHUNK_SIZE_TOKENS", CHUNK_SIZE_TOKENS),
        ("DEFAULT_MAX_EMBED_BYTES", DEFAULT_MAX_EMBED_BYTES),
        ("MAX_GPU_LAYERS", MAX_GPU_LAYERS),
        ("WRITE_RETRY_ATTEMPTS", WRITE_RETRY_ATTEMPTS),
    ]

    for config_name, config_val in positive_int_configs:
        if not isinstance(config_val, int) or config_val <= 0:
            raise ValueError(
                f"{config_name} must be a positive integer, got: {config_val}"
            )

    if not isinstance(MIN_GPU_HEADROOM_MB, int) or MIN_GPU_HEADROOM_MB < 0:
        raise ValueError(
            f"MIN_GPU_HEADROOM_MB must be a non-negative integer, got: {MIN_GPU_HEADROOM_MB}"
        )

    if not (0 <= CHUNK_OVERLAP_TOKENS < CHUNK_SIZE_TOKENS):
        raise ValueError(
            "CHUNK_OVERLAP_TOKENS must be >= 0 and smaller than CHUNK_SIZE_TOKENS, "
            + f"got: {CHUNK_OVERLAP_TOKENS} (size {CHUNK_SIZE_TOKENS})"
        )

    if not isinstance(WORKER_POLL_INTERVAL, (int, float)) or WORKER_POLL_INTERVAL <= 0:
        raise ValueError(
            f"WORKER_POLL_INTERVAL must be a positive number, got: {WORKER_POLL_INTERVAL}"
        )

    # String configs
    string_configs = [
        ("CUDA_VISIBLE_DEVICES", CUDA_VISIBLE_DEVICES),
        ("EMBED_MODEL", EMBED_MODEL),
        ("TOKENIZER_ENCODING", TOKENIZER_ENCODING),
        ("MAX_EMBED_BYTES_ENV", MAX_EMBED_BYTES_ENV),
        ("GPU_LAYERS_ENV", GPU_LAYERS_ENV),
        ("DB_PATH", DB_PATH),
        ("DEFAULT_COLLECTION", DEFAULT_COLLECTION),
        ("INGESTION_LOG_FILE", INGESTION_LOG_FILE),
        ("CRASH_LOG_FILE", CRASH_LOG_FILE),
    ]

    for config_name, config_val in string_configs:
        if not isinstance(config_val, str) or not config_val.strip():
            raise ValueError(
                f"{config_name} must be a non-empty string, got: {config_val}"
            )

    valid_start_methods = {"spawn", "forkserver", "fork"}
    if WORKER_START_METHOD not in valid_start_methods:
        raise ValueError(
            f"WORKER_START_METHOD must be one of {valid_start_methods}, got: {WORKER_START_METHOD}"
        )


# Validate on import
validate_config()
