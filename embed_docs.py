import os
import sys
import warnings

# Silence the model stack's import-time chatter before anything loads it
warnings.filterwarnings("ignore", message=".*TypedStorage is deprecated.*", category=UserWarning)
_ = os.environ.setdefault("TF_CPP_MIN_LOG_LEVEL", "2")  # TensorFlow/oneDNN
_ = os.environ.setdefault("ONEDNN_VERBOSE", "0")  # oneDNN verbose output

from ingestion.cli import main as _cli_main  # noqa: E402
from ingestion.pipeline import run_embedding, show_status  # noqa: E402

__all__ = ["main", "run_embedding", "show_status"]


def main() -> None:
    """Script wrapper that delegates to `ingestion.cli.main`."""
    sys.exit(_cli_main())


if __name__ == "__main__":
    main()
