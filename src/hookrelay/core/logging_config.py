"""Logging Configuration - Centralized logging setup.

Defaults to INFO level so delivery payloads and secrets never reach the
logs through debug output.
"""

import logging
import sys
from pathlib import Path


def setup_logging(
    log_level: int = logging.INFO,
    log_file: str = "hookrelay.log",
    log_dir: str = "logs",
) -> None:
    """Configure logging for the application.

    Args:
        log_level: Logging level (default: INFO)
        log_file: Log file name inside ``log_dir``
        log_dir: Directory for the log file
    """
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(log_path / log_file, encoding="utf-8")
        ]
    )

    # Quiet down noisy libraries
    for name in ("httpx", "httpcore", "redis"):
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.info(f"Logging initialized ({logging.getLevelName(log_level)} level)")
