import logging
import os
import sys
from typing import Optional

from bump_bridge.constants import LOG_DIR, LOG_FILE_NAME


def setup_logging(level: Optional[str] = None) -> None:
    """Setup logging configuration.

    The level comes from the argument, then ``BUMP_LOG_LEVEL``, then INFO.
    Logs go to stdout and to ``LOG_DIR/bump-bridge.log``.
    """
    log_level = (level or os.environ.get("BUMP_LOG_LEVEL") or "INFO").upper()

    LOG_DIR.mkdir(parents=True, exist_ok=True)
    log_file = LOG_DIR / LOG_FILE_NAME

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(log_file, encoding="utf-8"),
        ],
    )

    print(f"Server logs: {log_file}")
    print(f"Log level: {log_level}")
    logging.info(f"Logging to {log_file}")
