"""
Logging setup shared by the voice server and the voice client.
"""

import logging
import sys

from voicerag.config import settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Chatty libraries that drown out session logs at INFO
NOISY_LOGGERS = ("aioice", "aiortc", "httpx", "httpcore", "sentence_transformers", "urllib3")


def configure_logging(level: str | None = None) -> None:
    """
    Configure root logging with a console handler.

    Args:
        level: Overrides settings.log_level when given
    """
    resolved = (level or settings.log_level).upper()
    root = logging.getLogger()
    root.setLevel(getattr(logging, resolved, logging.INFO))

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)

    if resolved != "DEBUG":
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
