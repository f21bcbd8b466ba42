import logging
import sys
from typing import Iterable

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

# Per-request chatter from the HTTP stack
NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def setup_logging(level: str = "INFO", quiet: Iterable[str] = NOISY_LOGGERS) -> None:
    root = logging.getLogger()
    root.setLevel(level.upper())

    # Avoid duplicate handlers when the app factory runs more than once
    if not any(getattr(h, "_bityield", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        handler._bityield = True
        root.addHandler(handler)

    for name in quiet:
        logging.getLogger(name).setLevel(logging.WARNING)
