import logging
import os
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler


def configure_logging(level: Optional[str] = None) -> logging.Logger:
    log_level = (level or os.getenv("SB_LOGLEVEL", "INFO")).upper()
    logging.basicConfig(
        level=log_level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_time=True, show_level=True, rich_tracebacks=True)],
    )
    logger = logging.getLogger("storyboard")
    logger.setLevel(log_level)
    # httpx logs each poll request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return logger
