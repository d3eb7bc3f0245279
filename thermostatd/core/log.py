import logging
from logging.handlers import RotatingFileHandler
from typing import Optional

from .config import settings


def configure_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> None:
    logger = logging.getLogger()
    logger.setLevel(level or settings.log_level)

    fmt = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s - %(message)s"
    )

    # Console
    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    # Rotating file (avoid filling SD card)
    path = log_file or settings.log_file
    if path:
        fh = RotatingFileHandler(path, maxBytes=2_000_000, backupCount=5)
        fh.setFormatter(fmt)
        logger.addHandler(fh)

    # paho logs every reconnect attempt at INFO
    logging.getLogger("paho").setLevel(logging.WARNING)
