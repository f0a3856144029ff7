import logging
import sys

logger = logging.getLogger("email_precis")

formatter = logging.Formatter(
    fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

stream_handler = logging.StreamHandler(sys.stdout)
stream_handler.setFormatter(formatter)

logger.addHandler(stream_handler)
logger.setLevel(logging.INFO)
logger.propagate = False


def get_logger(component: str) -> logging.Logger:
    """Child logger that shares the package handler, e.g. ``email_precis.queue``."""
    return logger.getChild(component)
