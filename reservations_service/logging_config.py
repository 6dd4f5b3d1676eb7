import logging
import sys
from typing import Optional

DEFAULT_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"


def setup_logging(level: str = "INFO", format_string: Optional[str] = None) -> None:
    """
    Configure root logging for the reservations service.

    Parameters
    ----------
    level : str
        Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
    format_string : Optional[str]
        Custom log format; defaults to DEFAULT_FORMAT.
    """
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=format_string or DEFAULT_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
