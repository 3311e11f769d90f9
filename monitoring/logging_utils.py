import logging
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Optional, Union

DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level: Union[int, str] = logging.INFO, log_format: Optional[str] = None,
                  log_file: Optional[str] = None) -> None:
    """
    Configure process-wide logging with a consistent format.

    Intended to be called once from the main entrypoint or service startup.
    Safe to call multiple times; subsequent calls are ignored if handlers exist.
    When ``log_file`` is set, a midnight-rotating file handler keeping 14 days
    is added next to the console handler.
    """
    root = logging.getLogger()
    if root.handlers:
        return

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    fmt = log_format or DEFAULT_FORMAT
    logging.basicConfig(level=level, format=fmt)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = TimedRotatingFileHandler(path, when="midnight", interval=1, backupCount=14)
        file_handler.setFormatter(logging.Formatter(fmt))
        root.addHandler(file_handler)
        root.info("Logging to %s", path)
