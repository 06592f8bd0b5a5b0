import logging
import sys
from pathlib import Path

LOGGER_NAME = "reelfeed"
CONSOLE_FORMAT = "%(levelname)s: %(message)s"
# Transfers and store listeners log from worker threads
FILE_FORMAT = "%(asctime)s [%(levelname)s] %(threadName)s %(name)s: %(message)s"


def setup_logging(log_file: str = None, level: str = "INFO") -> logging.Logger:
    """Configure the reelfeed logger with a stderr handler and an optional file.

    Safe to call repeatedly: the level is updated every time, the console
    handler is added once, and a file handler is added once per path.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.propagate = False

    file_handlers = [h for h in logger.handlers if isinstance(h, logging.FileHandler)]
    has_console = any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        for h in logger.handlers
    )

    if not has_console:
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(logging.Formatter(CONSOLE_FORMAT))
        logger.addHandler(console)

    if log_file:
        path = Path(log_file).resolve()
        if all(Path(h.baseFilename) != path for h in file_handlers):
            path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(path)
            file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
            logger.addHandler(file_handler)

    return logger
