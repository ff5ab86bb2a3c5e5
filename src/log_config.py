import logging
import os
import sys
from typing import TextIO


LOG_DIR = os.environ.get(
    "FLOTILLA_LOG_DIR",
    os.path.join(os.path.dirname(__file__), "..", "logs"),
)

LOG_FORMAT = "%(asctime)s | %(name)-18s | %(levelname)-7s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(
    name: str,
    level: int = logging.DEBUG,
    stream: TextIO | None = None,
    console_level: int = logging.INFO,
    filename: str | None = None,
) -> logging.Logger:
    """Configure logging with console + file output.

    Each component gets its own log file (e.g. logs/orchestrator.log).
    Console shows INFO+ on stdout unless another stream is given, file
    captures DEBUG+. The permission handler passes sys.stderr because its
    stdout carries the JSON-RPC protocol, and its own filename so it does not
    share a log file with the orchestrator.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if logger.handlers:
        return logger

    console = logging.StreamHandler(stream or sys.stdout)
    console.setLevel(console_level)
    console.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    logger.addHandler(console)

    try:
        os.makedirs(LOG_DIR, exist_ok=True)
        log_file = os.path.join(LOG_DIR, f"{filename or name}.log")
        file_handler = logging.FileHandler(log_file)
    except OSError as e:
        logger.warning(f"File logging disabled for {name}: {e}")
        return logger

    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    logger.addHandler(file_handler)

    return logger
