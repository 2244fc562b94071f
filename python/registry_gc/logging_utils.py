import logging
from typing import Optional, Union

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

DEFAULT_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"


def parse_log_level(level: Union[str, int, None]) -> int:
    """Translate a level name (or number) into a logging level, defaulting to INFO."""
    if isinstance(level, int):
        return level
    name = (level or "INFO").upper()
    if name not in VALID_LOG_LEVELS:
        logging.getLogger(__name__).warning(f"Invalid log level '{level}' provided. Defaulting to INFO.")
        return logging.INFO
    return getattr(logging, name)


def setup_logging(level: Union[str, int, None] = None, fmt: Optional[str] = None) -> None:
    """Configure the root logger on first use; afterwards only an explicit level changes anything."""
    root = logging.getLogger()
    if root.handlers:
        if level is not None:
            root.setLevel(parse_log_level(level))
        return
    logging.basicConfig(level=parse_log_level(level), format=fmt or DEFAULT_FORMAT)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    setup_logging()
    return logging.getLogger(name or "registry_gc")


def log_exception(logger: logging.Logger, message: str = "An error occurred", exc_info: Exception = None) -> None:
    """Log ``message`` followed by the exception and its traceback.

    Args:
        logger: Where to log
        message: Context for the failure, e.g. the repository being processed
        exc_info: The exception; when None the one currently being handled is used
    """
    if exc_info is None:
        logger.exception(message)
        return
    logger.error(f"{message}: {type(exc_info).__name__}: {exc_info}", exc_info=exc_info)
