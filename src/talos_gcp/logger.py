import logging

from rich.logging import RichHandler


def setup_logger(name: str = "talos_gcp", level: int = logging.WARNING) -> logging.Logger:
    """Configures and returns a logger with RichHandler."""

    logger = logging.getLogger(name)

    # Re-running setup (e.g. after -v is parsed) only adjusts the level
    if not logger.handlers:
        handler = RichHandler(rich_tracebacks=True, markup=True, show_path=False)
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)
        logger.propagate = False

    logger.setLevel(level)
    return logger


def verbosity_to_level(verbosity: int) -> int:
    if verbosity >= 2:
        return logging.DEBUG
    if verbosity == 1:
        return logging.INFO
    return logging.WARNING


# Global logger instance (WARNING by default; -v / -vv raise it)
logger = setup_logger()
