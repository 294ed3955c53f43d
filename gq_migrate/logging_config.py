import logging
import os
from typing import Iterable, Optional

COMPACT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
PRETTY_FORMAT = '%(asctime)s  %(levelname)-8s %(name)s\n    %(message)s\n    at %(pathname)s:%(lineno)d'


class DuplicateFilter:
    """Drop repeated messages below ERROR."""

    def __init__(self):
        self.msgs = set()

    def filter(self, record):
        # Allow ERROR and CRITICAL messages through always
        if record.levelno >= logging.ERROR:
            return True

        msg = record.getMessage()
        if msg in self.msgs:
            return False
        self.msgs.add(msg)

        # Clear the set periodically to avoid memory issues
        if len(self.msgs) > 1000:
            self.msgs.clear()

        return True


def setup_logging(log_level: str = "INFO", log_format: str = "compact", filters: Optional[Iterable[str]] = None) -> None:
    """
    Configure logging for the migration tool.

    Args:
        log_level: The minimum log level to display (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: "compact" for one line per record, "pretty" for multi-line records
        filters: Extra "logger.name=LEVEL" directives
    """

    # Get log level from environment or use provided default
    log_level = os.getenv("LOG_LEVEL", log_level).upper()

    # Convert string to logging level
    numeric_level = getattr(logging, log_level, logging.INFO)

    logging.basicConfig(
        level=numeric_level,
        format=PRETTY_FORMAT if log_format == "pretty" else COMPACT_FORMAT,
        datefmt='%Y-%m-%d %H:%M:%S',
        force=True,
    )

    # SQLAlchemy echoes every statement at INFO; keep it quiet unless debugging
    if numeric_level > logging.DEBUG:
        for logger_name in ('sqlalchemy.engine', 'sqlalchemy.pool', 'sqlalchemy.dialects'):
            logging.getLogger(logger_name).setLevel(logging.WARNING)

    for directive in filters or ():
        name, _, level = directive.partition("=")
        logging.getLogger(name.strip()).setLevel(getattr(logging, level.strip().upper(), logging.INFO))

    duplicate_filter = DuplicateFilter()
    for handler in logging.getLogger().handlers:
        handler.addFilter(duplicate_filter)

    logging.getLogger(__name__).debug(f"Logging configured with level: {log_level}")
