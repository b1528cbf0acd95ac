import functools
import logging
import os
import sys
from logging.handlers import RotatingFileHandler

from flexfuse.ReadConfig import ReadConfig as rc
from flexfuse.singleton import Singleton

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class _LogFlex:
    """Process-wide logger configured from the `logging` config section."""

    def __init__(self, config: dict = None) -> None:
        config = config if config is not None else rc().logging_config
        self.logger = logging.getLogger(config.get("name", "flexfuse"))
        self.logger.setLevel(str(config.get("level", "INFO")).upper())
        self.logger.propagate = False

        if not self.logger.handlers:
            self.logger.addHandler(self._handler(config))

    @staticmethod
    def _handler(config: dict) -> logging.Handler:
        log_file = config.get("file")
        if log_file:
            os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
            handler = RotatingFileHandler(log_file,
                                          maxBytes=int(config.get("max_bytes", 0)),
                                          backupCount=int(config.get("backup_count", 0)))
        else:
            # stdout belongs to the volume driver's JSON result
            handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        return handler

    def debug(self, msg, *args, **kwargs):
        self.logger.debug(msg, *args, **kwargs)

    def info(self, msg, *args, **kwargs):
        self.logger.info(msg, *args, **kwargs)

    def warning(self, msg, *args, **kwargs):
        self.logger.warning(msg, *args, **kwargs)

    def error(self, msg, *args, **kwargs):
        self.logger.error(msg, *args, **kwargs)

    def exception(self, msg, *args, **kwargs):
        self.logger.exception(msg, *args, **kwargs)


class LogFlex(_LogFlex, metaclass=Singleton):
    pass


def log_to_file(logger):
    """Log entry into the wrapped callable and any exception leaving it."""

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            logger.debug(f"Calling {func.__qualname__}")
            try:
                return func(*args, **kwargs)
            except Exception as err:
                logger.error(f"{func.__qualname__} failed: {err}")
                raise

        return wrapper

    return decorator
