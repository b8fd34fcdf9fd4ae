"""Standard-library logger behind the LoggerPort."""

import logging
from typing import Any

from ..ports.logger import LoggerPort


class SimpleLogger(LoggerPort):
    """LoggerPort implementation over Python's standard logging.

    Keyword arguments become ``extra`` fields on the record. Handlers are left
    to the application (see :func:`chainstream.logging_config.setup_logging`);
    a console handler is attached only when neither this logger nor the root
    logger has one, so library use never duplicates output.
    """

    def __init__(self, name: str = "chainstream", level: int | None = None):
        """Initialize the logger.

        Args:
            name: Logger name (default: "chainstream")
            level: Optional logging level; inherits from parents when None
        """
        self._logger = logging.getLogger(name)
        if level is not None:
            self._logger.setLevel(level)

        if not self._logger.handlers and not logging.getLogger().handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
            handler.setFormatter(formatter)
            self._logger.addHandler(handler)

    @property
    def name(self) -> str:
        return self._logger.name

    def debug(self, message: str, **kwargs: Any) -> None:
        """Log a debug message."""
        self._logger.debug(message, extra=kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        """Log an info message."""
        self._logger.info(message, extra=kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        """Log a warning message."""
        self._logger.warning(message, extra=kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        """Log an error message."""
        self._logger.error(message, extra=kwargs)

    def exception(self, message: str, exc_info: Exception | None = None, **kwargs: Any) -> None:
        """Log an exception with traceback."""
        self._logger.exception(message, exc_info=exc_info or True, extra=kwargs)
