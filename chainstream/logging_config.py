"""
Centralized logging configuration for chainstream command-line tools.
Library code never calls this; applications embedding the client keep
their own handlers.
"""

import logging
import os
import sys


def setup_logging(log_level: str | None = None) -> None:
    """
    Configure logging for the CLI.

    Args:
        log_level: Logging level (INFO, WARNING, ERROR, DEBUG)
    """
    if log_level is None:
        log_level = os.getenv("LOG_LEVEL", "WARNING")
    log_level = log_level.upper()

    # Clear any existing handlers
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    # Logs go to stderr; stdout belongs to the live view
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(name)s] %(levelname)s: %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
        )
    )

    root.setLevel(log_level)
    root.addHandler(handler)

    # The NATS client is chatty about reconnects we already report
    if log_level != "DEBUG":
        logging.getLogger("nats").setLevel(logging.WARNING)
