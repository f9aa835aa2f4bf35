"""Logging setup for applications embedding encrypt_storage.

The library itself only creates module loggers under ``encrypt_storage``;
storage instances emit debug records when built with ``log=True``.
"""

import logging
import sys

LOGGER_NAME = "encrypt_storage"


def configure_logging(level: int = logging.INFO, storage_debug: bool = False) -> logging.Logger:
    # Configure root logger once; keep output simple for terminals.
    logging.basicConfig(
        level=level,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stdout,
    )
    package_logger = logging.getLogger(LOGGER_NAME)
    package_logger.setLevel(logging.DEBUG if storage_debug else level)
    return package_logger
