"""
Logging Setup — Console + rotating file output under LOG_DIR.
Call configure_logging() once at startup; modules use logging.getLogger(__name__).
"""
import logging
import os
from logging.handlers import RotatingFileHandler

from coursepay.config import get_settings

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s: %(message)s"

# Dedicated channel for security events (CSRF, signatures, throttling)
SECURITY_LOGGER = "coursepay.security"


def configure_logging(level: str | None = None) -> None:
    settings = get_settings()
    level = (level or settings.LOG_LEVEL).upper()

    formatter = logging.Formatter(LOG_FORMAT)
    handlers: list[logging.Handler] = []

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    handlers.append(console)

    try:
        os.makedirs(settings.LOG_DIR, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(settings.LOG_DIR, "server.log"),
            maxBytes=5 * 1024 * 1024,
            backupCount=5,
        )
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)
    except OSError as e:
        logging.getLogger(__name__).warning("File logging disabled: %s", e)

    root = logging.getLogger("coursepay")
    root.setLevel(level)
    # Replace handlers so repeated startup calls don't duplicate output
    root.handlers = handlers
    root.propagate = False


def get_security_logger() -> logging.Logger:
    return logging.getLogger(SECURITY_LOGGER)
