import logging
from logging.handlers import RotatingFileHandler
import os

# Empty value disables the file handler (console only).
LOG_FILE = os.getenv("SIGNAL_LOG_FILE", "logs/signal_pipeline.log")


def setup_logger(name: str) -> logging.Logger:
    """Configure and return a module-level logger.

    Logs are written to both console and a rotating file to persist
    information for debugging. Subsequent calls with the same name
    return the already configured logger.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    logger.setLevel(logging.INFO)
    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    if LOG_FILE:
        directory = os.path.dirname(LOG_FILE)
        try:
            if directory:
                os.makedirs(directory, exist_ok=True)
            # Rotating file handler keeps last 5 logs of ~1MB each
            file_handler = RotatingFileHandler(LOG_FILE, maxBytes=1_000_000, backupCount=5)
        except OSError:
            file_handler = None
        if file_handler is not None:
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)
    return logger

