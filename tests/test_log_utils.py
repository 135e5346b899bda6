import logging
from importlib import reload

import log_utils


def _reset_logger(logger: logging.Logger) -> None:
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        try:
            handler.close()
        except Exception:
            pass


def test_setup_logger_writes_to_rotating_file(tmp_path, monkeypatch):
    # Ensure a clean module state for the logger initialisation.
    module = reload(log_utils)
    log_path = tmp_path / "logs" / "signal.log"
    monkeypatch.setattr(module, "LOG_FILE", str(log_path), raising=False)

    logger = module.setup_logger("test_log_utils_file")
    kinds = {type(handler).__name__ for handler in logger.handlers}
    assert kinds == {"RotatingFileHandler", "StreamHandler"}

    logger.info("snapshot refreshed")
    for handler in logger.handlers:
        handler.flush()
    assert "snapshot refreshed" in log_path.read_text()

    _reset_logger(logger)


def test_setup_logger_is_idempotent(monkeypatch):
    module = reload(log_utils)
    monkeypatch.setattr(module, "LOG_FILE", "", raising=False)

    first = module.setup_logger("test_log_utils_idempotent")
    second = module.setup_logger("test_log_utils_idempotent")
    assert first is second
    assert len(first.handlers) == 1

    _reset_logger(first)
