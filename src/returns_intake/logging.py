import logging
import os
from typing import Optional


_LEVELS = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}

NAMESPACE = "returns_intake"
FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _coerce_level(value: Optional[str]) -> int:
    if isinstance(value, str):
        return _LEVELS.get(value.upper().strip(), logging.INFO)
    if isinstance(value, int):
        return value
    return logging.INFO


def _level_for(name: str) -> int:
    """LOG_LEVEL_<AREA> (e.g. LOG_LEVEL_STORAGE_CLIENT) beats LOG_LEVEL."""
    area_key = "LOG_LEVEL_" + name.upper().replace("-", "_").replace(".", "_")
    return _coerce_level(os.environ.get(area_key) or os.environ.get("LOG_LEVEL", "INFO"))


def redact(secret: Optional[str], keep: int = 4) -> str:
    """Mask a credential for log output, keeping only its last characters."""
    if not secret:
        return "<unset>"
    if len(secret) <= keep * 2:
        return "****"
    return "****" + secret[-keep:]


def get_logger(name: str) -> logging.Logger:
    """Return a configured stderr logger with consistent formatting.

    - Honors LOG_LEVEL (default INFO), per-area LOG_LEVEL_<AREA> and
      LOG_FILE (optional path, appended).
    - Loggers live under the ``returns_intake.`` namespace and do not
      propagate, so stdout stays free for CLI output.
    """
    logger = logging.getLogger(f"{NAMESPACE}.{name}")
    if getattr(logger, "_returns_configured", False):
        return logger

    level = _level_for(name)
    logger.setLevel(level)
    formatter = logging.Formatter(fmt=FORMAT, datefmt=DATE_FORMAT)

    sh = logging.StreamHandler()
    sh.setLevel(level)
    sh.setFormatter(formatter)
    logger.addHandler(sh)

    log_file = os.environ.get("LOG_FILE")
    if log_file:
        try:
            parent = os.path.dirname(os.path.abspath(log_file))
            os.makedirs(parent, exist_ok=True)
            fh = logging.FileHandler(log_file, encoding="utf-8")
            fh.setLevel(level)
            fh.setFormatter(formatter)
            logger.addHandler(fh)
        except OSError as exc:
            logger.warning(f"LOG_FILE {log_file!r} could not be opened ({exc}); logging to stderr only")

    logger.propagate = False
    setattr(logger, "_returns_configured", True)
    return logger
