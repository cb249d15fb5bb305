import json
import logging
import os
import time
from typing import Any


def get_logger(name: str) -> logging.Logger:
    """Return a JSON-line logger under the ``coach_stream`` namespace.

    - honor LOG_LEVEL env (default INFO)
    - attach a StreamHandler if none present
    - disable propagate to avoid duplicate logs with host application root handlers
    """
    logger = logging.getLogger(name)
    try:
        _lvl_name = os.getenv("LOG_LEVEL", "INFO").strip().upper()
        _lvl = getattr(logging, _lvl_name, logging.INFO)
    except Exception:
        _lvl = logging.INFO
    logger.setLevel(_lvl)
    if not logger.handlers:
        _h = logging.StreamHandler()
        _h.setLevel(_lvl)
        _h.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(_h)
    logger.propagate = False
    return logger


def log_event(logger: logging.Logger, level: int, event: str, **fields: Any) -> None:
    # Never fail a turn on logging errors
    try:
        payload = {"ts": int(time.time() * 1000), "event": event}
        payload.update(fields)
        logger.log(level, json.dumps(payload, default=str))
    except Exception:
        pass
