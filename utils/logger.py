# utils/logger.py – Root logger setup and resource logging

import logging
from pathlib import Path
from typing import Optional, Dict, Any, Union

import psutil

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(threadName)s: %(message)s"


def _level(value: Union[int, str, None], default: int = logging.INFO) -> int:
    if isinstance(value, int):
        return value
    if value is None:
        return default
    return getattr(logging, str(value).upper(), default)


def setup_logging(
    log_file: Optional[Path] = None, level: Union[int, str] = logging.INFO
) -> None:
    """Configure the root logger with a stream handler and optional file output."""
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file is not None:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        level=_level(level),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


def apply_logging_config(cfg: Dict[str, Any]) -> None:
    """Set the root log level from the ``logging.level`` config entry."""
    level = _level(cfg.get("logging", {}).get("level", "INFO"))
    logging.getLogger().setLevel(level)


def log_memory_usage(prefix: str = "") -> None:
    """Log resident memory of the current process."""
    try:
        mem_mb = psutil.Process().memory_info().rss / 1024**2
    except psutil.Error as exc:
        logging.debug("Failed to read memory usage: %s", exc)
        return
    logging.info("%sMemory usage: %.2f MB", prefix, mem_mb)
