"""
Project logger

Console output plus a rotating file under logs/ (10MB x 5).
"""
import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_DIR = Path(os.getenv("MERLIN_LOG_DIR", "logs"))
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _build_logger() -> logging.Logger:
    _logger = logging.getLogger("merlin2api")
    if _logger.handlers:
        return _logger

    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    _logger.setLevel(getattr(logging, level_name, logging.INFO))
    _logger.propagate = False  # 不传播到 root，避免 uvicorn 重复输出

    formatter = logging.Formatter(LOG_FORMAT)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    _logger.addHandler(console_handler)

    if os.getenv("MERLIN_LOG_TO_FILE", "true").lower() in ("1", "true", "yes"):
        try:
            LOG_DIR.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                LOG_DIR / "merlin2api.log",
                maxBytes=10 * 1024 * 1024,
                backupCount=5,
                encoding="utf-8",
            )
            file_handler.setFormatter(formatter)
            _logger.addHandler(file_handler)
        except OSError as e:
            _logger.warning(f"无法创建日志文件，仅输出到控制台: {e}")

    return _logger


logger = _build_logger()


def mask_secret(value: str, keep: int = 8) -> str:
    """Return a loggable prefix of a secret."""
    if not value:
        return "<empty>"
    if len(value) <= keep:
        return "*" * len(value)
    return f"{value[:keep]}...({len(value)} chars)"
