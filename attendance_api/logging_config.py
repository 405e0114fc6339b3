"""
Logging setup for the attendance service.

Console output is always on. When a log directory is configured, rotating
files are added for the main log, errors only, and security events.
"""

import logging
import logging.handlers
from pathlib import Path

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(module)s:%(lineno)d - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _rotating_handler(path: Path, level: int, formatter: logging.Formatter, max_bytes: int, backup_count: int):
    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(
    level: str = "INFO",
    log_dir: Path | None = None,
    *,
    max_log_size: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> None:
    log_level = getattr(logging, str(level).upper(), logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    security_logger = logging.getLogger("security")
    security_logger.setLevel(logging.INFO)
    for handler in security_logger.handlers[:]:
        security_logger.removeHandler(handler)

    if log_dir is not None:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        root_logger.addHandler(
            _rotating_handler(log_dir / "attendance.log", log_level, formatter, max_log_size, backup_count)
        )
        root_logger.addHandler(
            _rotating_handler(log_dir / "errors.log", logging.ERROR, formatter, max_log_size, backup_count)
        )
        security_logger.addHandler(
            _rotating_handler(log_dir / "security.log", logging.INFO, formatter, max_log_size, backup_count)
        )

    logging.getLogger(__name__).info(
        "Logging configured: level=%s dir=%s",
        logging.getLevelName(log_level),
        log_dir.resolve() if log_dir else "-",
    )
