import sys
from pathlib import Path
from typing import Any, Dict

from loguru import logger

DEFAULT_LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)


def setup_logging(logging_settings: Dict[str, Any], project_root: Path):
    """Replaces loguru's default sink with the console and rotating file
    sinks described by the ``logging`` settings section."""
    logger.remove()
    log_format = logging_settings.get("format", DEFAULT_LOG_FORMAT)

    if logging_settings.get("console_enabled", True):
        logger.add(
            sys.stderr,
            level=logging_settings.get("console_level", "DEBUG").upper(),
            format=log_format,
            colorize=True,
        )

    if logging_settings.get("file_enabled", True):
        log_file_path = project_root / logging_settings.get("file_path", "logs/app.log")
        log_file_path.parent.mkdir(parents=True, exist_ok=True)

        # enqueue keeps writes from the threadpool and the event loop ordered
        logger.add(
            log_file_path,
            level=logging_settings.get("file_level", "INFO").upper(),
            rotation=logging_settings.get("rotation", "10 MB"),
            retention=logging_settings.get("retention", "7 days"),
            format=log_format,
            encoding="utf-8",
            enqueue=True,
            backtrace=True,
            diagnose=True,
        )
        logger.trace(f"AgriGrow file logging enabled at {log_file_path}")

    logger.trace(
        f"Logging configured (console: {logging_settings.get('console_enabled', True)}, "
        f"file: {logging_settings.get('file_enabled', True)})"
    )
