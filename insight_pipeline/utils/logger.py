"""Loguru sinks for the extraction pipeline, driven by the `logging` config section."""
from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

from loguru import logger

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{line} - {message}"


def setup_logger(
    log_level: str = "INFO",
    log_file: Optional[str] = "logs/pipeline.log",
    rotation: str = "10 MB",
    retention: str = "7 days",
    serialize: bool = False,
) -> None:
    """
    Console sink on stderr (stdout carries command output) plus an optional
    rotating file sink. `serialize=True` writes the file as JSON lines.
    """
    logger.remove()
    logger.add(sys.stderr, level=log_level, format=CONSOLE_FORMAT, colorize=True)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            level=log_level,
            format=FILE_FORMAT,
            rotation=rotation,
            retention=retention,
            compression="zip",
            serialize=serialize,
            enqueue=True,
        )

    logger.debug(f"Logger initialised | level={log_level} | file={log_file or '-'}")


def setup_logger_from_config(
    config: dict, level: Optional[str] = None, file_enabled: bool = True
) -> None:
    log_cfg = config.get("logging", {})
    setup_logger(
        log_level=(level or log_cfg.get("level", "INFO")).upper(),
        log_file=log_cfg.get("file") if file_enabled else None,
        rotation=log_cfg.get("rotation", "10 MB"),
        retention=log_cfg.get("retention", "7 days"),
        serialize=bool(log_cfg.get("json", False)),
    )
