"""Centralized logging configuration for the scan store tools."""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


def setup_logging(
    log_file_prefix: str = "scanstore",
    log_dir: Optional[Path] = Path("./logs"),
    level: int = logging.INFO,
) -> logging.Logger:
    """
    Configure logging for command line use.

    Sets up console logging and, when ``log_dir`` is given, a rotating log
    file that keeps at most 4 previous files. Only configures if the root
    logger has no handlers yet, so repeated calls never duplicate output.

    Args:
        log_file_prefix: Prefix for the log file name (default: "scanstore")
        log_dir: Directory for the log file; None logs to the console only
        level: Level for the root logger and both handlers

    Returns:
        Logger instance for the calling module
    """
    root_logger = logging.getLogger()

    # Only configure if not already configured (avoid duplicate handlers)
    if root_logger.handlers:
        return logging.getLogger(__name__)

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    # Console handler; stderr keeps stdout free for command output
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_dir is not None:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)

        # 10MB per file, 4 backups
        file_handler = RotatingFileHandler(
            log_dir / f"{log_file_prefix}.log",
            mode="a",
            maxBytes=10 * 1024 * 1024,
            backupCount=4,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    root_logger.setLevel(level)

    # The neo4j driver logs every connection at DEBUG
    logging.getLogger("neo4j").setLevel(max(level, logging.WARNING))

    return logging.getLogger(__name__)
