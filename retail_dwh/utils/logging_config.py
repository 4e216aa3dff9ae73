"""
Centralized logging configuration for the warehouse load engine.

Every component logs through the same setup:
- Standardized format: %(asctime)s - %(name)s - %(levelname)s - %(message)s
- Console handler plus a rotating file handler under LOG_DIR
- One log file per component logger
"""

import logging
import logging.handlers
import os
from pathlib import Path
from typing import Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def setup_logging(
    logger_name: str,
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5
) -> logging.Logger:
    """
    Set up structured logging for a component.

    Args:
        logger_name: Name of the logger (usually __name__)
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional log file path. If None, a file named after the
            logger is created under LOG_DIR (default: logs/)
        max_bytes: Maximum bytes per log file before rotation
        backup_count: Number of backup log files to keep

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)

    # Reconfiguring must not stack handlers
    logger.handlers.clear()

    level = getattr(logging, str(log_level).upper(), logging.INFO)
    logger.setLevel(level)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file is None:
        safe_name = logger_name.replace('.', '_').replace('/', '_')
        log_file = str(Path(os.getenv('LOG_DIR', 'logs')) / f"{safe_name}.log")

    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    file_handler = logging.handlers.RotatingFileHandler(
        log_path,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding='utf-8'
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    # Handlers live on the component logger; the root logger stays quiet
    logger.propagate = False

    return logger

