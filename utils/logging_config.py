"""
Structured logging configuration for the tag-map pipeline.

Progress and error summaries of a run are reported through log lines, so the
console handler is always on and a rotating log file is optional.
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional


def setup_logging(
    level: str = "INFO",
    log_file: Optional[Path] = None,
    max_file_size: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5,
    console_output: bool = True
) -> logging.Logger:
    """
    Set up logging for a pipeline run.

    Args:
        level: Logging level ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')
        log_file: Path to log file (optional)
        max_file_size: Maximum log file size in bytes before rotation
        backup_count: Number of backup files to keep
        console_output: Whether to output logs to console

    Returns:
        Configured application logger
    """
    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    numeric_level = getattr(logging, level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f'Invalid log level: {level}')

    root_logger.setLevel(numeric_level)

    formatter = logging.Formatter(
        fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(numeric_level)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            filename=str(log_file),
            maxBytes=max_file_size,
            backupCount=backup_count,
            encoding='utf-8'
        )
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    configure_library_logging()

    app_logger = logging.getLogger('tag-map')
    app_logger.setLevel(numeric_level)

    app_logger.info(f"Logging initialized - Level: {level}")
    if log_file:
        app_logger.info(f"Log file: {log_file}")

    return app_logger


def log_processing_progress(
    current: int,
    total: int,
    logger: logging.Logger,
    message_template: str = "Processed {current}/{total} batches ({percentage:.1f}%)"
):
    """
    Log processing progress at appropriate intervals.

    Args:
        current: Current item count
        total: Total item count
        logger: Logger instance to use
        message_template: Template for progress message
    """
    if total == 0:
        return

    percentage = (current / total) * 100

    # Every 10% for small runs, 5% for medium, 1% for large ones
    if total <= 100:
        step = max(1, total // 10)
    elif total <= 1000:
        step = max(1, total // 20)
    else:
        step = max(1, total // 100)

    if current % step == 0 or current == total:
        logger.info(message_template.format(
            current=current, total=total, percentage=percentage
        ))


def configure_library_logging():
    """Configure logging for HTTP and SDK libraries to reduce noise."""
    for lib_name in ['httpx', 'httpcore', 'openai', 'urllib3']:
        logging.getLogger(lib_name).setLevel(logging.WARNING)
