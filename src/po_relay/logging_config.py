"""Logging configuration for po-relay.

Writes a session log to file so storage retries and cache degradations can be
inspected after the fact.
"""

import logging
from pathlib import Path


def _rotate_log_if_needed(log_file: Path, max_bytes: int = 10 * 1024 * 1024, backup_count: int = 5) -> None:
    """Rotate log file on startup if it exceeds max size.

    Args:
        log_file: Path to the log file
        max_bytes: Maximum file size before rotation (default: 10MB)
        backup_count: Number of backup files to keep (default: 5)
    """
    if not log_file.exists():
        return

    if log_file.stat().st_size < max_bytes:
        return

    # Shift backups up by one, dropping the oldest
    for i in range(backup_count - 1, 0, -1):
        source = log_file.parent / f"{log_file.name}.{i}"
        dest = log_file.parent / f"{log_file.name}.{i + 1}"

        if i == backup_count - 1 and dest.exists():
            dest.unlink()

        if source.exists():
            source.rename(dest)

    log_file.rename(log_file.parent / f"{log_file.name}.1")


def setup_logging(log_dir: Path, level: int = logging.INFO) -> logging.Logger:
    """Set up package logging to file with startup rotation.

    Args:
        log_dir: Directory to store log files
        level: Level for the package logger and its file handler

    Returns:
        Configured ``po_relay`` logger
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "po_relay.log"

    _rotate_log_if_needed(log_file)

    logger = logging.getLogger("po_relay")
    logger.setLevel(level)
    logger.handlers.clear()

    file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
    file_handler.setLevel(level)
    file_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)-28s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(file_handler)

    logger.info("=" * 80)
    logger.info("PO-RELAY SESSION STARTED")
    logger.info(f"Log file: {log_file}")
    logger.info("=" * 80)

    return logger
