"""
Logging utilities for sdpctl.
"""

import logging
import sys


def setup_logging(verbose: bool = False, log_file: str = "sdpctl.log") -> logging.Logger:
    """
    Set up logging configuration.

    Args:
        verbose: Enable verbose (DEBUG) logging
        log_file: Path to log file

    Returns:
        Logger instance
    """
    level = logging.DEBUG if verbose else logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(log_file),
        ],
    )
    # urllib3 logs every retried connection at DEBUG.
    logging.getLogger("urllib3").setLevel(logging.INFO if verbose else logging.WARNING)

    return logging.getLogger("sdpctl")


def log_banner(log: logging.Logger, title: str, width: int = 70) -> None:
    """Log a title framed by '=' rules."""
    log.info("=" * width)
    log.info(title)
    log.info("=" * width)


def log_section(log: logging.Logger, title: str) -> None:
    log.info("")
    log.info(title)
    log.info("-" * 40)


def format_duration(seconds: float) -> str:
    """Format duration in human-readable format."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    if seconds < 3600:
        return f"{int(seconds // 60)}m {seconds % 60:.0f}s"
    hours = int(seconds // 3600)
    mins = int((seconds % 3600) // 60)
    return f"{hours}h {mins}m {seconds % 60:.0f}s"
