"""
Structured logging configuration for the jpdatrack tracking engine.
Provides coloured console logs and optional JSON logs per component.
"""

import sys
from pathlib import Path
from typing import Optional

from loguru import logger


class LogConfig:
    """Centralized logging configuration."""

    LOG_DIR = Path("data/logs")
    LOG_FORMAT = (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{extra[component]}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
        "<level>{message}</level>"
    )
    COMPONENTS = [
        "tracking.kalman",
        "tracking.association",
        "tracking.manager",
        "tracking.mot",
        "utils.linalg",
        "cli",
    ]

    @classmethod
    def setup(cls, log_level: str = "INFO", enable_json: bool = False,
              log_dir: Optional[Path] = None):
        """
        Set up logging for the tracking engine.

        Args:
            log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            enable_json: Whether to also write JSON logs and an application log to files
            log_dir: Directory for file sinks (defaults to LOG_DIR)
        """
        # Remove default logger
        logger.remove()
        logger.configure(extra={"component": "jpdatrack"})

        # Add console handler with colors
        logger.add(
            sys.stderr,
            format=cls.LOG_FORMAT,
            level=log_level,
            colorize=True,
        )

        if enable_json:
            directory = Path(log_dir) if log_dir is not None else cls.LOG_DIR
            directory.mkdir(parents=True, exist_ok=True)

            for component in cls.COMPONENTS:
                logger.add(
                    directory / f"{component}.jsonl",
                    format="{message}",
                    level="DEBUG",
                    rotation="1 day",
                    retention="30 days",
                    compression="zip",
                    serialize=True,  # JSON format
                    filter=lambda record, comp=component: record["extra"].get("component") == comp,
                )

            logger.add(
                directory / "application.log",
                format=cls.LOG_FORMAT,
                level=log_level,
                rotation="500 MB",
                retention="7 days",
                compression="zip",
            )

        logger.debug(f"Logging initialized at level {log_level}")


def get_logger(component: str):
    """
    Get a logger for a specific component.

    Args:
        component: Component name (e.g., 'tracking.kalman', 'tracking.mot')

    Returns:
        Configured logger instance

    Example:
        >>> from jpdatrack.utils.logging_config import get_logger
        >>> logger = get_logger("tracking.mot")
        >>> logger.info("Cycle complete")
    """
    return logger.bind(component=component)


# Console-only logging on import; call LogConfig.setup() to reconfigure
LogConfig.setup(log_level="INFO", enable_json=False)
