"""
Service Logger Setup

Configures stdlib logging for a microservice from LoggingConfig.

Usage:
    from core.logger import setup_service_logger

    logger = setup_service_logger("ledger_service", level="INFO")
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional

from core.config import LoggingConfig

_configured_services = set()


def setup_service_logger(
    service_name: str,
    level: Optional[str] = None,
    config: Optional[LoggingConfig] = None,
) -> logging.Logger:
    """
    Configure the root logger for a service and return the service logger.

    Args:
        service_name: Service name used as the logger name
        level: Optional level override (defaults to config.log_level)
        config: Optional logging config (loaded from environment if not provided)

    Returns:
        Logger named after the service
    """
    if config is None:
        config = LoggingConfig.from_env()

    log_level = getattr(logging, (level or config.log_level).upper(), logging.INFO)
    root = logging.getLogger()

    if service_name not in _configured_services:
        formatter = logging.Formatter(config.log_format)

        if config.enable_console:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setFormatter(formatter)
            root.addHandler(console_handler)

        if config.log_file:
            file_handler = RotatingFileHandler(
                config.log_file,
                maxBytes=config.log_file_max_bytes,
                backupCount=config.log_file_backup_count,
            )
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)

        _configured_services.add(service_name)

    root.setLevel(log_level)

    # Quiet chatty third-party loggers
    logging.getLogger("asyncpg").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.getLogger("nats").setLevel(logging.WARNING)

    service_logger = logging.getLogger(service_name)
    service_logger.setLevel(log_level)
    return service_logger


__all__ = ["setup_service_logger"]
