"""
Services - logging setup
"""

from .logger import JsonFormatter, LoggerService, cleanup_logging, setup_logging

__all__ = ["JsonFormatter", "LoggerService", "cleanup_logging", "setup_logging"]
