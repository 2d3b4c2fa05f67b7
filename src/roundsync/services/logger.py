"""
Logger Service Module
Root logger configuration: colored console, optional rotating file, JSON records
"""

import json
import logging
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import colorlog

# LogRecord attributes that are not user-supplied `extra` fields
_RECORD_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "thread",
        "threadName",
        "taskName",
        "exc_info",
        "exc_text",
        "stack_info",
    }
)


class LoggerService:
    """
    Configures the root logger once per process.

    Handlers:
    - Console (colorlog unless colored_output is False)
    - roundsync.log in log_dir, rotated by size (only when log_dir is set)
    """

    def __init__(self, config: dict[str, Any] | None = None):
        self.config = {**self._default_config(), **(config or {})}
        self.handlers: list[logging.Handler] = []
        self._setup_root_logger()

    def _default_config(self) -> dict[str, Any]:
        """Default logging configuration"""
        return {
            "log_dir": None,
            "log_level": "INFO",
            "file_level": "DEBUG",
            "max_bytes": 5 * 1024 * 1024,  # 5MB
            "backup_count": 3,
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            "date_format": "%Y-%m-%d %H:%M:%S",
            "colored_output": True,
            "json_logs": False,
        }

    def _setup_root_logger(self):
        root_logger = logging.getLogger()
        root_logger.setLevel(logging.DEBUG)  # Capture all, filter at handler level

        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)

        self.handlers.append(self._create_console_handler())

        if self.config.get("log_dir"):
            file_handler = self._create_file_handler("roundsync.log")
            if file_handler is not None:
                self.handlers.append(file_handler)

        for handler in self.handlers:
            root_logger.addHandler(handler)

        # Socket.IO / engine.io chatter stays at WARNING unless we are debugging
        if self._level("log_level") > logging.DEBUG:
            for noisy in ("socketio", "engineio"):
                logging.getLogger(noisy).setLevel(logging.WARNING)

    def _level(self, key: str) -> int:
        return getattr(logging, str(self.config.get(key, "INFO")).upper(), logging.INFO)

    def _create_console_handler(self) -> logging.Handler:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(self._level("log_level"))

        if self.config.get("json_logs"):
            console_handler.setFormatter(JsonFormatter())
        elif self.config.get("colored_output"):
            console_handler.setFormatter(
                colorlog.ColoredFormatter(
                    "%(log_color)s%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                    datefmt=self.config.get("date_format"),
                    log_colors={
                        "DEBUG": "cyan",
                        "INFO": "green",
                        "WARNING": "yellow",
                        "ERROR": "red",
                        "CRITICAL": "red,bg_white",
                    },
                )
            )
        else:
            console_handler.setFormatter(
                logging.Formatter(self.config.get("format"), datefmt=self.config.get("date_format"))
            )

        return console_handler

    def _create_file_handler(self, filename: str) -> logging.Handler | None:
        """Rotating file handler, or None if the directory is not writable."""
        log_dir = Path(self.config["log_dir"]).expanduser()
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            handler = RotatingFileHandler(
                log_dir / filename,
                maxBytes=self.config.get("max_bytes"),
                backupCount=self.config.get("backup_count"),
            )
        except OSError as e:
            logging.getLogger(__name__).warning(f"File logging disabled ({log_dir}): {e}")
            return None

        handler.setLevel(self._level("file_level"))
        if self.config.get("json_logs"):
            handler.setFormatter(JsonFormatter())
        else:
            handler.setFormatter(
                logging.Formatter(self.config.get("format"), datefmt=self.config.get("date_format"))
            )
        return handler

    def cleanup(self):
        root_logger = logging.getLogger()
        for handler in self.handlers:
            root_logger.removeHandler(handler)
            handler.close()
        self.handlers.clear()


class JsonFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Add extra fields
        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


_logger_service: LoggerService | None = None


def setup_logging(config: dict[str, Any] | None = None) -> logging.Logger:
    """
    Configure the root logger (first call wins) and return it.

    Args:
        config: Overrides for LoggerService defaults (log_level, log_dir, json_logs, ...)
    """
    global _logger_service

    if _logger_service is None:
        _logger_service = LoggerService(config)

    return logging.getLogger()


def cleanup_logging():
    """Remove our handlers so setup_logging() can run again."""
    global _logger_service

    if _logger_service:
        _logger_service.cleanup()
        _logger_service = None
