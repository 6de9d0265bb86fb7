"""
Logging setup for LDAP User Watch.

The watcher is a long-lived process, so logs go to a daily rotated file with
a retention window, plus an optional console stream for container use.
"""

import os
import re
import glob
import logging
import logging.handlers
from typing import Dict, Any, List
from datetime import datetime, timedelta

LOG_FILE_NAME = 'ldap-watch.log'


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub sensitive data from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'smtp_password', 'token', 'secret',
        'credential', 'pwd', 'authorization', 'api_key', 'client_secret'
    ]

    _ASSIGNMENT_PATTERNS = [
        re.compile(rf'({keyword}\s*[=:]\s*)[^\s,}}\]]+', re.IGNORECASE)
        for keyword in SENSITIVE_KEYWORDS
    ]
    _JSON_PATTERNS = [
        re.compile(rf'("{keyword}"\s*:\s*")[^"]*(")', re.IGNORECASE)
        for keyword in SENSITIVE_KEYWORDS
    ]
    _AUTH_HEADER_PATTERN = re.compile(r'(Authorization:\s*(?:Bearer|Basic)\s+)[^\s,}\]]+', re.IGNORECASE)

    def filter(self, record):
        """Mask sensitive values in the formatted message."""
        if record.args:
            try:
                msg = record.getMessage()
            except (TypeError, ValueError):
                return True
            record.args = None
        else:
            msg = str(record.msg)

        for pattern in self._JSON_PATTERNS:
            msg = pattern.sub(r'\1****\2', msg)
        msg = self._AUTH_HEADER_PATTERN.sub(r'\1****', msg)
        for pattern in self._ASSIGNMENT_PATTERNS:
            msg = pattern.sub(r'\1****', msg)

        record.msg = msg
        return True


class LoggingManager:
    """
    Manages logging configuration for the watcher process.

    Provides file-based logging with rotation and retention, and an
    optional console handler.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Dict[str, Any]) -> None:
        """
        Set up logging based on configuration.

        Args:
            config: Logging configuration dictionary
        """
        if self.configured:
            return

        logging_config = config or {}

        log_level = str(logging_config.get('level', 'INFO')).upper()
        self.log_dir = logging_config.get('log_dir', 'logs')
        rotation = logging_config.get('rotation', 'daily')
        self.retention_days = logging_config.get('retention_days', 7)
        console_enabled = logging_config.get('console_output', True)
        console_level = str(logging_config.get('console_level', 'INFO')).upper()

        self._ensure_log_directory()

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, log_level, logging.INFO))
        root_logger.handlers.clear()

        detailed_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(threadName)s %(name)s:%(lineno)d - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        console_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%H:%M:%S'
        )
        sensitive_filter = SensitiveDataFilter()

        file_handler = self._create_file_handler(rotation)
        file_handler.setLevel(getattr(logging, log_level, logging.INFO))
        file_handler.setFormatter(detailed_formatter)
        file_handler.addFilter(sensitive_filter)
        root_logger.addHandler(file_handler)

        if console_enabled:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(getattr(logging, console_level, logging.INFO))
            console_handler.setFormatter(console_formatter)
            console_handler.addFilter(sensitive_filter)
            root_logger.addHandler(console_handler)

        self._cleanup_old_logs()
        self.configured = True

        logging.getLogger(__name__).info(
            f"Logging configured: level={log_level}, dir={self.log_dir}, "
            f"retention={self.retention_days} days, console={console_enabled}"
        )

    def _ensure_log_directory(self) -> None:
        """Ensure the log directory exists, falling back to the working directory."""
        if self.log_dir and not os.path.exists(self.log_dir):
            try:
                os.makedirs(self.log_dir, exist_ok=True)
            except OSError as e:
                print(f"Warning: Could not create log directory {self.log_dir}: {e}")
                self.log_dir = '.'

    def _create_file_handler(self, rotation: str) -> logging.Handler:
        """Create a rotating or plain file handler."""
        log_file = os.path.join(self.log_dir, LOG_FILE_NAME)

        if str(rotation).lower() in ('daily', 'midnight'):
            handler = logging.handlers.TimedRotatingFileHandler(
                filename=log_file,
                when='midnight',
                interval=1,
                backupCount=self.retention_days,
                encoding='utf-8'
            )
            handler.suffix = '%Y-%m-%d'
        else:
            handler = logging.FileHandler(log_file, encoding='utf-8')

        return handler

    def _cleanup_old_logs(self) -> None:
        """Remove rotated log files older than the retention period."""
        if not self.log_dir or self.retention_days <= 0:
            return

        cutoff_date = datetime.now() - timedelta(days=self.retention_days)

        for log_file in self.get_log_files():
            if log_file.endswith(LOG_FILE_NAME):
                continue
            try:
                file_time = datetime.fromtimestamp(os.path.getmtime(log_file))
                if file_time < cutoff_date:
                    os.remove(log_file)
            except OSError as e:
                print(f"Warning: Could not remove old log file {log_file}: {e}")

    def get_log_files(self) -> List[str]:
        """Return current and rotated log files, sorted."""
        if not self.log_dir:
            return []
        return sorted(glob.glob(os.path.join(self.log_dir, LOG_FILE_NAME + '*')))

    def reset(self) -> None:
        """Detach handlers so logging can be configured again."""
        root_logger = logging.getLogger()
        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)
            handler.close()
        self.configured = False


# Global logging manager instance
_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any]) -> None:
    """Set up process-wide logging from the ``logging`` config section."""
    _logging_manager.setup_logging(config)


def reset_logging() -> None:
    _logging_manager.reset()


def get_log_files() -> List[str]:
    return _logging_manager.get_log_files()
