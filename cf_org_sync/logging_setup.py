"""
Logging setup for CF Org Sync.

setup_logging() configures the root logger once per process: a daily
rotated cf-org-sync.log with expired backups removed, plus optional console
output. Both handlers scrub credentials from messages. security_logger
writes the audit trail of authentications and account and role changes.
"""

import os
import re
import sys
import glob
import logging
import logging.handlers
from typing import Dict, Any
from datetime import datetime, timedelta

LOG_FILE_NAME = 'cf-org-sync.log'

FILE_FORMAT = '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s'
CONSOLE_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'

DEFAULT_SETTINGS = {
    'level': 'INFO',
    'log_dir': 'logs',
    'rotation': 'daily',
    'retention_days': 7,
    'console_output': True,
    'console_level': 'WARNING',
}

logger = logging.getLogger(__name__)


class SensitiveDataFilter(logging.Filter):
    """Masks credential values in string log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'client_secret', 'secret', 'token',
        'access_token', 'refresh_token', 'authorization', 'credential', 'pwd'
    ]

    AUTH_HEADER_PATTERN = re.compile(r'(Authorization:\s*(?:Bearer|Basic)\s+)[^\s,}\]]+', re.IGNORECASE)

    def __init__(self):
        super().__init__()
        self.patterns = []
        for keyword in self.SENSITIVE_KEYWORDS:
            # key=value, as in form bodies and query strings
            self.patterns.append((re.compile(rf'({keyword}\s*=\s*)[^\s,}}\]&]+', re.IGNORECASE), r'\1****'))
            # "key": "value" and 'key': 'value'
            self.patterns.append((re.compile(rf'("{keyword}"\s*:\s*")[^"]*(")', re.IGNORECASE), r'\1****\2'))
            self.patterns.append((re.compile(rf"('{keyword}'\s*:\s*')[^']*(')", re.IGNORECASE), r'\1****\2'))
        self.patterns.append((self.AUTH_HEADER_PATTERN, r'\1****'))

    def filter(self, record):
        if isinstance(record.msg, str):
            for pattern, replacement in self.patterns:
                record.msg = pattern.sub(replacement, record.msg)
        return True


def _level(name: str, fallback: int) -> int:
    return getattr(logging, str(name).upper(), fallback)


class LoggingManager:
    """Owns the root logger configuration and rotated-file retention."""

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = DEFAULT_SETTINGS['retention_days']

    def setup_logging(self, config: Dict[str, Any]) -> None:
        """
        Configure the root logger. Later calls are ignored.

        Args:
            config: The logging section of the configuration
        """
        if self.configured:
            return

        settings = dict(DEFAULT_SETTINGS, **(config or {}))
        file_level = _level(settings['level'], logging.INFO)
        self.log_dir = self._usable_log_dir(settings['log_dir'])
        self.retention_days = settings['retention_days']

        file_handler = self._file_handler(settings['rotation'])
        file_handler.setLevel(file_level)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
        handlers = [file_handler]

        if settings['console_output']:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(_level(settings['console_level'], logging.WARNING))
            console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt='%H:%M:%S'))
            handlers.append(console_handler)

        scrubber = SensitiveDataFilter()
        root_logger = logging.getLogger()
        root_logger.setLevel(file_level)
        root_logger.handlers.clear()
        for handler in handlers:
            handler.addFilter(scrubber)
            root_logger.addHandler(handler)

        self.remove_expired_logs()
        self.configured = True
        logger.info(f"Logging to {os.path.join(self.log_dir, LOG_FILE_NAME)} at {settings['level']}, "
                    f"keeping {self.retention_days} days, console={settings['console_output']}")

    @staticmethod
    def _usable_log_dir(log_dir: str) -> str:
        try:
            os.makedirs(log_dir, exist_ok=True)
            return log_dir
        except OSError as e:
            print(f"Warning: cannot create log directory {log_dir} ({e}), logging to the current directory",
                  file=sys.stderr)
            return '.'

    def _file_handler(self, rotation: str) -> logging.Handler:
        """A midnight-rotated handler for 'daily'/'midnight', otherwise a plain file handler."""
        log_file = os.path.join(self.log_dir, LOG_FILE_NAME)
        if rotation.lower() not in ('daily', 'midnight'):
            return logging.FileHandler(log_file, encoding='utf-8')

        handler = logging.handlers.TimedRotatingFileHandler(
            filename=log_file, when='midnight', backupCount=self.retention_days, encoding='utf-8'
        )
        handler.suffix = '%Y-%m-%d'
        return handler

    def remove_expired_logs(self) -> None:
        """Delete rotated log files last modified before the retention window."""
        if self.retention_days <= 0:
            return

        cutoff = (datetime.now() - timedelta(days=self.retention_days)).timestamp()
        for rotated in glob.glob(os.path.join(self.log_dir, f'{LOG_FILE_NAME}.*')):
            try:
                if os.path.getmtime(rotated) < cutoff:
                    os.remove(rotated)
            except OSError as e:
                logger.warning(f"Could not remove expired log file {rotated}: {e}")


_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any]) -> None:
    """Configure process-wide logging from the logging config section."""
    _logging_manager.setup_logging(config)


class SecurityAuditLogger:
    """Audit entries on the 'security' logger."""

    def __init__(self):
        self.logger = logging.getLogger('security')

    def log_authentication_attempt(self, system: str, username: str, success: bool):
        status = "SUCCESS" if success else "FAILURE"
        self.logger.info(f"Authentication {status}: {system} user={username}")

    def log_user_operation(self, operation: str, user_id: str, target: str, success: bool):
        """Record an account creation or role grant."""
        status = "SUCCESS" if success else "FAILURE"
        self.logger.info(f"User operation {status}: {operation} user={user_id} target={target}")


security_logger = SecurityAuditLogger()
