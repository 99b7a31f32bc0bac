"""
Logging setup and configuration for Group Flatten Sync.

Three channels are configured here:
    - the application log file, rotated daily with a retention policy
    - the console, showing warnings by default and info lines with --verbose
    - the plan channel (``group_flatten.plan``), which always reaches the
      console so that a dry run shows what would change without --verbose
"""

import os
import re
import glob
import logging
import logging.handlers
from typing import Dict, Any, Mapping, Optional
from datetime import datetime, timedelta

PLAN_LOGGER_NAME = 'group_flatten.plan'
AUDIT_LOGGER_NAME = 'group_flatten.audit'


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub credentials from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'smtp_password', 'secret', 'credential',
        'pwd', 'token',
    ]

    def filter(self, record):
        """Mask key=value and JSON style credential values."""
        msg = record.getMessage()

        for keyword in self.SENSITIVE_KEYWORDS:
            msg = re.sub(rf'({keyword}\s*[=:]\s*)[^\s,}}\]\'"]+', r'\1****', msg, flags=re.IGNORECASE)
            msg = re.sub(rf'([\'"]{keyword}[\'"]\s*:\s*[\'"])[^\'"]*([\'"])', r'\1****\2', msg, flags=re.IGNORECASE)

        record.msg = msg
        record.args = None
        return True


class LoggingManager:
    """
    Manages logging configuration for a flattening run.

    Provides file-based logging with rotation and retention, a console
    handler whose level follows the verbose flag, and the plan channel.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Optional[Mapping[str, Any]], verbose: bool = False) -> None:
        """
        Set up logging based on configuration.

        Args:
            config: Logging configuration dictionary
            verbose: Show informational trace lines on the console
        """
        if self.configured:
            return

        logging_config = config if config else {}

        log_level = str(logging_config.get('level', 'INFO')).upper()
        self.log_dir = logging_config.get('log_dir', 'logs')
        rotation = logging_config.get('rotation', 'daily')
        self.retention_days = logging_config.get('retention_days', 7)
        console_enabled = logging_config.get('console_output', True)
        console_level = 'INFO' if verbose else str(logging_config.get('console_level', 'WARNING')).upper()

        root_logger = logging.getLogger()
        root_logger.setLevel(logging.DEBUG if verbose else getattr(logging, log_level, logging.INFO))
        root_logger.handlers.clear()

        detailed_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        console_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%H:%M:%S'
        )
        sensitive_filter = SensitiveDataFilter()

        if self.log_dir:
            self._ensure_log_directory()
            file_handler = self._create_file_handler(rotation)
            file_handler.setLevel(getattr(logging, log_level, logging.INFO))
            file_handler.setFormatter(detailed_formatter)
            file_handler.addFilter(sensitive_filter)
            root_logger.addHandler(file_handler)

        if console_enabled:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(getattr(logging, console_level, logging.WARNING))
            console_handler.setFormatter(console_formatter)
            console_handler.addFilter(sensitive_filter)
            root_logger.addHandler(console_handler)

        self._setup_plan_channel(console_formatter, sensitive_filter, console_enabled, verbose)

        if self.log_dir:
            self._cleanup_old_logs()

        self.configured = True

        logger = logging.getLogger(__name__)
        logger.info(f"Logging configured: level={log_level}, dir={self.log_dir}, "
                    f"retention={self.retention_days} days, console={console_enabled}, verbose={verbose}")

    def _setup_plan_channel(self, formatter, sensitive_filter, console_enabled: bool, verbose: bool) -> None:
        """
        Route plan lines to the console at INFO regardless of console level.

        With --verbose the root console handler already shows them, so the
        dedicated handler is skipped to avoid printing each line twice.
        """
        plan_logger = logging.getLogger(PLAN_LOGGER_NAME)
        plan_logger.handlers.clear()
        plan_logger.setLevel(logging.INFO)

        if console_enabled and not verbose:
            plan_handler = logging.StreamHandler()
            plan_handler.setLevel(logging.INFO)
            plan_handler.setFormatter(formatter)
            plan_handler.addFilter(sensitive_filter)
            plan_handler.addFilter(_BelowWarningFilter())
            plan_logger.addHandler(plan_handler)

    def _ensure_log_directory(self) -> None:
        """Ensure the log directory exists."""
        if self.log_dir and not os.path.exists(self.log_dir):
            try:
                os.makedirs(self.log_dir, exist_ok=True)
            except OSError as e:
                print(f"Warning: Could not create log directory {self.log_dir}: {e}")
                print("Falling back to current directory for logs")
                self.log_dir = '.'

    def _create_file_handler(self, rotation: str) -> logging.Handler:
        """
        Create appropriate file handler based on rotation setting.

        Args:
            rotation: Rotation setting ('daily', 'midnight', or 'none')

        Returns:
            Configured logging handler
        """
        log_file = os.path.join(self.log_dir, 'group_flatten.log')

        if str(rotation).lower() in ['daily', 'midnight']:
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

        for log_file in glob.glob(os.path.join(self.log_dir, 'group_flatten.log.*')):
            try:
                file_time = datetime.fromtimestamp(os.path.getmtime(log_file))
                if file_time < cutoff_date:
                    os.remove(log_file)
            except OSError as e:
                print(f"Warning: Could not remove old log file {log_file}: {e}")

    def reset(self) -> None:
        """Forget the current configuration so setup_logging can run again."""
        self.configured = False


class _BelowWarningFilter(logging.Filter):
    """Warnings already reach the console through the root handler."""

    def filter(self, record):
        return record.levelno < logging.WARNING


_logging_manager = LoggingManager()


def setup_logging(config: Optional[Mapping[str, Any]], verbose: bool = False) -> None:
    """
    Convenience function to set up logging.

    Args:
        config: Logging configuration dictionary
        verbose: Show informational trace lines on the console
    """
    _logging_manager.setup_logging(config, verbose)


def reset_logging() -> None:
    _logging_manager.reset()


def get_plan_logger() -> logging.Logger:
    return logging.getLogger(PLAN_LOGGER_NAME)


class AuditLogger:
    """Audit trail for binds and applied membership changes."""

    def __init__(self):
        self.logger = logging.getLogger(AUDIT_LOGGER_NAME)

    def log_bind_attempt(self, server: str, bind_dn: str, success: bool):
        status = "SUCCESS" if success else "FAILURE"
        self.logger.info(f"Bind {status}: server={server} user={bind_dn}")

    def log_membership_change(self, action: str, account_name: str, group: str, success: bool):
        status = "SUCCESS" if success else "FAILURE"
        self.logger.info(f"Membership change {status}: {action} user={account_name} group={group}")


audit_logger = AuditLogger()
