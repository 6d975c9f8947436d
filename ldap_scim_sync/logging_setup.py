"""
Logging setup and configuration for LDAP SCIM Sync.

This module provides centralized logging configuration with file rotation,
retention policies, optional JSON output and container-friendly console
output. Every handler scrubs credentials before anything is written.
"""

import os
import re
import json
import glob
import logging
import logging.handlers
from typing import Dict, Any
from datetime import datetime, timedelta


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub sensitive data from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'smtp_password', 'token', 'secret',
        'credential', 'pwd', 'api_key', 'client_secret', 'access_token',
        'refresh_token', 'ca_bundle_password'
    ]

    def filter(self, record):
        """Filter out sensitive data from log records."""
        if getattr(record, 'args', None):
            record.msg = record.getMessage()
            record.args = None

        msg = str(record.msg)

        for keyword in self.SENSITIVE_KEYWORDS:
            # key=value
            msg = re.sub(rf'({keyword}\s*=\s*)[^\s,}}\]]+', r'\1****', msg, flags=re.IGNORECASE)
            # "key": "value"
            msg = re.sub(rf'(["\']{keyword}["\']\s*:\s*["\'])[^"\']*(["\'])', r'\1****\2', msg, flags=re.IGNORECASE)

        msg = re.sub(r'(Authorization["\']?\s*[:=]\s*["\']?(?:Bearer|Basic)\s+)[^\s,"\'}}\]]+', r'\1****',
                     msg, flags=re.IGNORECASE)
        msg = re.sub(r'(Bearer\s+)[A-Za-z0-9\-._~+/]+=*', r'\1****', msg)

        record.msg = msg
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record):
        payload = {
            'ts': datetime.fromtimestamp(record.created).isoformat(timespec='seconds'),
            'level': record.levelname,
            'logger': record.name,
            'msg': record.getMessage(),
        }
        if record.exc_info:
            payload['exception'] = self.formatException(record.exc_info)
        return json.dumps(payload)


class LoggingManager:
    """
    Manages logging configuration for the application.

    Provides file-based logging with rotation, retention policies, and
    container-friendly console output.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Dict[str, Any], level_override: str = None) -> None:
        """
        Set up logging based on configuration.

        Args:
            config: Logging configuration dictionary
            level_override: Level from the command line, replacing ``level``
        """
        if self.configured:
            return

        logging_config = config if config else {}

        log_level = (level_override or logging_config.get('level', 'INFO')).upper()
        self.log_dir = logging_config.get('log_dir', 'logs')
        rotation = logging_config.get('rotation', 'daily')
        self.retention_days = logging_config.get('retention_days', 7)
        console_enabled = logging_config.get('console', True)
        console_level = logging_config.get('console_level', 'WARNING').upper()
        log_format = logging_config.get('format', 'text')

        self._ensure_log_directory()

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, log_level, logging.INFO))
        root_logger.handlers.clear()

        if log_format == 'json':
            file_formatter = JsonFormatter()
            console_formatter = JsonFormatter()
        else:
            file_formatter = logging.Formatter(
                '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            console_formatter = logging.Formatter(
                '%(asctime)s [%(levelname)s] %(message)s',
                datefmt='%H:%M:%S'
            )

        sensitive_filter = SensitiveDataFilter()

        file_handler = self._create_file_handler(rotation)
        file_handler.setLevel(getattr(logging, log_level, logging.INFO))
        file_handler.setFormatter(file_formatter)
        file_handler.addFilter(sensitive_filter)
        root_logger.addHandler(file_handler)

        if console_enabled:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(getattr(logging, console_level, logging.WARNING))
            console_handler.setFormatter(console_formatter)
            console_handler.addFilter(sensitive_filter)
            root_logger.addHandler(console_handler)

        # boto internals are noisy at DEBUG
        for noisy in ('boto3', 'botocore', 'urllib3'):
            logging.getLogger(noisy).setLevel(logging.WARNING)

        self._cleanup_old_logs()

        self.configured = True

        logger = logging.getLogger(__name__)
        logger.info(f"Logging configured: level={log_level}, dir={self.log_dir}, "
                    f"retention={self.retention_days} days, console={console_enabled}, format={log_format}")

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
        log_file = os.path.join(self.log_dir, 'app.log')

        if rotation.lower() in ['daily', 'midnight']:
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
        """Clean up log files older than retention period."""
        if not self.log_dir or self.retention_days <= 0:
            return

        cutoff_date = datetime.now() - timedelta(days=self.retention_days)

        for log_file in glob.glob(os.path.join(self.log_dir, 'app.log*')):
            if log_file.endswith('app.log'):
                continue
            try:
                file_time = datetime.fromtimestamp(os.path.getmtime(log_file))
                if file_time < cutoff_date:
                    os.remove(log_file)
                    print(f"Removed old log file: {log_file}")
            except (OSError, ValueError) as e:
                print(f"Warning: Could not remove old log file {log_file}: {e}")


# Global logging manager instance
_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any], level_override: str = None) -> None:
    """
    Convenience function to set up logging.

    Args:
        config: Logging configuration dictionary
        level_override: Optional level taking precedence over the config
    """
    _logging_manager.setup_logging(config, level_override)


class AuditLogger:
    """Writes one line per target mutation to the ``audit`` logger."""

    def __init__(self):
        self.logger = logging.getLogger('audit')

    def log_mutation(self, operation: str, entity: str, dry_run: bool, success: bool, detail: str = ''):
        """Record a create/update/delete/membership change against the target."""
        status = "SUCCESS" if success else "FAILURE"
        message = f"Target mutation {status}: {operation} entity={entity} dry_run={dry_run}"
        if detail:
            message += f" - {detail}"
        if success:
            self.logger.info(message)
        else:
            self.logger.warning(message)

    def log_authentication_attempt(self, system: str, principal: str, success: bool):
        """Log authentication attempts."""
        status = "SUCCESS" if success else "FAILURE"
        self.logger.info(f"Authentication {status}: {system} principal={principal}")


# Global audit logger instance
audit_logger = AuditLogger()
