"""
Logging setup and configuration for groupsync.

Console output goes to stderr so listings and diffs printed on stdout stay
clean. A rotating log file is added when ``log_dir`` is configured.
"""

import os
import re
import logging
import logging.handlers
from typing import Dict, Any, Optional


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub sensitive data from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'token', 'secret', 'private_key',
        'priv_key', 'credential', 'authorization', 'bearer', 'access_token',
    ]

    def filter(self, record):
        """Filter out sensitive data from log records."""
        if hasattr(record, 'msg'):
            msg = str(record.msg)

            for keyword in self.SENSITIVE_KEYWORDS:
                # key=value
                msg = re.sub(rf'({keyword}\s*=\s*)[^\s,}}\]]+(\s|,|$)', r'\1****\2', msg, flags=re.IGNORECASE)
                # "key": "value"
                msg = re.sub(rf'("{keyword}"\s*:\s*")[^"]*(")', r'\1****\2', msg, flags=re.IGNORECASE)
                # 'key': 'value' (repr of a dict)
                msg = re.sub(rf"('{keyword}'\s*:\s*')[^']*(')", r'\1****\2', msg, flags=re.IGNORECASE)

            msg = re.sub(r'(Authorization:\s*(?:Bearer|token)\s+)[^\s,}\]]+', r'\1****', msg, flags=re.IGNORECASE)
            msg = re.sub(r'-----BEGIN [A-Z ]*PRIVATE KEY-----.*?-----END [A-Z ]*PRIVATE KEY-----',
                         '****', msg, flags=re.DOTALL)

            record.msg = msg

        return True


class LoggingManager:
    """
    Manages logging configuration for groupsync.

    Provides console output, optional file logging with rotation, and
    scrubbing of secrets on every handler.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Optional[Dict[str, Any]], verbose: bool = False) -> None:
        """
        Set up logging based on configuration.

        Args:
            config: Logging configuration dictionary
            verbose: Force DEBUG level on the console
        """
        logging_config = config if config else {}

        log_level = str(logging_config.get('level', 'INFO')).upper()
        if verbose:
            log_level = 'DEBUG'
        self.log_dir = logging_config.get('log_dir')
        rotation = logging_config.get('rotation', 'daily')
        self.retention_days = logging_config.get('retention_days', 7)

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, log_level, logging.INFO))

        # Reconfiguring replaces the handlers installed by a previous call
        root_logger.handlers.clear()

        sensitive_filter = SensitiveDataFilter()

        console_handler = logging.StreamHandler()
        console_handler.setLevel(getattr(logging, log_level, logging.INFO))
        console_handler.setFormatter(logging.Formatter('%(levelname)s %(name)s: %(message)s'))
        console_handler.addFilter(sensitive_filter)
        root_logger.addHandler(console_handler)

        if self.log_dir:
            self._ensure_log_directory()
            file_handler = self._create_file_handler(rotation)
            file_handler.setLevel(getattr(logging, log_level, logging.INFO))
            file_handler.setFormatter(logging.Formatter(
                '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            ))
            file_handler.addFilter(sensitive_filter)
            root_logger.addHandler(file_handler)

        self.configured = True

        logging.getLogger(__name__).debug(f"Logging configured: level={log_level}, dir={self.log_dir}")

    def _ensure_log_directory(self) -> None:
        """Ensure the log directory exists."""
        os.makedirs(self.log_dir, exist_ok=True)

    def _create_file_handler(self, rotation: str) -> logging.Handler:
        """
        Create appropriate file handler based on rotation setting.

        Args:
            rotation: Rotation setting ('daily', 'midnight', or 'none')

        Returns:
            Configured logging handler
        """
        log_file = os.path.join(self.log_dir, 'groupsync.log')

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


# Global logging manager instance
_logging_manager = LoggingManager()


def setup_logging(config: Optional[Dict[str, Any]], verbose: bool = False) -> None:
    """
    Convenience function to set up logging.

    Args:
        config: Logging configuration dictionary
        verbose: Force DEBUG level
    """
    _logging_manager.setup_logging(config, verbose)
