"""
Logging setup and configuration for LLDAP POSIX IDs.

This module provides centralized logging configuration including file rotation,
retention policies, container-friendly console output, and an audit logger that
records every attribute written to the directory.
"""

import os
import re
import glob
import logging
import logging.handlers
from typing import Dict, Any
from datetime import datetime, timedelta


def _compile_patterns(keywords):
    """(pattern, replacement) pairs for key=value, "key": "value" and "key": value forms."""
    patterns = []
    for keyword in keywords:
        patterns.extend([
            (re.compile(rf'({keyword}\s*=\s*)[^\s,}}\]]+(\s|,|$)', re.IGNORECASE), r'\1****\2'),
            (re.compile(rf'("{keyword}"\s*:\s*")[^"]*(")', re.IGNORECASE), r'\1****\2'),
            (re.compile(rf'("{keyword}"\s*:\s*)([^",}}\s]+)(\s*[,}}\]])', re.IGNORECASE), r'\1****\3'),
        ])
    patterns.append(
        (re.compile(r'(Authorization:\s*Bearer\s+)[^\s,}\]]+(\s|,|$)', re.IGNORECASE), r'\1****\2')
    )
    return patterns


class SensitiveDataFilter(logging.Filter):
    """Mask passwords, tokens and bearer credentials before a record is written."""
    
    SENSITIVE_KEYWORDS = [
        'password', 'token', 'refresh_token', 'refreshToken', 'secret',
        'credential', 'authorization', 'bearer'
    ]
    
    PATTERNS = _compile_patterns(SENSITIVE_KEYWORDS)
    
    def filter(self, record):
        if hasattr(record, 'msg'):
            msg = str(record.msg)
            for pattern, replacement in self.PATTERNS:
                msg = pattern.sub(replacement, msg)
            record.msg = msg
        return True


class LoggingManager:
    """
    Configures the root logger once per process.
    
    Records go to a log file under log_dir (rotated at midnight unless rotation
    is 'none') and, optionally, to the console at its own level. Rotated files
    older than retention_days are deleted when logging is set up.
    """
    
    LOG_FILE = 'posix-ids.log'
    FILE_FORMAT = '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s'
    CONSOLE_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'
    
    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7
    
    def setup_logging(self, config: Dict[str, Any]) -> None:
        """
        Set up logging based on configuration.
        
        Args:
            config: The 'logging' configuration section
        """
        if self.configured:
            return
        
        config = config or {}
        level = self._level(config.get('level'), logging.INFO)
        self.log_dir = config.get('log_dir', 'logs')
        self.retention_days = config.get('retention_days', 7)
        console_enabled = config.get('console_output', True)
        
        self._ensure_log_directory()
        
        root_logger = logging.getLogger()
        root_logger.setLevel(level)
        root_logger.handlers.clear()
        
        sensitive_filter = SensitiveDataFilter()
        file_handler = self._create_file_handler(config.get('rotation', 'daily'))
        self._attach(root_logger, file_handler, level,
                     logging.Formatter(self.FILE_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'), sensitive_filter)
        if console_enabled:
            self._attach(root_logger, logging.StreamHandler(),
                         self._level(config.get('console_level'), logging.WARNING),
                         logging.Formatter(self.CONSOLE_FORMAT, datefmt='%H:%M:%S'), sensitive_filter)
        
        self._cleanup_old_logs()
        self.configured = True
        
        logging.getLogger(__name__).info(
            f"Logging configured: level={logging.getLevelName(level)}, dir={self.log_dir}, "
            f"retention={self.retention_days} days, console={console_enabled}")
    
    @staticmethod
    def _level(name: Any, default: int) -> int:
        if not name:
            return default
        return getattr(logging, str(name).upper(), default)
    
    @staticmethod
    def _attach(root_logger: logging.Logger, handler: logging.Handler, level: int,
                formatter: logging.Formatter, sensitive_filter: logging.Filter) -> None:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(sensitive_filter)
        root_logger.addHandler(handler)
    
    def _ensure_log_directory(self) -> None:
        if not self.log_dir or os.path.isdir(self.log_dir):
            return
        try:
            os.makedirs(self.log_dir, exist_ok=True)
        except OSError as e:
            print(f"Warning: cannot create log directory {self.log_dir} ({e}), logging to the current directory")
            self.log_dir = '.'
    
    def _create_file_handler(self, rotation: str) -> logging.Handler:
        """File handler rotating at midnight for 'daily'/'midnight', plain otherwise."""
        log_file = os.path.join(self.log_dir, self.LOG_FILE)
        if str(rotation).lower() not in ('daily', 'midnight'):
            return logging.FileHandler(log_file, encoding='utf-8')
        
        handler = logging.handlers.TimedRotatingFileHandler(
            log_file, when='midnight', backupCount=self.retention_days, encoding='utf-8'
        )
        handler.suffix = '%Y-%m-%d'
        return handler
    
    def _cleanup_old_logs(self) -> None:
        """Delete rotated log files past the retention period."""
        if not self.log_dir or self.retention_days <= 0:
            return
        
        cutoff = datetime.now() - timedelta(days=self.retention_days)
        for rotated in glob.glob(os.path.join(self.log_dir, self.LOG_FILE + '.*')):
            try:
                if datetime.fromtimestamp(os.path.getmtime(rotated)) < cutoff:
                    os.remove(rotated)
                    print(f"Removed old log file: {rotated}")
            except (OSError, ValueError) as e:
                print(f"Warning: Could not remove old log file {rotated}: {e}")


# Global logging manager instance
_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any]) -> None:
    """
    Convenience function to set up logging.
    
    Args:
        config: Logging configuration dictionary
    """
    _logging_manager.setup_logging(config)


class AuditLogger:
    """Special logger for writes made to the directory."""
    
    def __init__(self):
        self.logger = logging.getLogger('audit')
    
    def log_attribute_assignment(self, kind: str, identity: Any, attribute: str,
                                 value: int, success: bool):
        """Log an attribute patch on a user or group."""
        status = "SUCCESS" if success else "FAILURE"
        self.logger.info(f"Attribute assignment {status}: {kind}={identity} {attribute}={value}")
    
    def log_group_creation(self, display_name: str, group_id: Any, success: bool):
        """Log creation of a group."""
        status = "SUCCESS" if success else "FAILURE"
        self.logger.info(f"Group creation {status}: {display_name} id={group_id}")
    
    def log_schema_change(self, scope: str, attribute: str, attribute_type: str, success: bool):
        """Log a schema attribute being added."""
        status = "SUCCESS" if success else "FAILURE"
        self.logger.info(f"Schema change {status}: {scope} attribute {attribute} ({attribute_type})")


# Global audit logger instance
audit_logger = AuditLogger()
