"""
Logging configuration for FarmSync.

This module provides structured logging with audit trails, operation tracking,
and configurable output formats for both server and client components.
"""

import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, Optional
from enum import Enum

from farmsync.shared.exceptions import FarmSyncError


class LogLevel(Enum):
    """Log level enumeration."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormat(Enum):
    """Log format enumeration."""
    STANDARD = "standard"
    JSON = "json"
    DETAILED = "detailed"


class AuditEventType(Enum):
    """Types of events that should be audited."""
    MUTATION_ENQUEUED = "mutation_enqueued"
    MUTATION_APPLIED = "mutation_applied"
    MUTATION_FAILED = "mutation_failed"
    MUTATION_DISCARDED = "mutation_discarded"
    CONFLICT_RESOLVED = "conflict_resolved"
    CONNECTIVITY_CHANGED = "connectivity_changed"
    ERROR_EVENT = "error_event"


_RESERVED_RECORD_KEYS = frozenset([
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
    'module', 'lineno', 'funcName', 'created', 'msecs', 'relativeCreated',
    'thread', 'threadName', 'processName', 'process', 'getMessage', 'exc_info',
    'exc_text', 'stack_info', 'error_info', 'audit_info', 'operation_context',
    'taskName', 'message', 'asctime'
])


class StructuredFormatter(logging.Formatter):
    """
    Formatter that outputs structured JSON logs with consistent fields.
    """

    def __init__(self, include_extra_fields: bool = True):
        super().__init__()
        self.include_extra_fields = include_extra_fields

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON."""
        log_entry = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
            'process': {'pid': os.getpid()}
        }

        if record.exc_info:
            log_entry['exception'] = {
                'type': record.exc_info[0].__name__ if record.exc_info[0] else None,
                'message': str(record.exc_info[1]) if record.exc_info[1] else None,
                'traceback': self.formatException(record.exc_info)
            }

        error = getattr(record, 'error_info', None)
        if isinstance(error, FarmSyncError):
            log_entry['error'] = {
                'code': error.error_code.value,
                'reason': error.reason,
                'severity': error.severity.value,
                'context': error.context,
                'recovery_actions': [action.value for action in error.recovery_actions],
                'user_message': error.user_message
            }

        if hasattr(record, 'audit_info'):
            log_entry['audit'] = record.audit_info

        if hasattr(record, 'operation_context'):
            log_entry['operation'] = record.operation_context

        if self.include_extra_fields:
            extra_fields = {
                key: value for key, value in record.__dict__.items()
                if key not in _RESERVED_RECORD_KEYS
            }
            if extra_fields:
                log_entry['extra'] = extra_fields

        return json.dumps(log_entry, default=str, ensure_ascii=False)


class DetailedFormatter(logging.Formatter):
    """
    Human-readable formatter that expands structured attachments.
    """

    def __init__(self):
        super().__init__(
            fmt='%(asctime)s | %(levelname)-8s | %(name)-20s | %(funcName)-15s:%(lineno)-4d | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    def format(self, record: logging.LogRecord) -> str:
        formatted = super().format(record)

        error = getattr(record, 'error_info', None)
        if isinstance(error, FarmSyncError):
            formatted += f"\n  Error Code: {error.error_code.value}"
            formatted += f"\n  Severity: {error.severity.value}"
            if error.context:
                formatted += f"\n  Context: {json.dumps(error.context, indent=2, default=str)}"
            if error.recovery_actions:
                actions = [action.value for action in error.recovery_actions]
                formatted += f"\n  Recovery Actions: {', '.join(actions)}"

        if hasattr(record, 'audit_info'):
            formatted += f"\n  Audit: {json.dumps(record.audit_info, indent=2, default=str)}"

        if hasattr(record, 'operation_context'):
            formatted += f"\n  Operation: {json.dumps(record.operation_context, indent=2, default=str)}"

        return formatted


class SyncAuditLogger:
    """
    Logger for mutation lifecycle audit events.
    """

    def __init__(self, logger_name: str = "audit"):
        self.logger = logging.getLogger(logger_name)

    def log_event(
        self,
        event_type: AuditEventType,
        message: str,
        mutation_id: Optional[str] = None,
        entity_key: Optional[str] = None,
        result: Optional[str] = None,
        additional_context: Optional[Dict[str, Any]] = None
    ):
        """
        Log an audit event with structured information.

        Args:
            event_type: Type of audit event
            message: Human-readable message
            mutation_id: ID of the mutation involved
            entity_key: ``entity_type:entity_id`` of the target record
            result: Result of the operation (success, failure, etc.)
            additional_context: Additional context information
        """
        audit_info = {
            'event_type': event_type.value,
            'timestamp': datetime.now().isoformat(),
            'mutation_id': mutation_id,
            'entity_key': entity_key,
            'result': result,
            'context': additional_context or {}
        }
        audit_info = {k: v for k, v in audit_info.items() if v is not None}

        self.logger.info(message, extra={'audit_info': audit_info})

    def log_conflict(self, mutation_id: str, entity_key: str, resolution: str, attempt_index: int):
        """Log a resolved version conflict."""
        self.log_event(
            event_type=AuditEventType.CONFLICT_RESOLVED,
            message=f"Conflict on {entity_key} resolved as {resolution}",
            mutation_id=mutation_id,
            entity_key=entity_key,
            result=resolution,
            additional_context={'attempt_index': attempt_index}
        )

    def log_error(self, error: FarmSyncError, mutation_id: Optional[str] = None,
                  entity_key: Optional[str] = None):
        """Log error events."""
        self.log_event(
            event_type=AuditEventType.ERROR_EVENT,
            message=f"Error occurred: {error.message}",
            mutation_id=mutation_id,
            entity_key=entity_key,
            result="error",
            additional_context={
                'error_code': error.error_code.value,
                'severity': error.severity.value,
                'context': error.context,
                'recovery_actions': [action.value for action in error.recovery_actions]
            }
        )


class OperationLogger:
    """
    Logger for tracking dispatches with context and timing.
    """

    def __init__(self, logger_name: str = "operations"):
        self.logger = logging.getLogger(logger_name)

    def log_operation_start(
        self,
        operation_type: str,
        operation_id: str,
        context: Optional[Dict[str, Any]] = None
    ):
        operation_context = {
            'operation_id': operation_id,
            'operation_type': operation_type,
            'stage': 'started',
            'start_time': datetime.now().isoformat(),
            'context': context or {}
        }
        self.logger.debug(f"Operation {operation_type} started: {operation_id}",
                          extra={'operation_context': operation_context})

    def log_operation_complete(
        self,
        operation_id: str,
        success: bool,
        duration_seconds: Optional[float] = None,
        result_summary: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        operation_context = {
            'operation_id': operation_id,
            'stage': 'completed',
            'success': success,
            'duration_seconds': duration_seconds,
            'result_summary': result_summary,
            'end_time': datetime.now().isoformat(),
            'context': context or {}
        }

        status = "completed successfully" if success else "failed"
        message = f"Operation {operation_id} {status}"
        if duration_seconds:
            message += f" (took {duration_seconds:.2f}s)"
        if result_summary:
            message += f": {result_summary}"

        level = logging.INFO if success else logging.WARNING
        self.logger.log(level, message, extra={'operation_context': operation_context})


def setup_logging(
    log_level: LogLevel = LogLevel.INFO,
    log_format: LogFormat = LogFormat.STANDARD,
    log_file: Optional[str] = None,
    max_file_size: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    enable_console: bool = True,
    enable_audit: bool = True,
    audit_file: Optional[str] = None
) -> Dict[str, logging.Logger]:
    """
    Set up logging for a FarmSync process.

    Args:
        log_level: Minimum log level to capture
        log_format: Format for log output
        log_file: Path to main log file (optional)
        max_file_size: Maximum size of log files before rotation
        backup_count: Number of backup files to keep
        enable_console: Whether to enable console logging
        enable_audit: Whether to enable audit logging
        audit_file: Path to audit log file (optional)

    Returns:
        Dictionary of configured loggers
    """
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.value))

    if log_format == LogFormat.JSON:
        formatter = StructuredFormatter()
    elif log_format == LogFormat.DETAILED:
        formatter = DetailedFormatter()
    else:
        formatter = logging.Formatter(
            fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    handlers = []

    if enable_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_file_size,
            backupCount=backup_count,
            encoding='utf-8'
        )
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    for handler in handlers:
        root_logger.addHandler(handler)

    loggers = {
        'root': root_logger,
        'sync': logging.getLogger('farmsync.client'),
        'server': logging.getLogger('farmsync.server'),
        'operations': logging.getLogger('operations')
    }

    if enable_audit:
        audit_logger = logging.getLogger('audit')
        audit_logger.setLevel(logging.INFO)
        for handler in audit_logger.handlers[:]:
            audit_logger.removeHandler(handler)

        if audit_file:
            audit_path = Path(audit_file)
            audit_path.parent.mkdir(parents=True, exist_ok=True)
            audit_handler = logging.handlers.RotatingFileHandler(
                audit_file,
                maxBytes=max_file_size,
                backupCount=backup_count,
                encoding='utf-8'
            )
        else:
            audit_handler = logging.StreamHandler(sys.stdout)

        # Audit records are always JSON
        audit_handler.setFormatter(StructuredFormatter())
        audit_logger.addHandler(audit_handler)
        audit_logger.propagate = False

        loggers['audit'] = audit_logger

    return loggers


def log_structured_error(
    logger: logging.Logger,
    error: FarmSyncError,
    mutation_id: Optional[str] = None,
    entity_key: Optional[str] = None,
    level: int = logging.ERROR
):
    """
    Log a structured error with full context information.

    Args:
        logger: Logger instance to use
        error: The structured error to log
        mutation_id: Optional mutation ID for context
        entity_key: Optional ``entity_type:entity_id`` for context
        level: Log level to emit at
    """
    extra = {
        'error_info': error,
        'mutation_id': mutation_id,
        'entity_key': entity_key
    }
    logger.log(level, error.message, extra=extra)
