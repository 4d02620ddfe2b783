"""
Exception hierarchy for FarmSync.

This module defines structured exceptions with error codes, context information,
and recovery suggestions. Dispatch outcomes are expressed as a closed set of
exception types (ConflictError, TransportError, ValidationError) so every
handling site can match them explicitly.
"""

import asyncio
from datetime import datetime
from typing import Optional, Dict, Any, List, TYPE_CHECKING
from enum import Enum

import aiohttp

if TYPE_CHECKING:
    from farmsync.shared.models import ConflictDescriptor


CONFLICT_REASON = "CONFLICT"


class ErrorCode(Enum):
    """Standardized error codes for FarmSync."""

    # Network and Communication Errors (2000-2099)
    NETWORK_CONNECTION_FAILED = "NETWORK_2001"
    NETWORK_TIMEOUT = "NETWORK_2002"
    NETWORK_SERVER_ERROR = "NETWORK_2003"
    NETWORK_OFFLINE = "NETWORK_2004"

    # Validation Errors (4000-4099)
    VALIDATION_INVALID_INPUT = "VALIDATION_4001"
    VALIDATION_MISSING_REQUIRED_FIELD = "VALIDATION_4002"
    VALIDATION_INVALID_FORMAT = "VALIDATION_4003"
    VALIDATION_VALUE_OUT_OF_RANGE = "VALIDATION_4004"
    VALIDATION_REJECTED_BY_SERVER = "VALIDATION_4005"

    # Record Errors (5000-5099)
    RECORD_NOT_FOUND = "RECORD_5001"
    RECORD_ALREADY_EXISTS = "RECORD_5002"

    # Synchronization Errors (6000-6099)
    SYNC_OPERATION_FAILED = "SYNC_6001"
    SYNC_STATE_CONFLICT = "SYNC_6002"
    SYNC_RETRIES_EXHAUSTED = "SYNC_6003"
    SYNC_REBASE_LIMIT_EXCEEDED = "SYNC_6004"
    SYNC_OPERATION_IN_FLIGHT = "SYNC_6005"
    SYNC_MUTATION_NOT_FOUND = "SYNC_6006"

    # Storage Errors (7000-7099)
    STORAGE_QUOTA_EXCEEDED = "STORAGE_7001"
    STORAGE_PERSISTENCE_FAILED = "STORAGE_7002"

    # Configuration Errors (8000-8099)
    CONFIG_FILE_NOT_FOUND = "CONFIG_8001"
    CONFIG_INVALID_FORMAT = "CONFIG_8002"
    CONFIG_INVALID_VALUE = "CONFIG_8004"

    # Internal Errors (9000-9099)
    INTERNAL_UNEXPECTED_ERROR = "INTERNAL_9001"


class ErrorSeverity(Enum):
    """Error severity levels for logging and handling."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryAction(Enum):
    """Suggested recovery actions for errors."""
    RETRY = "retry"
    RETRY_WITH_BACKOFF = "retry_with_backoff"
    WAIT_FOR_CONNECTIVITY = "wait_for_connectivity"
    REBASE_AND_RETRY = "rebase_and_retry"
    ADOPT_SERVER_VERSION = "adopt_server_version"
    USER_INTERVENTION = "user_intervention"
    IGNORE = "ignore"


class FarmSyncError(Exception):
    """
    Base exception class for all FarmSync errors.

    Provides structured error information including error codes, context,
    and recovery suggestions for consistent error handling.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        context: Optional[Dict[str, Any]] = None,
        recovery_actions: Optional[List[RecoveryAction]] = None,
        cause: Optional[Exception] = None,
        user_message: Optional[str] = None
    ):
        super().__init__(message)

        self.message = message
        self.error_code = error_code
        self.severity = severity
        self.context = context or {}
        self.recovery_actions = recovery_actions or []
        self.cause = cause
        self.user_message = user_message or message
        self.timestamp = datetime.now()

        if cause:
            self.context['cause_type'] = type(cause).__name__
            self.context['cause_message'] = str(cause)

    @property
    def reason(self) -> str:
        """Short machine-readable reason (the error code name)."""
        return self.error_code.name

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary format for serialization."""
        return {
            'error': {
                'code': self.error_code.value,
                'reason': self.reason,
                'message': self.message,
                'user_message': self.user_message,
                'severity': self.severity.value,
                'timestamp': self.timestamp.isoformat(),
                'context': self.context,
                'recovery_actions': [action.value for action in self.recovery_actions],
                'cause': {
                    'type': self.context.get('cause_type'),
                    'message': self.context.get('cause_message')
                } if self.cause else None
            }
        }

    def get_http_status_code(self) -> int:
        """Get appropriate HTTP status code for this error."""
        code_mapping = {
            ErrorCode.VALIDATION_INVALID_INPUT: 400,
            ErrorCode.VALIDATION_MISSING_REQUIRED_FIELD: 400,
            ErrorCode.VALIDATION_INVALID_FORMAT: 400,
            ErrorCode.VALIDATION_VALUE_OUT_OF_RANGE: 400,
            ErrorCode.VALIDATION_REJECTED_BY_SERVER: 422,

            ErrorCode.RECORD_NOT_FOUND: 404,
            ErrorCode.SYNC_MUTATION_NOT_FOUND: 404,

            ErrorCode.RECORD_ALREADY_EXISTS: 409,
            ErrorCode.SYNC_STATE_CONFLICT: 409,
            ErrorCode.SYNC_OPERATION_IN_FLIGHT: 409,

            ErrorCode.STORAGE_QUOTA_EXCEEDED: 507,

            ErrorCode.NETWORK_SERVER_ERROR: 503,
            ErrorCode.NETWORK_TIMEOUT: 408,
        }

        return code_mapping.get(self.error_code, 500)


class ConflictError(FarmSyncError):
    """
    The server's current version is newer than the client's base version.

    Always carries the structured conflict descriptor; ``reason`` is
    ``"CONFLICT"`` and ``http_status`` is 409.
    """

    http_status = 409

    def __init__(self, message: str, conflict: "ConflictDescriptor", **kwargs):
        context = kwargs.pop('context', None) or {}
        context.setdefault('record_id', conflict.server_version.id)
        context.setdefault('resolution', conflict.resolution.value)

        super().__init__(
            message=message,
            error_code=ErrorCode.SYNC_STATE_CONFLICT,
            severity=ErrorSeverity.LOW,
            context=context,
            recovery_actions=[
                RecoveryAction.REBASE_AND_RETRY,
                RecoveryAction.ADOPT_SERVER_VERSION
            ],
            **kwargs
        )
        self.conflict = conflict

    @property
    def reason(self) -> str:
        return CONFLICT_REASON

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['error']['conflict'] = self.conflict.to_dict()
        return data


class TransportError(FarmSyncError):
    """Timeouts, 5xx responses and loss of connectivity."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.NETWORK_CONNECTION_FAILED,
        status_code: Optional[int] = None,
        **kwargs
    ):
        context = kwargs.pop('context', None) or {}
        if status_code is not None:
            context['status_code'] = status_code

        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.MEDIUM,
            context=context,
            recovery_actions=[
                RecoveryAction.RETRY_WITH_BACKOFF,
                RecoveryAction.WAIT_FOR_CONNECTIVITY
            ],
            **kwargs
        )
        self.status_code = status_code

    @property
    def is_connectivity_loss(self) -> bool:
        """True when the request never reached the server."""
        return self.error_code in (
            ErrorCode.NETWORK_CONNECTION_FAILED,
            ErrorCode.NETWORK_OFFLINE
        )


class ValidationError(FarmSyncError):
    """Input validation related errors. Never retried."""

    def __init__(self, message: str, field_name: Optional[str] = None, **kwargs):
        context = kwargs.pop('context', None) or {}
        if field_name:
            context['field_name'] = field_name

        error_code = kwargs.pop('error_code', ErrorCode.VALIDATION_INVALID_INPUT)
        severity = kwargs.pop('severity', ErrorSeverity.LOW)
        recovery_actions = kwargs.pop('recovery_actions', [RecoveryAction.USER_INTERVENTION])

        super().__init__(
            message=message,
            error_code=error_code,
            severity=severity,
            recovery_actions=recovery_actions,
            context=context,
            **kwargs
        )


class RecordNotFoundError(FarmSyncError):
    """The requested record does not exist."""

    def __init__(self, entity_type: str, record_id: str, **kwargs):
        context = kwargs.pop('context', None) or {}
        context.update({'entity_type': entity_type, 'record_id': record_id})

        super().__init__(
            message=f"{entity_type} {record_id} not found",
            error_code=ErrorCode.RECORD_NOT_FOUND,
            severity=ErrorSeverity.LOW,
            context=context,
            recovery_actions=[RecoveryAction.IGNORE],
            **kwargs
        )


class SynchronizationError(FarmSyncError):
    """Mutation queue related errors."""

    def __init__(self, message: str, error_code: ErrorCode, mutation_id: Optional[str] = None, **kwargs):
        context = kwargs.pop('context', None) or {}
        if mutation_id:
            context['mutation_id'] = mutation_id

        super().__init__(
            message=message,
            error_code=error_code,
            severity=kwargs.pop('severity', ErrorSeverity.MEDIUM),
            recovery_actions=[RecoveryAction.USER_INTERVENTION],
            context=context,
            **kwargs
        )


class StorageError(FarmSyncError):
    """Local storage related errors."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.STORAGE_QUOTA_EXCEEDED, **kwargs):
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.USER_INTERVENTION],
            **kwargs
        )


class ConfigurationError(FarmSyncError):
    """Configuration related errors."""

    def __init__(self, message: str, error_code: ErrorCode, config_key: Optional[str] = None, **kwargs):
        context = kwargs.pop('context', None) or {}
        if config_key:
            context['config_key'] = config_key

        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.USER_INTERVENTION],
            context=context,
            **kwargs
        )


def create_error_response(error: FarmSyncError) -> Dict[str, Any]:
    """
    Create a standardized error response dictionary from an exception.

    Args:
        error: The FarmSyncError exception

    Returns:
        Standardized error response dictionary
    """
    return error.to_dict()


def handle_exception(
    exception: Exception,
    context: Optional[Dict[str, Any]] = None,
    default_error_code: ErrorCode = ErrorCode.INTERNAL_UNEXPECTED_ERROR
) -> FarmSyncError:
    """
    Convert a generic exception to a structured FarmSyncError.

    Args:
        exception: The original exception
        context: Additional context information
        default_error_code: Default error code if specific mapping not found

    Returns:
        Structured FarmSyncError
    """
    if isinstance(exception, FarmSyncError):
        return exception

    if isinstance(exception, (asyncio.TimeoutError, TimeoutError)):
        return TransportError(
            message=str(exception) or "Request timed out",
            error_code=ErrorCode.NETWORK_TIMEOUT,
            context=context,
            cause=exception
        )

    if isinstance(exception, (ConnectionError, aiohttp.ClientError)):
        return TransportError(
            message=str(exception),
            error_code=ErrorCode.NETWORK_CONNECTION_FAILED,
            context=context,
            cause=exception
        )

    if isinstance(exception, ValueError):
        return ValidationError(
            message=str(exception),
            context=context,
            cause=exception
        )

    return FarmSyncError(
        message=str(exception),
        error_code=default_error_code,
        context=context,
        cause=exception
    )
