"""
Exception hierarchy for the VRChat Avatar Gallery.

This module defines structured exceptions with error codes, context information,
and recovery suggestions. Components raise these internally and convert them to
outcome values at their public boundary.
"""

from datetime import datetime
from typing import Optional, Dict, Any, List, Tuple, Callable
from enum import Enum


class ErrorCode(Enum):
    """Standardized error codes for the avatar gallery core."""

    # Authentication Errors (1000-1099)
    AUTH_INVALID_CREDENTIALS = "AUTH_1001"
    AUTH_TOKEN_EXPIRED = "AUTH_1002"
    AUTH_TWO_FACTOR_REQUIRED = "AUTH_1003"
    AUTH_TWO_FACTOR_INVALID = "AUTH_1004"
    AUTH_REFRESH_UNAVAILABLE = "AUTH_1005"
    AUTH_REFRESH_FAILED = "AUTH_1006"

    # Network and Communication Errors (2000-2099)
    NETWORK_CONNECTION_FAILED = "NETWORK_2001"
    NETWORK_TIMEOUT = "NETWORK_2002"
    NETWORK_HTTP_STATUS = "NETWORK_2003"
    NETWORK_INVALID_RESPONSE = "NETWORK_2004"

    # Persistence Errors (3000-3099)
    PERSISTENCE_READ_FAILED = "PERSISTENCE_3001"
    PERSISTENCE_WRITE_FAILED = "PERSISTENCE_3002"
    PERSISTENCE_DECRYPT_FAILED = "PERSISTENCE_3003"
    PERSISTENCE_CORRUPT_DATA = "PERSISTENCE_3004"

    # Validation Errors (4000-4099)
    VALIDATION_INVALID_INPUT = "VALIDATION_4001"
    VALIDATION_MISSING_REQUIRED_FIELD = "VALIDATION_4002"
    VALIDATION_INVALID_FORMAT = "VALIDATION_4003"
    VALIDATION_DUPLICATE_VALUE = "VALIDATION_4005"

    # Configuration Errors (8000-8099)
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
    REFRESH_TOKEN = "refresh_token"
    RELOGIN = "relogin"
    REBUILD_CACHE = "rebuild_cache"
    USER_INTERVENTION = "user_intervention"
    IGNORE = "ignore"


class GalleryError(Exception):
    """
    Root of every error raised inside the gallery core.

    Components raise these internally and turn them into outcome values
    (LoginOutcome, AddOutcome, None from a fetch) at their public boundary,
    so callers above that line only ever see ``describe()`` text.
    """

    default_severity = ErrorSeverity.MEDIUM
    default_recovery: Tuple[RecoveryAction, ...] = ()

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        severity: Optional[ErrorSeverity] = None,
        context: Optional[Dict[str, Any]] = None,
        recovery_actions: Optional[List[RecoveryAction]] = None,
        cause: Optional[Exception] = None,
        user_message: Optional[str] = None
    ):
        super().__init__(message)

        self.message = message
        self.error_code = error_code
        self.severity = severity or self.default_severity
        self.context = dict(context or {})
        self.recovery_actions = list(recovery_actions or self.default_recovery)
        self.cause = cause
        self.user_message = user_message or message
        self.timestamp = datetime.now()

        if cause is not None:
            self.context.update(cause_type=type(cause).__name__, cause_message=str(cause))

    def to_dict(self) -> Dict[str, Any]:
        cause = None
        if self.cause is not None:
            cause = {'type': self.context['cause_type'], 'message': self.context['cause_message']}
        return {
            'error': {
                'code': self.error_code.value,
                'message': self.message,
                'user_message': self.user_message,
                'severity': self.severity.value,
                'timestamp': self.timestamp.isoformat(),
                'context': self.context,
                'recovery_actions': [action.value for action in self.recovery_actions],
                'cause': cause,
            }
        }

    def describe(self) -> str:
        """Short reason suitable for a status line."""
        return self.user_message


def _merge_context(kwargs: Dict[str, Any], **fields) -> Dict[str, Any]:
    context = dict(kwargs.pop('context', None) or {})
    context.update({key: value for key, value in fields.items() if value is not None})
    return context


class _HTTPError(GalleryError):
    """An error that may carry an HTTP status and the server's own error text."""

    default_code = ErrorCode.NETWORK_CONNECTION_FAILED

    def __init__(
        self,
        message: str,
        error_code: Optional[ErrorCode] = None,
        status: Optional[int] = None,
        server_message: Optional[str] = None,
        **kwargs
    ):
        context = _merge_context(kwargs, status=status)
        super().__init__(message, error_code or self.default_code, context=context, **kwargs)
        self.status = status
        self.server_message = server_message

    def describe(self) -> str:
        """The server's message, else ``HTTP <status>``, else our own message."""
        if self.server_message:
            return self.server_message
        if self.status is not None:
            return f"HTTP {self.status}"
        return self.message


class AuthError(_HTTPError):
    """Bad credentials, failed 2FA, or an expired session that cannot be refreshed."""

    default_code = ErrorCode.AUTH_INVALID_CREDENTIALS
    default_severity = ErrorSeverity.HIGH
    default_recovery = (RecoveryAction.REFRESH_TOKEN, RecoveryAction.RELOGIN)


class TransportError(_HTTPError):
    """Network failures, non-success HTTP statuses and malformed response bodies."""

    default_recovery = (RecoveryAction.RETRY,)


class ValidationError(GalleryError):
    """Bad avatar ID format, duplicate ID and similar input problems."""

    default_severity = ErrorSeverity.LOW
    default_recovery = (RecoveryAction.USER_INTERVENTION,)

    def __init__(self, message: str, field_name: Optional[str] = None,
                 error_code: ErrorCode = ErrorCode.VALIDATION_INVALID_INPUT, **kwargs):
        context = _merge_context(kwargs, field_name=field_name)
        super().__init__(message, error_code, context=context, **kwargs)


class PersistenceError(GalleryError):
    """Unreadable or corrupt cache, ID list or credential file."""

    default_severity = ErrorSeverity.LOW
    default_recovery = (RecoveryAction.REBUILD_CACHE, RecoveryAction.IGNORE)

    def __init__(self, message: str, error_code: ErrorCode, path: Optional[str] = None, **kwargs):
        context = _merge_context(kwargs, path=path)
        super().__init__(message, error_code, context=context, **kwargs)


class ConfigurationError(GalleryError):
    default_severity = ErrorSeverity.HIGH
    default_recovery = (RecoveryAction.USER_INTERVENTION,)

    def __init__(self, message: str, error_code: ErrorCode, config_key: Optional[str] = None, **kwargs):
        context = _merge_context(kwargs, config_key=config_key)
        super().__init__(message, error_code, context=context, **kwargs)


# Checked in order; the first matching entry wins
_FOREIGN_ERRORS: List[Tuple[Tuple[type, ...], Callable[[Exception, Dict[str, Any]], GalleryError]]] = [
    ((TimeoutError,), lambda e, ctx: TransportError(
        str(e) or "Request timed out", ErrorCode.NETWORK_TIMEOUT, context=ctx, cause=e)),
    ((ConnectionError,), lambda e, ctx: TransportError(
        str(e), ErrorCode.NETWORK_CONNECTION_FAILED, context=ctx, cause=e)),
    ((FileNotFoundError, PermissionError, IsADirectoryError), lambda e, ctx: PersistenceError(
        str(e), ErrorCode.PERSISTENCE_READ_FAILED, path=getattr(e, 'filename', None), context=ctx, cause=e)),
    ((ValueError,), lambda e, ctx: ValidationError(str(e), context=ctx, cause=e)),
]


def handle_exception(
    exception: Exception,
    context: Optional[Dict[str, Any]] = None,
    default_error_code: ErrorCode = ErrorCode.INTERNAL_UNEXPECTED_ERROR
) -> GalleryError:
    """
    Wrap a foreign exception in the matching GalleryError subclass.

    GalleryErrors are returned unchanged. Anything unrecognised becomes a
    plain GalleryError with ``default_error_code``.
    """
    if isinstance(exception, GalleryError):
        return exception

    for types, build in _FOREIGN_ERRORS:
        if isinstance(exception, types):
            return build(exception, context or {})

    return GalleryError(str(exception), default_error_code, context=context, cause=exception)
