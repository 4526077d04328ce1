"""
Logging setup for the VRChat Avatar Gallery.

Three kinds of records flow through here: ordinary module logs, audit events
(login, session refresh, changes to the tracked avatar list) and operation
progress for bulk refreshes. Structured errors travel on the ``error_info``
record attribute and are expanded by both custom formatters.
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

from gallery_shared.exceptions import GalleryError, handle_exception


class LogLevel(Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormat(Enum):
    STANDARD = "standard"
    JSON = "json"
    DETAILED = "detailed"


class AuditEventType(Enum):
    """Categories written to the audit log."""
    AUTHENTICATION = "authentication"
    TOKEN_REFRESH = "token_refresh"
    AVATAR_LIST_CHANGE = "avatar_list_change"
    ERROR_EVENT = "error_event"


STANDARD_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DETAILED_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)-20s | %(funcName)-15s:%(lineno)-4d | %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

AUDIT_LOGGER = 'audit'
OPERATIONS_LOGGER = 'operations'

# Attributes every LogRecord carries, plus the ones we render explicitly
_BUILTIN_ATTRS = frozenset(vars(logging.LogRecord('', 0, '', 0, '', None, None))) | {
    'message', 'asctime', 'error_info', 'audit_info', 'operation_context'
}


def _error_details(error: GalleryError) -> Dict[str, Any]:
    return {
        'code': error.error_code.value,
        'severity': error.severity.value,
        'context': error.context,
        'recovery_actions': [action.value for action in error.recovery_actions],
        'user_message': error.user_message,
    }


def _attached_error(record: logging.LogRecord) -> Optional[GalleryError]:
    error = getattr(record, 'error_info', None)
    return error if isinstance(error, GalleryError) else None


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def __init__(self, include_extra_fields: bool = True):
        super().__init__()
        self.include_extra_fields = include_extra_fields

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
            'process': os.getpid(),
        }

        if record.exc_info:
            exc_type, exc_value = record.exc_info[0], record.exc_info[1]
            entry['exception'] = {
                'type': exc_type.__name__ if exc_type else None,
                'message': str(exc_value) if exc_value else None,
                'traceback': self.formatException(record.exc_info),
            }

        error = _attached_error(record)
        if error is not None:
            entry['error'] = _error_details(error)

        for attr, key in (('audit_info', 'audit'), ('operation_context', 'operation')):
            if hasattr(record, attr):
                entry[key] = getattr(record, attr)

        if self.include_extra_fields:
            extra = {k: v for k, v in vars(record).items() if k not in _BUILTIN_ATTRS}
            if extra:
                entry['extra'] = extra

        return json.dumps(entry, default=str, ensure_ascii=False)


class DetailedFormatter(logging.Formatter):
    """
    Human-readable single line, followed by indented error, audit and
    operation details when the record carries them.
    """

    def __init__(self):
        super().__init__(fmt=DETAILED_FORMAT, datefmt=DATE_FORMAT)

    @staticmethod
    def _dump(value: Any) -> str:
        return json.dumps(value, indent=2, default=str)

    def format(self, record: logging.LogRecord) -> str:
        lines = [super().format(record)]

        error = _attached_error(record)
        if error is not None:
            details = _error_details(error)
            lines.append(f"  Error Code: {details['code']}")
            lines.append(f"  Severity: {details['severity']}")
            if details['context']:
                lines.append(f"  Context: {self._dump(details['context'])}")
            if details['recovery_actions']:
                lines.append(f"  Recovery Actions: {', '.join(details['recovery_actions'])}")

        if hasattr(record, 'audit_info'):
            lines.append(f"  Audit: {self._dump(record.audit_info)}")
        if hasattr(record, 'operation_context'):
            lines.append(f"  Operation: {self._dump(record.operation_context)}")

        return "\n".join(lines)


def _outcome(success: bool) -> str:
    return "success" if success else "failure"


class AuditLogger:
    """
    Writes audit events to the ``audit`` logger.

    Callers must never pass passwords or tokens in any field.
    """

    def __init__(self, logger_name: str = AUDIT_LOGGER):
        self.logger = logging.getLogger(logger_name)

    def log_event(
        self,
        event_type: AuditEventType,
        message: str,
        username: Optional[str] = None,
        resource_id: Optional[str] = None,
        result: Optional[str] = None,
        additional_context: Optional[Dict[str, Any]] = None
    ):
        """
        Emit one audit record.

        Args:
            event_type: Category of the event
            message: Human-readable summary
            username: Account the event concerns
            resource_id: Avatar ID or other affected resource
            result: "success", "failure", "error" and so on
            additional_context: Free-form details
        """
        audit_info: Dict[str, Any] = {
            'event_type': event_type.value,
            'timestamp': datetime.now().isoformat(),
            'context': additional_context or {},
        }
        for key, value in (('username', username), ('resource_id', resource_id), ('result', result)):
            if value is not None:
                audit_info[key] = value

        self.logger.info(message, extra={'audit_info': audit_info})

    def log_authentication(
        self,
        username: Optional[str],
        success: bool = True,
        failure_reason: Optional[str] = None,
        method: str = "password"
    ):
        """Record a password login, 2FA submission or saved-token probe."""
        context: Dict[str, Any] = {'method': method}
        if failure_reason:
            context['failure_reason'] = failure_reason

        verb = "succeeded" if success else "failed"
        self.log_event(
            AuditEventType.AUTHENTICATION,
            f"Authentication ({method}) {verb} for {username or 'unknown user'}",
            username=username,
            result=_outcome(success),
            additional_context=context
        )

    def log_token_refresh(self, username: Optional[str], success: bool, failure_reason: Optional[str] = None):
        verb = "succeeded" if success else "failed"
        self.log_event(
            AuditEventType.TOKEN_REFRESH,
            f"Silent re-login {verb} for {username or 'unknown user'}",
            username=username,
            result=_outcome(success),
            additional_context={'failure_reason': failure_reason} if failure_reason else None
        )

    def log_avatar_change(self, action: str, avatar_id: str, result: str = "success"):
        self.log_event(
            AuditEventType.AVATAR_LIST_CHANGE,
            f"Tracked list {action} ({result}): {avatar_id}",
            resource_id=avatar_id,
            result=result,
            additional_context={'action': action}
        )

    def log_error(self, error: GalleryError, resource_id: Optional[str] = None):
        details = _error_details(error)
        details.pop('user_message')
        self.log_event(
            AuditEventType.ERROR_EVENT,
            f"Error: {error.message}",
            resource_id=resource_id,
            result="error",
            additional_context=details
        )


class OperationLogger:
    """Progress records for multi-step work such as a full refresh."""

    def __init__(self, logger_name: str = OPERATIONS_LOGGER):
        self.logger = logging.getLogger(logger_name)

    def _emit(self, level: int, message: str, operation_id: str, **fields):
        fields['operation_id'] = operation_id
        self.logger.log(level, message, extra={'operation_context': fields})

    def log_operation_start(self, operation_type: str, operation_id: str, context: Optional[Dict[str, Any]] = None):
        self._emit(
            logging.INFO,
            f"Started {operation_type} [{operation_id}]",
            operation_id,
            operation_type=operation_type,
            stage='started',
            start_time=datetime.now().isoformat(),
            context=context or {}
        )

    def log_operation_progress(
        self,
        operation_id: str,
        stage: str,
        progress_percentage: Optional[int] = None,
        current_action: Optional[str] = None
    ):
        message = f"[{operation_id}] {stage}"
        if progress_percentage is not None:
            message += f" ({progress_percentage}%)"
        if current_action:
            message += f" - {current_action}"

        self._emit(
            logging.DEBUG,
            message,
            operation_id,
            stage=stage,
            progress_percentage=progress_percentage,
            current_action=current_action,
            timestamp=datetime.now().isoformat()
        )

    def log_operation_complete(
        self,
        operation_id: str,
        success: bool,
        duration_seconds: Optional[float] = None,
        result_summary: Optional[str] = None
    ):
        """Failed operations are logged at WARNING so they surface at default levels."""
        message = f"[{operation_id}] {'finished' if success else 'finished with failures'}"
        if duration_seconds:
            message += f" in {duration_seconds:.2f}s"
        if result_summary:
            message += f": {result_summary}"

        self._emit(
            logging.INFO if success else logging.WARNING,
            message,
            operation_id,
            stage='completed',
            success=success,
            duration_seconds=duration_seconds,
            result_summary=result_summary,
            end_time=datetime.now().isoformat()
        )


def _rotating_handler(path: str, max_bytes: int, backups: int) -> logging.Handler:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    return logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backups, encoding='utf-8'
    )


def _reset_handlers(logger: logging.Logger):
    for handler in list(logger.handlers):
        logger.removeHandler(handler)


def _formatter_for(log_format: LogFormat) -> logging.Formatter:
    if log_format == LogFormat.JSON:
        return StructuredFormatter()
    if log_format == LogFormat.DETAILED:
        return DetailedFormatter()
    return logging.Formatter(fmt=STANDARD_FORMAT, datefmt=DATE_FORMAT)


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
    Replace the root handlers and return the application's named loggers.

    When ``audit_file`` is given, audit events go only to that file, always
    as JSON, and stop propagating to the root handlers.
    """
    root = logging.getLogger()
    _reset_handlers(root)
    root.setLevel(getattr(logging, log_level.value))

    formatter = _formatter_for(log_format)
    if enable_console:
        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(formatter)
        root.addHandler(console)
    if log_file:
        file_handler = _rotating_handler(log_file, max_file_size, backup_count)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    loggers = {
        'root': root,
        'auth': logging.getLogger('gallery_client.auth'),
        'api': logging.getLogger('gallery_client.api_client'),
        'repository': logging.getLogger('gallery_client.avatar_repository'),
        'operations': logging.getLogger(OPERATIONS_LOGGER),
    }

    if enable_audit:
        audit = logging.getLogger(AUDIT_LOGGER)
        audit.setLevel(logging.INFO)
        _reset_handlers(audit)
        if audit_file:
            audit_handler = _rotating_handler(audit_file, max_file_size, backup_count)
            audit_handler.setFormatter(StructuredFormatter())
            audit.addHandler(audit_handler)
            audit.propagate = False
        loggers['audit'] = audit

    return loggers


def log_structured_error(
    logger: logging.Logger,
    error: GalleryError,
    resource_id: Optional[str] = None,
    level: int = logging.ERROR
):
    """Log ``error.message`` with the error attached for the formatters."""
    logger.log(level, error.message, extra={'error_info': error, 'resource_id': resource_id})


def record_error(
    logger: logging.Logger,
    error: Exception,
    context: Optional[Dict[str, Any]] = None,
    resource_id: Optional[str] = None,
    level: int = logging.ERROR,
    audit: Optional[AuditLogger] = None
) -> GalleryError:
    """
    Boundary handler for errors that are reported rather than raised.

    Converts ``error`` to a GalleryError, logs it with its code and, when an
    AuditLogger is given, writes an error audit event too.

    Returns:
        The structured error
    """
    structured = handle_exception(error, context)
    log_structured_error(logger, structured, resource_id=resource_id, level=level)
    if audit is not None:
        audit.log_error(structured, resource_id=resource_id)
    return structured
