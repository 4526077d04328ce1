#!/usr/bin/env python3
"""
Tests for logging configuration, audit and operation logging.
"""

import json
import logging

import pytest

from gallery_shared.exceptions import TransportError, ErrorCode
from gallery_shared.logging_config import (
    AuditLogger, OperationLogger, StructuredFormatter, DetailedFormatter,
    LogLevel, LogFormat, setup_logging, log_structured_error, record_error
)


def make_record(message="hello", **extra):
    record = logging.LogRecord('gallery_client.test', logging.INFO, __file__, 10, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture
def restore_logging():
    """Put back the root and audit handlers after setup_logging replaced them."""
    root = logging.getLogger()
    audit = logging.getLogger('audit')
    saved = (root.handlers[:], root.level, audit.handlers[:], audit.propagate)
    yield
    for logger, handlers in ((root, saved[0]), (audit, saved[2])):
        for handler in logger.handlers[:]:
            logger.removeHandler(handler)
            handler.close()
        for handler in handlers:
            logger.addHandler(handler)
    root.setLevel(saved[1])
    audit.propagate = saved[3]


class TestFormatters:
    """Test the JSON and detailed formatters."""

    def test_structured_formatter_outputs_json(self):
        entry = json.loads(StructuredFormatter().format(make_record("hello")))

        assert entry['message'] == "hello"
        assert entry['level'] == 'INFO'
        assert entry['logger'] == 'gallery_client.test'

    def test_structured_formatter_includes_error_and_audit(self):
        error = TransportError("Request failed (404)", ErrorCode.NETWORK_HTTP_STATUS, status=404)
        record = make_record("failed", error_info=error, audit_info={'event_type': 'authentication'})

        entry = json.loads(StructuredFormatter().format(record))

        assert entry['error']['code'] == 'NETWORK_2003'
        assert entry['error']['context']['status'] == 404
        assert entry['audit'] == {'event_type': 'authentication'}

    def test_structured_formatter_extra_fields(self):
        entry = json.loads(StructuredFormatter().format(make_record("x", resource_id='avtr_1')))
        assert entry['extra']['resource_id'] == 'avtr_1'

        plain = json.loads(StructuredFormatter(include_extra_fields=False).format(make_record("x", resource_id='a')))
        assert 'extra' not in plain

    def test_detailed_formatter_appends_error_details(self):
        error = TransportError("timeout", ErrorCode.NETWORK_TIMEOUT)
        text = DetailedFormatter().format(make_record("failed", error_info=error))

        assert "failed" in text
        assert "Error Code: NETWORK_2002" in text
        assert "Recovery Actions: retry" in text


class TestAuditLogger:
    """Test audit events."""

    def test_authentication_event(self, caplog):
        with caplog.at_level(logging.INFO, logger='audit'):
            AuditLogger().log_authentication('alice', success=False, failure_reason='bad password')

        record = caplog.records[-1]
        assert record.audit_info['event_type'] == 'authentication'
        assert record.audit_info['username'] == 'alice'
        assert record.audit_info['result'] == 'failure'
        assert record.audit_info['context']['failure_reason'] == 'bad password'
        assert "failed for alice" in record.getMessage()

    def test_avatar_change_event(self, caplog):
        with caplog.at_level(logging.INFO, logger='audit'):
            AuditLogger().log_avatar_change('remove', 'avtr_1')

        info = caplog.records[-1].audit_info
        assert info['event_type'] == 'avatar_list_change'
        assert info['resource_id'] == 'avtr_1'
        assert info['context'] == {'action': 'remove'}

    def test_token_refresh_event(self, caplog):
        with caplog.at_level(logging.INFO, logger='audit'):
            AuditLogger().log_token_refresh('alice', True)

        info = caplog.records[-1].audit_info
        assert info['event_type'] == 'token_refresh'
        assert info['result'] == 'success'


class TestOperationLogger:
    """Test operation tracking."""

    def test_start_and_complete(self, caplog):
        operations = OperationLogger()

        with caplog.at_level(logging.DEBUG, logger='operations'):
            operations.log_operation_start('refresh_all', 'op-1', {'total': 3})
            operations.log_operation_progress('op-1', 'fetching', 33, '1/3')
            operations.log_operation_complete('op-1', False, 1.5, 'Refresh complete - 2 OK, 1 failed.')

        start, progress, complete = caplog.records[-3:]
        assert start.operation_context['context'] == {'total': 3}
        assert progress.levelno == logging.DEBUG
        assert "(33%) - 1/3" in progress.getMessage()
        assert complete.levelno == logging.WARNING
        assert complete.operation_context['success'] is False
        assert "2 OK, 1 failed" in complete.getMessage()


class TestSetupLogging:
    """Test setup_logging."""

    def test_file_logging_with_json_format(self, tmp_path, restore_logging):
        log_file = tmp_path / 'logs' / 'gallery.log'
        audit_file = tmp_path / 'logs' / 'audit.log'

        loggers = setup_logging(
            log_level=LogLevel.DEBUG,
            log_format=LogFormat.JSON,
            log_file=str(log_file),
            enable_console=False,
            audit_file=str(audit_file)
        )
        logging.getLogger('gallery_client.test').info("written")
        AuditLogger().log_avatar_change('add', 'avtr_1')
        for handler in loggers['root'].handlers + loggers['audit'].handlers:
            handler.flush()

        assert set(loggers) == {'root', 'auth', 'api', 'repository', 'operations', 'audit'}
        assert json.loads(log_file.read_text().splitlines()[0])['message'] == "written"
        assert json.loads(audit_file.read_text().splitlines()[0])['audit']['resource_id'] == 'avtr_1'


def test_log_structured_error(caplog):
    logger = logging.getLogger('gallery_client.test')
    error = TransportError("Request timed out", ErrorCode.NETWORK_TIMEOUT)

    with caplog.at_level(logging.WARNING, logger='gallery_client.test'):
        log_structured_error(logger, error, resource_id='avtr_1', level=logging.WARNING)

    record = caplog.records[-1]
    assert record.getMessage() == "Request timed out"
    assert record.error_info is error
    assert record.resource_id == 'avtr_1'


def test_record_error_converts_logs_and_audits(caplog):
    logger = logging.getLogger('gallery_client.test')

    with caplog.at_level(logging.INFO):
        structured = record_error(
            logger, TimeoutError(), context={'avatar_id': 'avtr_1'},
            resource_id='avtr_1', audit=AuditLogger()
        )

    assert structured.error_code == ErrorCode.NETWORK_TIMEOUT
    logged = next(r for r in caplog.records if hasattr(r, 'error_info'))
    assert logged.error_info is structured
    assert logged.levelno == logging.ERROR
    audited = next(r for r in caplog.records if hasattr(r, 'audit_info'))
    assert audited.audit_info['event_type'] == 'error_event'
    assert audited.audit_info['context']['code'] == 'NETWORK_2002'
