"""
Unit tests for logging_config (JSON lines and request id tagging)
"""

import json
import logging
import sys
import pytest
from types import SimpleNamespace

from estimator_kpi import logging_config
from estimator_kpi.logging_config import JSONFormatter, RequestIdFilter, bind_request
from estimator_kpi.handler import lambda_handler


def make_record(msg="Estimate F-1001: blocked", exc_info=None, **extra) -> logging.LogRecord:
    record = logging.LogRecord("estimator_kpi.workflow", logging.INFO, __file__, 10, msg, None, exc_info)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture(autouse=True)
def clear_request_id():
    yield
    bind_request(None)


# ============================================================================
# JSON FORMATTER
# ============================================================================

class TestJSONFormatter:

    def test_core_fields_without_timestamp(self):
        line = json.loads(JSONFormatter().format(make_record()))

        assert line == {
            "level": "INFO",
            "logger": "estimator_kpi.workflow",
            "message": "Estimate F-1001: blocked",
        }

    def test_extras_included(self):
        record = make_record(aws_request_id="req-123", estimate_id="est-001", duration_ms=42)

        line = json.loads(JSONFormatter().format(record))

        assert line["aws_request_id"] == "req-123"
        assert line["estimate_id"] == "est-001"
        assert line["duration_ms"] == 42

    def test_unset_request_id_omitted(self):
        line = json.loads(JSONFormatter().format(make_record(aws_request_id=None)))
        assert "aws_request_id" not in line

    def test_exception_included(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = make_record(exc_info=sys.exc_info())

        line = json.loads(JSONFormatter().format(record))

        assert "RuntimeError: boom" in line["exception"]


# ============================================================================
# REQUEST ID
# ============================================================================

class TestRequestId:

    def test_filter_tags_record(self):
        request_filter = RequestIdFilter()
        request_filter.aws_request_id = "req-456"
        record = make_record()

        assert request_filter.filter(record) is True
        assert record.aws_request_id == "req-456"

    def test_bind_request_from_context(self):
        bind_request(SimpleNamespace(aws_request_id="req-789"))
        assert logging_config._request_filter.aws_request_id == "req-789"

    def test_bind_request_without_context(self):
        bind_request(SimpleNamespace(aws_request_id="req-789"))
        bind_request(None)
        assert logging_config._request_filter.aws_request_id is None

    def test_handler_binds_invocation_context(self):
        event = {"requestContext": {"http": {"method": "GET", "path": "/v1/nowhere"}}}

        lambda_handler(event, SimpleNamespace(aws_request_id="req-abc"))

        assert logging_config._request_filter.aws_request_id == "req-abc"

    def test_setup_logging_installs_filter(self):
        logging_config.setup_logging(level="INFO", json_output=True)

        handler = logging.getLogger().handlers[0]
        assert logging_config._request_filter in handler.filters
        assert isinstance(handler.formatter, JSONFormatter)
        assert logging.getLogger("botocore").level == logging.WARNING


# Run with:
# pytest tests/test_logging_config.py -v
