import json
import logging

import pytest

from reviewdesk.core.config import ReviewDeskConfig
from reviewdesk.services.errors import ErrorCode, NotFoundError, ValidationError, to_http_exception
from reviewdesk.services.logging import JSONFormatter, KeyValueFormatter


def test_config_reads_environment(monkeypatch):
    monkeypatch.setenv("TASK_API_URL", "http://tasks.internal")
    monkeypatch.setenv("COMMENT_POLL_INTERVAL_SECONDS", "2.5")
    monkeypatch.setenv("VIEWER_TIMEZONE", "UTC")

    config = ReviewDeskConfig.from_env()

    assert config.task_api_url == "http://tasks.internal"
    assert config.comment_poll_interval_seconds == 2.5
    assert config.viewer_timezone == "UTC"
    assert config.read_receipt_dwell_seconds == 1.0


@pytest.mark.parametrize("field", [
    "comment_poll_interval_seconds",
    "api_cache_ttl_seconds",
    "http_timeout_seconds",
])
def test_config_rejects_non_positive_intervals(field):
    with pytest.raises(ValueError):
        ReviewDeskConfig(**{field: 0})


def test_errors_map_to_http_statuses():
    missing = to_http_exception(NotFoundError("invoice", "i1"))
    remarks = to_http_exception(ValidationError("Remarks required", code=ErrorCode.MISSING_REMARKS))

    assert missing.status_code == 404
    assert missing.detail["context"] == {"resource": "invoice", "id": "i1"}
    assert remarks.status_code == 400
    assert remarks.detail["error"] == "MISSING_REMARKS"


def test_structured_fields_reach_both_formats():
    record = logging.LogRecord("reviewdesk.test", logging.WARNING, "", 0, "poll failed", (), None)
    record.extra_fields = {"type": "error", "error_type": "comment_poll_failed", "parent_id": "n1"}

    line = KeyValueFormatter().format(record)
    payload = json.loads(JSONFormatter().format(record))

    assert line.endswith("poll failed | error_type=comment_poll_failed parent_id=n1")
    assert payload["error_type"] == "comment_poll_failed"
    assert payload["level"] == "WARNING"
