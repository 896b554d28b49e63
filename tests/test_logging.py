import json
import logging

from app.logging import JsonFormatter, RequestIdFilter
from app.observability import request_id_var


def _record(**extra):
    record = logging.makeLogRecord({"name": "app.test", "levelname": "INFO", "msg": "hello %s", "args": ("world",)})
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_request_id_filter_uses_context():
    token = request_id_var.set("req-123")
    try:
        record = _record()
        RequestIdFilter().filter(record)
    finally:
        request_id_var.reset(token)

    assert record.request_id == "req-123"


def test_request_id_filter_defaults_outside_request():
    record = _record()

    RequestIdFilter().filter(record)

    assert record.request_id == "-"


def test_json_formatter_includes_extras():
    record = _record(request_id="req-1", invoice_id="in_1")

    payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == "hello world"
    assert payload["level"] == "INFO"
    assert payload["request_id"] == "req-1"
    assert payload["invoice_id"] == "in_1"
