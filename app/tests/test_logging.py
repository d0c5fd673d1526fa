import json
import logging
import sys

from app.core.logging import SERVICE_NAME, JsonFormatter, configure_logging


def _record(**extra):
    record = logging.LogRecord(
        name="app.services.outbox_processor",
        level=logging.WARNING,
        pathname=__file__,
        lineno=1,
        msg="Outbox batch publish failed",
        args=(),
        exc_info=None,
    )
    for k, v in extra.items():
        setattr(record, k, v)
    return record


def test_context_keys_are_top_level_and_rest_goes_to_extra():
    line = JsonFormatter().format(_record(organization_id="org-1", charged_event_ids=[101]))
    payload = json.loads(line)

    assert payload["service"] == SERVICE_NAME
    assert payload["level"] == "WARNING"
    assert payload["logger"] == "app.services.outbox_processor"
    assert payload["message"] == "Outbox batch publish failed"
    assert payload["organization_id"] == "org-1"
    assert payload["extra"] == {"charged_event_ids": [101]}


def test_plain_record_has_no_extra():
    payload = json.loads(JsonFormatter().format(_record()))
    assert "extra" not in payload
    assert "organization_id" not in payload


def test_exception_text_is_included():
    try:
        raise RuntimeError("broker unavailable")
    except RuntimeError:
        record = _record()
        record.exc_info = sys.exc_info()

    payload = json.loads(JsonFormatter().format(record))
    assert "RuntimeError: broker unavailable" in payload["exc_info"]


def test_configure_logging_quiets_client_libraries():
    root = logging.getLogger()
    previous = root.level
    try:
        configure_logging("debug")
        assert root.level == logging.DEBUG
        assert logging.getLogger("redis").level == logging.WARNING
    finally:
        root.setLevel(previous)
