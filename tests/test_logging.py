"""
Tests for the structured JSON log format.
"""

import json
import logging

from smsrelay.logging_utils import CustomJsonFormatter, request_id_ctx


def format_record(message="Message saved", **extra):
    formatter = CustomJsonFormatter("%(ts)s %(level)s %(name)s %(message)s")
    record = logging.LogRecord(
        name="smsrelay.storage",
        level=logging.ERROR,
        pathname=__file__,
        lineno=1,
        msg=message,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return json.loads(formatter.format(record))


class TestJsonFormatter:
    def test_timestamp_written(self):
        line = format_record()

        assert isinstance(line["ts"], str)
        assert line["ts"].endswith("Z")
        assert "T" in line["ts"]

    def test_level_service_and_name(self):
        line = format_record()

        assert line["level"] == "ERROR"
        assert line["service"] == "smsrelay"
        assert line["name"] == "smsrelay.storage"
        assert line["message"] == "Message saved"

    def test_request_id_from_context(self):
        token = request_id_ctx.set("req-42")
        try:
            line = format_record()
        finally:
            request_id_ctx.reset(token)

        assert line["request_id"] == "req-42"

    def test_no_request_id_outside_requests(self):
        assert "request_id" not in format_record()

    def test_extra_fields_kept(self):
        line = format_record(message_id="m-1", batch_id="b-1")

        assert line["message_id"] == "m-1"
        assert line["batch_id"] == "b-1"
