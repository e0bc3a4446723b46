"""Tests for structured logging."""

import json
import logging
import sys

from furvino_ingest.core.config import Settings
from furvino_ingest.core.logging import CloudLoggingFormatter, setup_logging, upload_id_context


def make_record(msg="Stored upload part", exc_info=None, **extra):
    record = logging.LogRecord("furvino_ingest.test", logging.INFO, __file__, 10, msg, None, exc_info)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_formatter_emits_single_line_json():
    formatter = CloudLoggingFormatter()

    output = formatter.format(make_record(part_number=3, size_bytes=1024))

    assert "\n" not in output
    entry = json.loads(output)
    assert entry["severity"] == "INFO"
    assert entry["message"] == "Stored upload part"
    assert entry["logger"] == "furvino_ingest.test"
    assert entry["part_number"] == 3
    assert entry["size_bytes"] == 1024


def test_formatter_includes_upload_id_from_context():
    """Test that the upload id of the current request is attached."""
    formatter = CloudLoggingFormatter()
    token = upload_id_context.set("up-42")
    try:
        entry = json.loads(formatter.format(make_record()))
    finally:
        upload_id_context.reset(token)

    assert entry["upload_id"] == "up-42"


def test_formatter_embeds_exceptions():
    formatter = CloudLoggingFormatter()
    try:
        raise ValueError("bad part")
    except ValueError:
        record = make_record("Failed to store part", exc_info=sys.exc_info())

    entry = json.loads(formatter.format(record))

    assert entry["exception_type"] == "ValueError"
    assert entry["exception_message"] == "bad part"
    assert "Traceback" in entry["exception"]


def test_setup_logging_uses_given_settings():
    """Test that a non-local environment gets JSON output at its LOG_LEVEL."""
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        setup_logging(Settings(_env_file=None, ENV="prod", LOG_LEVEL="WARNING"))

        assert root.level == logging.WARNING
        assert isinstance(root.handlers[0].formatter, CloudLoggingFormatter)
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
