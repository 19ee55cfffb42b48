import json
import logging
import sys

from labtracker_dose.logging import ContextTextFormatter, JSONFormatter, setup_logging


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="labtracker_dose.enrichment",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="Applied remote dose priors for %d of %d candidate markers",
        args=(1, 2),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_nests_dose_extras_under_context():
    line = JSONFormatter().format(_record(dose_fingerprint="abc123", dose_unit_system="eu", unrelated="skip"))

    entry = json.loads(line)
    assert "\n" not in line
    assert entry["level"] == "INFO"
    assert entry["logger"] == "labtracker_dose.enrichment"
    assert entry["message"] == "Applied remote dose priors for 1 of 2 candidate markers"
    assert entry["context"] == {"fingerprint": "abc123", "unit_system": "eu"}
    assert "unrelated" not in line


def test_json_formatter_omits_empty_context():
    entry = json.loads(JSONFormatter().format(_record()))
    assert "context" not in entry


def test_json_formatter_includes_exception():
    try:
        raise ValueError("boom")
    except ValueError:
        record = _record()
        record.exc_info = sys.exc_info()

    entry = json.loads(JSONFormatter().format(record))
    assert "ValueError: boom" in entry["exception"]


def test_text_formatter_appends_sorted_context():
    line = ContextTextFormatter().format(_record(dose_unit_system="us", dose_fingerprint="f00"))
    assert line.endswith(
        "labtracker_dose.enrichment: Applied remote dose priors for 1 of 2 candidate markers "
        "[fingerprint=f00 unit_system=us]"
    )


def test_setup_logging_replaces_root_handlers_and_quiets_httpx():
    root = logging.getLogger()
    original = root.handlers[:]
    original_level = root.level
    try:
        setup_logging("json")
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JSONFormatter)
        assert logging.getLogger("httpx").level == logging.WARNING

        setup_logging("text", level=logging.DEBUG)
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, ContextTextFormatter)
        assert root.level == logging.DEBUG
    finally:
        root.handlers[:] = original
        root.setLevel(original_level)
