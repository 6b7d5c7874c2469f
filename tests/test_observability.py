"""Tests for cameraunit structured logging.

Test Categories:
1. StructuredLogger: kwargs as structured data, standard options kept
2. Formatters: key=value text rendering and one-line JSON
3. LogContext: scoping, nesting, override by call-site kwargs
4. configure_logging/reset_logging lifecycle
"""

import io
import json
import logging

import pytest

from cameraunit.observability import (
    LogContext,
    StructuredLogger,
    configure_logging,
    get_logger,
    reset_logging,
)
from cameraunit.observability.logging import ROOT_LOGGER_NAME

LOGGER_NAME = "cameraunit.tests.observability"


@pytest.fixture
def json_stream():
    """Route cameraunit logging at DEBUG into a StringIO as JSON lines."""
    stream = io.StringIO()
    configure_logging(level="DEBUG", json_format=True, stream=stream, force=True)
    yield stream
    reset_logging()
    configure_logging()


def json_records(stream: io.StringIO) -> list[dict]:
    return [json.loads(line) for line in stream.getvalue().splitlines()]


class TestStructuredLogger:
    """Tests for the logger class installed by configure_logging."""

    def test_get_logger_returns_structured_logger(self, log_stream):
        assert isinstance(get_logger(LOGGER_NAME), StructuredLogger)

    def test_kwargs_rendered_as_pairs(self, log_stream):
        """Verifies keyword arguments follow the message as key=value pairs.

        Assertion Strategy:
        - Strings with spaces are quoted, None becomes null.
        - Lists render as JSON.
        """
        get_logger(LOGGER_NAME).info(
            "Frame fetched", camera="ASI533MM Pro", width=3008, roi=None, bins=[1, 2]
        )
        line = log_stream.getvalue().strip()
        assert " - INFO - Frame fetched | " in line
        assert 'camera="ASI533MM Pro"' in line
        assert "width=3008" in line
        assert "roi=null" in line
        assert "bins=[1, 2]" in line

    def test_percent_args_still_format(self, log_stream):
        get_logger(LOGGER_NAME).warning("Retry %d of %d", 2, 3)
        assert "Retry 2 of 3" in log_stream.getvalue()

    def test_exc_info_is_not_structured_data(self, log_stream):
        """Verifies exc_info keeps its logging meaning."""
        try:
            raise RuntimeError("sdk gone")
        except RuntimeError:
            get_logger(LOGGER_NAME).error("Read failed", exc_info=True)
        output = log_stream.getvalue()
        assert "Traceback" in output
        assert "exc_info=" not in output

    def test_records_attributed_to_caller(self, log_stream):
        """Verifies funcName and filename name the logging call site."""
        records: list[logging.LogRecord] = []
        handler = logging.Handler()
        handler.emit = records.append  # type: ignore[method-assign]
        logger = get_logger(LOGGER_NAME)
        logger.addHandler(handler)
        try:
            logger.info("attributed", key=1)
        finally:
            logger.removeHandler(handler)
        (record,) = records
        assert record.funcName == "test_records_attributed_to_caller"
        assert record.filename == "test_observability.py"

    def test_level_filtering(self):
        """Verifies records below the configured level are dropped."""
        stream = io.StringIO()
        configure_logging(level="WARNING", stream=stream, force=True)
        try:
            logger = get_logger(LOGGER_NAME)
            logger.debug("hidden")
            logger.info("hidden")
            logger.warning("shown")
        finally:
            reset_logging()
            configure_logging()
        assert stream.getvalue().count("hidden") == 0
        assert "shown" in stream.getvalue()


class TestJSONFormatter:
    """Tests for one-object-per-line JSON output."""

    def test_record_fields(self, json_stream):
        get_logger(LOGGER_NAME).info("Converged", exposure_s=2.5, binning=2)
        (record,) = json_records(json_stream)
        assert record["level"] == "INFO"
        assert record["logger"] == LOGGER_NAME
        assert record["message"] == "Converged"
        assert record["exposure_s"] == 2.5
        assert record["binning"] == 2
        assert record["timestamp"].endswith("+00:00")

    def test_non_serializable_values_stringified(self, json_stream):
        get_logger(LOGGER_NAME).info("Status", status=logging.INFO, obj=object())
        (record,) = json_records(json_stream)
        assert record["obj"].startswith("<object object")


class TestLogContext:
    """Tests for ambient context values."""

    def test_context_scoped_and_nested(self, json_stream):
        """Verifies nested contexts merge and unwind in order.

        Action:
        Logs inside an outer context, an inner context, and after both.

        Assertion Strategy:
        Inner records carry both keys, the outer only its own, the last
        neither.
        """
        logger = get_logger(LOGGER_NAME)
        with LogContext(camera="Bench"):
            logger.info("outer")
            with LogContext(sequence="flats"):
                logger.info("inner")
        logger.info("after")

        outer, inner, after = json_records(json_stream)
        assert outer["camera"] == "Bench"
        assert "sequence" not in outer
        assert (inner["camera"], inner["sequence"]) == ("Bench", "flats")
        assert "camera" not in after

    def test_call_site_overrides_context(self, json_stream):
        with LogContext(camera="Bench"):
            get_logger(LOGGER_NAME).info("override", camera="Other")
        (record,) = json_records(json_stream)
        assert record["camera"] == "Other"

    def test_repr(self):
        assert repr(LogContext(camera_id=1)) == "LogContext({'camera_id': 1})"


class TestConfiguration:
    """Tests for configure_logging and reset_logging."""

    def test_single_handler_without_propagation(self, log_stream):
        """Verifies one stream handler is installed on a non-propagating root.

        Assertion Strategy:
        pytest's own capture handlers may also be attached, so only
        StreamHandlers writing to the configured stream are counted.
        """
        root = logging.getLogger(ROOT_LOGGER_NAME)
        ours = [
            handler
            for handler in root.handlers
            if isinstance(handler, logging.StreamHandler)
            and getattr(handler, "stream", None) is log_stream
        ]
        assert len(ours) == 1
        assert root.propagate is False

    def test_configure_is_idempotent_without_force(self, log_stream):
        """Verifies a second configure call keeps the existing handler."""
        other = io.StringIO()
        configure_logging(stream=other)
        get_logger(LOGGER_NAME).info("still here")
        assert "still here" in log_stream.getvalue()
        assert other.getvalue() == ""

    def test_reset_removes_installed_handler(self, log_stream):
        """Verifies reset_logging() detaches the handler and stops output."""
        reset_logging()
        root = logging.getLogger(ROOT_LOGGER_NAME)
        assert all(getattr(h, "stream", None) is not log_stream for h in root.handlers)
        root.warning("after reset")
        assert log_stream.getvalue() == ""

    def test_reset_keeps_foreign_handlers(self, log_stream):
        """Verifies handlers added by other code survive reset_logging()."""
        root = logging.getLogger(ROOT_LOGGER_NAME)
        foreign = logging.NullHandler()
        root.addHandler(foreign)
        try:
            reset_logging()
            assert foreign in root.handlers
        finally:
            root.removeHandler(foreign)

    def test_structured_suffix_can_be_disabled(self):
        stream = io.StringIO()
        configure_logging(stream=stream, include_structured=False, force=True)
        try:
            get_logger(LOGGER_NAME).info("plain", key="value")
        finally:
            reset_logging()
            configure_logging()
        assert stream.getvalue().rstrip().endswith("plain")
