import io

import pytest
import structlog

from personalization.logging_config import _is_json_mode, configure_logging


class Terminal(io.StringIO):
    def isatty(self):
        return True


@pytest.fixture
def restore_structlog():
    yield
    structlog.reset_defaults()


@pytest.mark.parametrize(
    "log_format,stream,expected",
    [
        ("", io.StringIO(), True),
        ("", Terminal(), False),
        ("json", Terminal(), True),
        ("CONSOLE", io.StringIO(), False),
        ("yaml", Terminal(), False),
    ],
)
def test_log_format_detection(monkeypatch, log_format, stream, expected):
    monkeypatch.setenv("LOG_FORMAT", log_format)
    assert _is_json_mode(stream) is expected


@pytest.mark.parametrize(
    "json_logs,renderer",
    [(True, structlog.processors.JSONRenderer), (False, structlog.dev.ConsoleRenderer)],
)
def test_explicit_format_overrides_detection(monkeypatch, restore_structlog, json_logs, renderer):
    monkeypatch.setenv("LOG_FORMAT", "console" if json_logs else "json")
    configure_logging("debug", json_logs=json_logs)
    assert isinstance(structlog.get_config()["processors"][-1], renderer)
