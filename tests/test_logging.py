import json
from unittest.mock import MagicMock, patch

import pytest
from loguru import logger

from hli.logging import format_bytes, format_duration_ms, log_event, truncate


@pytest.fixture(autouse=True)
def setup_test_logger():
    # Each test starts without sinks
    logger.remove()
    yield
    logger.remove()


def test_truncate_short_text():
    text = "hello world"
    assert truncate(text) == text


def test_truncate_long_text_by_len():
    text = "a" * 5000
    truncated = truncate(text, max_len=1000)
    assert len(truncated) < 1100
    assert truncated.startswith("... (truncated)")


def test_truncate_long_text_by_lines():
    text = "\n".join([f"line {i}" for i in range(30)])
    truncated = truncate(text, max_lines=10)
    assert len(truncated.splitlines()) == 11  # 10 lines + marker
    assert truncated.startswith("... (truncated)")


def test_truncate_empty_string():
    assert truncate("") == ""


@patch("hli.logging.logger")
def test_log_event_strips_none_values(mock_logger):
    mock_bound_logger = MagicMock()
    mock_logger.bind.return_value = mock_bound_logger

    log_event("extract", file="/m/a.flac", error=None, status="skipped")

    mock_logger.bind.assert_called_once_with(action="extract", file="/m/a.flac", status="skipped")
    mock_bound_logger.log.assert_called_once_with("INFO", "extract")


@patch("hli.logging.logger")
def test_log_event_uses_msg_and_level_from_fields(mock_logger):
    mock_bound_logger = MagicMock()
    mock_logger.bind.return_value = mock_bound_logger

    log_event("scan_end", msg="scan completed", level="warning", files=12)

    mock_logger.bind.assert_called_once_with(action="scan_end", files=12)
    mock_bound_logger.log.assert_called_once_with("WARNING", "scan completed")


def test_json_log_includes_run_id(tmp_path):
    from hli.logging import bind_run, get_logger, setup_json

    log_file = tmp_path / "scan.log"
    setup_json(str(log_file))
    run_id = bind_run()
    get_logger().info("test message")
    logger.complete()

    with open(log_file) as f:
        record = json.loads(f.readline())["record"]
    assert record["extra"]["run_id"] == run_id


@pytest.mark.parametrize(
    "num, expected",
    [(12, "12 bytes"), (1_500, "1.5 KB"), (340_000_000, "340.0 MB"), (1_234_000_000, "1.2 GB")],
)
def test_format_bytes(num, expected):
    assert format_bytes(num) == expected


@pytest.mark.parametrize(
    "ms, expected",
    [(0, "0:00"), (59_999, "0:59"), (61_000, "1:01"), (3_725_000, "1:02:05"), (-5, "0:00")],
)
def test_format_duration_ms(ms, expected):
    assert format_duration_ms(ms) == expected
