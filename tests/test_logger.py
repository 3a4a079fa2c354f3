"""
Log routing and formatting.
"""
import logging

import pytest

from logger import get_logger, log_connection_event, setup_logging


@pytest.fixture
def log_file(tmp_path):
    path = tmp_path / "logs" / "load.log"
    setup_logging("DEBUG", str(path), run_id="run-42")
    yield path
    setup_logging("INFO")


def test_file_log_carries_run_id(log_file):
    get_logger().info("write qps:20.0 delay:1.00ms")

    line = log_file.read_text().strip()
    assert "INFO - [run-42]" in line
    assert line.endswith("write qps:20.0 delay:1.00ms")


def test_connection_failures_log_at_error(log_file):
    log_connection_event("FAILED", {"host": "localhost", "port": 6379})
    log_connection_event("ESTABLISHED", {"host": "localhost", "port": 6379})

    lines = log_file.read_text().splitlines()
    assert "ERROR" in lines[0] and "Connection FAILED" in lines[0]
    assert "INFO" in lines[1] and "Connection ESTABLISHED" in lines[1]


def test_redis_library_logs_share_handlers(log_file):
    logging.getLogger("redis").warning("cluster slots refreshed")

    assert "cluster slots refreshed" in log_file.read_text()


def test_unknown_level_is_rejected():
    with pytest.raises(ValueError):
        setup_logging("CHATTY")
