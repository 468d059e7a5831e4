import io
import json

import pytest
import structlog

from deckhand.config import LoggingConfig
from deckhand.logging import configure_logging, get_logger


@pytest.fixture
def restore_structlog():
    yield
    structlog.reset_defaults()


def test_json_format_renders_key_value_events(restore_structlog):
    stream = io.StringIO()
    configure_logging(LoggingConfig(level="DEBUG", format="json"), stream=stream)

    get_logger("deckhand.test").info("Action succeeded", action="Echo.run", call_id="c1")

    record = json.loads(stream.getvalue().strip())
    assert record["event"] == "Action succeeded"
    assert record["action"] == "Echo.run"
    assert record["level"] == "info"
    assert "timestamp" in record


def test_level_filters_lower_events(restore_structlog):
    stream = io.StringIO()
    configure_logging(LoggingConfig(level="WARNING", format="json"), stream=stream)

    logger = get_logger("deckhand.test")
    logger.info("hidden")
    logger.warning("shown")

    lines = [json.loads(line) for line in stream.getvalue().splitlines() if line]
    assert [line["event"] for line in lines] == ["shown"]
