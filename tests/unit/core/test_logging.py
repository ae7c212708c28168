"""
Tests for loguru integration
"""
import logging

import pytest
from loguru import logger

from srs.core.logging import InterceptHandler, log_function_call


@pytest.fixture
def captured():
    messages = []
    sink_id = logger.add(lambda message: messages.append(message.record), level="DEBUG")
    yield messages
    logger.remove(sink_id)


class TestInterceptHandler:
    """Standard logging records are forwarded to loguru"""

    def test_forwards_message_and_level(self, captured):
        std_logger = logging.getLogger("srs.tests.intercept")
        std_logger.handlers = [InterceptHandler()]
        std_logger.propagate = False
        std_logger.setLevel(logging.DEBUG)

        std_logger.warning("card %s lapsed", "c1")

        record = captured[-1]
        assert record["message"] == "card c1 lapsed"
        assert record["level"].name == "WARNING"

    def test_custom_level_number(self, captured):
        std_logger = logging.getLogger("srs.tests.custom_level")
        std_logger.handlers = [InterceptHandler()]
        std_logger.propagate = False
        std_logger.setLevel(logging.DEBUG)

        std_logger.log(25, "between info and warning")

        assert captured[-1]["message"] == "between info and warning"


class TestLogFunctionCall:
    """Tests for the call-logging decorator"""

    def test_returns_result(self, captured):
        @log_function_call
        def add(a, b):
            return a + b

        assert add(2, 3) == 5
        assert any("add completed" in r["message"] for r in captured)

    def test_reraises(self, captured):
        @log_function_call
        def broken():
            raise ValueError("boom")

        with pytest.raises(ValueError):
            broken()
        assert any(r["level"].name == "ERROR" for r in captured)
