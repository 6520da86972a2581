"""Tests for core/logging.py - Logging configuration."""
import logging


class TestLogging:
    """Test the logging module."""

    def test_get_logger_returns_logger(self):
        """get_logger should return a Logger instance."""
        from app.core.logging import get_logger

        logger = get_logger("test_module")
        assert isinstance(logger, logging.Logger)

    def test_get_logger_uses_module_name(self):
        """Logger should use the provided module name."""
        from app.core.logging import get_logger

        logger = get_logger("app.services.orchestrator")
        assert logger.name == "app.services.orchestrator"

    def test_logger_can_log_messages(self):
        """Logger should be able to log messages without error."""
        from app.core.logging import get_logger

        logger = get_logger("test_logging")

        # These should not raise exceptions
        logger.debug("Debug message")
        logger.info("Info message")
        logger.warning("Warning message")
        logger.error("Error message")

    def test_setup_logging_sets_level(self):
        """setup_logging should configure the root log level."""
        from app.core.logging import setup_logging

        setup_logging(level="WARNING")
        assert logging.getLogger().level == logging.WARNING

        setup_logging(level="INFO")
        assert logging.getLogger().level == logging.INFO

    def test_setup_logging_quiets_third_party_loggers(self):
        from app.core.logging import setup_logging

        setup_logging(level="DEBUG")

        for name in ("httpx", "httpcore", "openai", "redis", "sqlalchemy.engine"):
            assert logging.getLogger(name).level == logging.WARNING

    def test_unknown_level_falls_back_to_info(self):
        from app.core.logging import setup_logging

        setup_logging(level="LOUD")
        assert logging.getLogger().level == logging.INFO

    def test_multiple_get_logger_calls_same_name(self):
        """Multiple calls with same name should return same logger."""
        from app.core.logging import get_logger

        logger1 = get_logger("same_name")
        logger2 = get_logger("same_name")

        assert logger1 is logger2


class TestQueryContext:
    """Test query ids stamped on log records."""

    def make_record(self):
        return logging.LogRecord("app.test", logging.INFO, __file__, 1, "message", None, None)

    def test_record_outside_a_query_gets_placeholder(self):
        from app.core.logging import QueryContextFilter

        record = self.make_record()
        assert QueryContextFilter().filter(record) is True
        assert record.query_id == "-"

    def test_record_inside_a_query_gets_its_id(self):
        from app.core.logging import QueryContextFilter, current_query_id, query_context

        record = self.make_record()
        with query_context("q-123"):
            QueryContextFilter().filter(record)
            assert current_query_id() == "q-123"

        assert record.query_id == "q-123"
        assert current_query_id() == "-"

    def test_context_follows_spawned_tasks(self):
        import asyncio
        from app.core.logging import current_query_id, query_context

        async def scenario():
            async def read():
                return current_query_id()

            with query_context("q-456"):
                in_task = await asyncio.create_task(read())
                in_thread = await asyncio.to_thread(current_query_id)
            return in_task, in_thread

        assert asyncio.run(scenario()) == ("q-456", "q-456")

    def test_root_handler_formats_query_id(self):
        from app.core.logging import setup_logging

        setup_logging(level="INFO")
        handler = logging.getLogger().handlers[0]

        assert "%(query_id)s" in handler.formatter._fmt
        assert any(type(f).__name__ == "QueryContextFilter" for f in handler.filters)
