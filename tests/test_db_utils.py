"""
Tests for database utilities.

Tests cover:
- Transient error detection
- db_retry decorator behavior and backoff
- Connection health checks
- Engine construction per backend
"""

from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.pool import StaticPool

from app.core.db_utils import TRANSIENT_ERRORS, check_db_connection, db_retry, is_transient_error
from app.db import build_engine


class TestIsTransientError:
    """Tests for is_transient_error function."""

    @pytest.mark.parametrize("error_msg", [
        "server closed the connection unexpectedly",
        "connection refused",
        "CONNECTION RESET BY PEER",
        "terminating connection due to administrator command",
        "the database system is starting up",
        "database is locked",
    ])
    def test_detects_transient_errors(self, error_msg):
        assert is_transient_error(Exception(error_msg)) is True

    @pytest.mark.parametrize("error_msg", [
        "UNIQUE constraint failed: payment_events.event_id",
        "relation 'payment_events' does not exist",
        "syntax error at or near 'SELECT'",
        "",
    ])
    def test_rejects_non_transient_errors(self, error_msg):
        assert is_transient_error(Exception(error_msg)) is False

    def test_with_operational_error(self):
        error = OperationalError("SELECT 1", None, Exception("database is locked"))
        assert is_transient_error(error) is True

    def test_all_errors_are_lowercase(self):
        for error in TRANSIENT_ERRORS:
            assert error == error.lower(), f"Error '{error}' is not lowercase"


class TestDbRetryDecorator:
    """Tests for db_retry decorator."""

    def test_success_on_first_try(self):
        @db_retry(max_retries=2)
        def query():
            return "rows"

        assert query() == "rows"

    def test_retries_transient_error(self):
        call_count = 0

        @db_retry(max_retries=2)
        def query():
            nonlocal call_count
            call_count += 1
            if call_count < 2:
                raise OperationalError("server closed the connection unexpectedly", None, None)
            return "recovered"

        with patch("app.core.db_utils.time.sleep"):
            assert query() == "recovered"
        assert call_count == 2

    def test_raises_after_max_retries(self):
        call_count = 0

        @db_retry(max_retries=2)
        def query():
            nonlocal call_count
            call_count += 1
            raise InterfaceError("SELECT 1", None, Exception("connection refused"))

        with patch("app.core.db_utils.time.sleep"):
            with pytest.raises(InterfaceError):
                query()
        assert call_count == 3  # Initial + 2 retries

    def test_no_retry_on_non_transient_error(self):
        call_count = 0

        @db_retry(max_retries=3)
        def query():
            nonlocal call_count
            call_count += 1
            raise OperationalError("relation 'payment_events' does not exist", None, None)

        with pytest.raises(OperationalError):
            query()
        assert call_count == 1

    def test_integrity_error_not_retried(self):
        """Constraint violations are outcomes, not connection failures."""
        call_count = 0

        @db_retry(max_retries=3)
        def query():
            nonlocal call_count
            call_count += 1
            raise IntegrityError("INSERT", None, Exception("connection refused"))

        with pytest.raises(IntegrityError):
            query()
        assert call_count == 1

    def test_exponential_backoff_capped(self):
        delays = []

        @db_retry(max_retries=4, base_delay=1.0, max_delay=3.0)
        def query():
            raise OperationalError("connection timed out", None, None)

        with patch("app.core.db_utils.time.sleep", side_effect=delays.append):
            with pytest.raises(OperationalError):
                query()

        assert delays == [1.0, 2.0, 3.0, 3.0]

    def test_linear_backoff_option(self):
        delays = []

        @db_retry(max_retries=3, base_delay=2.0, exponential=False)
        def query():
            raise OperationalError("connection refused", None, None)

        with patch("app.core.db_utils.time.sleep", side_effect=delays.append):
            with pytest.raises(OperationalError):
                query()

        assert delays == [2.0, 2.0, 2.0]


class TestCheckDbConnection:
    """Tests for check_db_connection function."""

    def test_returns_true_on_healthy_connection(self, test_engine):
        assert check_db_connection(test_engine) is True

    def test_returns_false_on_connection_failure(self):
        mock_engine = MagicMock()

        with patch("app.core.db_utils.Session") as mock_session:
            mock_session.return_value.__enter__ = MagicMock(
                side_effect=OperationalError("connection refused", None, None)
            )
            mock_session.return_value.__exit__ = MagicMock(return_value=False)

            with patch("app.core.db_utils.logger") as mock_logger:
                assert check_db_connection(mock_engine) is False
                mock_logger.error.assert_called_once()


class TestBuildEngine:
    """Tests for engine construction."""

    def test_memory_sqlite_uses_static_pool(self):
        engine = build_engine("sqlite:///:memory:")
        try:
            assert isinstance(engine.pool, StaticPool)
        finally:
            engine.dispose()

    def test_file_sqlite_is_usable(self, tmp_path):
        engine = build_engine(f"sqlite:///{tmp_path / 'events.db'}", timeout_seconds=1)
        try:
            assert not isinstance(engine.pool, StaticPool)
            assert check_db_connection(engine) is True
        finally:
            engine.dispose()
