"""Tests for servicebed.core.errors module."""

import pytest

from servicebed.core.errors import (
    ConnectionFailure,
    ContainerExited,
    EngineCommandError,
    EngineUnavailable,
    ErrorCategory,
    ErrorContext,
    HarnessError,
    ImagePullFailure,
    PortNotExposed,
    QueryFailure,
    StartupTimeout,
    categorize_error,
)


class TestErrorContext:
    """Test ErrorContext dataclass."""

    def test_create_empty_context(self):
        ctx = ErrorContext()
        assert ctx.service is None
        assert ctx.container is None
        assert ctx.metadata == {}

    def test_to_dict_includes_set_fields(self):
        """to_dict includes only non-None fields plus metadata."""
        ctx = ErrorContext(service="redis", port=6379, metadata={"last_logs": "boom"})
        d = ctx.to_dict()
        assert d == {"service": "redis", "port": 6379, "last_logs": "boom"}
        assert "image" not in d


class TestHarnessError:
    """Test the base error."""

    def test_default_category_is_internal(self):
        err = HarnessError("something broke")
        assert err.category == ErrorCategory.INTERNAL
        assert err.message == "something broke"
        assert str(err) == "something broke"

    def test_cause_is_chained(self):
        original = OSError("connection refused")
        err = ConnectionFailure("redis unreachable", cause=original)
        assert err.cause is original
        assert err.__cause__ is original

    def test_with_context_sets_known_fields_and_metadata(self):
        err = StartupTimeout("slow").with_context(service="postgres", container="sb-pg", last_logs="tail")
        assert err.context.service == "postgres"
        assert err.context.container == "sb-pg"
        assert err.context.metadata["last_logs"] == "tail"

    def test_with_context_returns_same_instance(self):
        err = QueryFailure("bad row")
        assert err.with_context(service="postgres") is err

    def test_to_dict(self):
        err = ImagePullFailure("no such image", cause=RuntimeError("404")).with_context(image="nope:latest")
        d = err.to_dict()
        assert d["error_type"] == "ImagePullFailure"
        assert d["category"] == "IMAGE"
        assert d["context"] == {"image": "nope:latest"}
        assert d["cause"] == "404"

    def test_never_retryable(self):
        assert not EngineUnavailable("down").retryable
        assert not StartupTimeout("slow").retryable

    def test_repr(self):
        assert repr(QueryFailure("x")) == "QueryFailure('x', category=QUERY)"


class TestErrorTypes:
    """Categories and extra attributes of each error type."""

    @pytest.mark.parametrize(
        "cls, category",
        [
            (EngineUnavailable, ErrorCategory.ENGINE),
            (EngineCommandError, ErrorCategory.ENGINE),
            (ImagePullFailure, ErrorCategory.IMAGE),
            (StartupTimeout, ErrorCategory.STARTUP),
            (ContainerExited, ErrorCategory.STARTUP),
            (ConnectionFailure, ErrorCategory.CONNECTION),
            (QueryFailure, ErrorCategory.QUERY),
        ],
    )
    def test_categories(self, cls, category):
        assert cls("msg").category == category

    def test_container_exited_is_startup_timeout(self):
        err = ContainerExited("died", exit_code=3)
        assert isinstance(err, StartupTimeout)
        assert err.exit_code == 3

    def test_startup_timeout_records_deadline(self):
        assert StartupTimeout("slow", timeout=2.5).timeout == 2.5

    def test_engine_command_error_keeps_stderr(self):
        err = EngineCommandError("rm failed", returncode=125, stderr="permission denied")
        assert err.returncode == 125
        assert err.stderr == "permission denied"

    def test_port_not_exposed(self):
        err = PortNotExposed(8080)
        assert err.category == ErrorCategory.CONFIG
        assert err.context.port == 8080
        assert "8080" in err.message


class TestCategorizeError:
    def test_harness_error(self):
        assert categorize_error(QueryFailure("x")) == ErrorCategory.QUERY

    def test_os_error_is_connection(self):
        assert categorize_error(ConnectionRefusedError()) == ErrorCategory.CONNECTION

    def test_other_is_internal(self):
        assert categorize_error(KeyError("x")) == ErrorCategory.INTERNAL
