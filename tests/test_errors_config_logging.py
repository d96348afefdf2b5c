"""Tests for the error taxonomy, configuration loading and structured logging."""

import json
import logging

import pytest

from stepflow import config as config_module
from stepflow.config import EngineConfig, get_log_level, get_retry_attempts, get_snapshot_dir
from stepflow.errors import (
    EMPTY_GRAPH,
    SNAPSHOT_PERSIST_FAILED,
    STEP_EXECUTION_FAILED,
    ErrorCategory,
    ErrorDomain,
    WorkflowError,
    format_error,
    normalize_error,
)
from stepflow.graph.entries import StepEntry
from stepflow.graph.step import Step
from stepflow.observability import (
    clear_trace_context,
    configure_logging,
    get_trace_context,
    set_trace_context,
)
from stepflow.observability.logging import HumanReadableFormatter, StructuredFormatter


def make_record(message: str = "hello", **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="stepflow.test",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=message,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class TestWorkflowError:
    def test_message_falls_back_to_definition_text(self):
        error = WorkflowError(EMPTY_GRAPH)

        assert error.id == "WORKFLOW_EXECUTE_EMPTY_GRAPH"
        assert error.message == "Workflow must have at least one step"
        assert error.domain == ErrorDomain.WORKFLOW
        assert error.category == ErrorCategory.USER
        assert error.stack is None

    def test_cause_supplies_message_and_stack(self):
        try:
            raise ValueError("bad input")
        except ValueError as e:
            error = WorkflowError(STEP_EXECUTION_FAILED, cause=e)

        assert error.message == "bad input"
        assert error.__cause__ is not None
        assert "ValueError: bad input" in error.stack

    def test_to_dict(self):
        error = WorkflowError(SNAPSHOT_PERSIST_FAILED, message="disk full", details={"run_id": "r1"})

        assert error.to_dict() == {
            "id": "STORAGE_PERSIST_SNAPSHOT_FAILED",
            "domain": "storage",
            "category": "third_party",
            "message": "disk full",
            "details": {"run_id": "r1"},
            "stack": None,
        }

    def test_normalize_wraps_plain_exceptions(self, caplog):
        try:
            raise KeyError("missing")
        except KeyError as e:
            with caplog.at_level(logging.ERROR, logger="stepflow.errors"):
                error = normalize_error(e, STEP_EXECUTION_FAILED, "Step a: ", {"step_id": "a"})

        assert error.id == "WORKFLOW_STEP_INVOKE_FAILED"
        assert error.details == {"step_id": "a"}
        assert "KeyError" in error.stack
        assert any("Step a: " in r.getMessage() for r in caplog.records)

    def test_normalize_passes_workflow_errors_through(self):
        original = WorkflowError(EMPTY_GRAPH, details={"run_id": "r1"})

        error = normalize_error(original, STEP_EXECUTION_FAILED, details={"step_id": "a", "run_id": "x"})

        assert error is original
        assert error.id == "WORKFLOW_EXECUTE_EMPTY_GRAPH"
        assert error.details == {"step_id": "a", "run_id": "r1"}
        assert error.stack is not None

    def test_format_error(self):
        assert format_error(None) is None
        assert format_error("already text") == "already text"
        assert format_error(WorkflowError(EMPTY_GRAPH)) == (
            "WORKFLOW_EXECUTE_EMPTY_GRAPH: Workflow must have at least one step"
        )
        assert "RuntimeError: plain" in format_error(RuntimeError("plain"))


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


@pytest.fixture
def isolated_config(monkeypatch, tmp_path):
    """Point the config file at a temp path and clear the STEPFLOW_* env."""
    config_file = tmp_path / "configuration.json"
    monkeypatch.setattr(config_module, "STEPFLOW_CONFIG_FILE", config_file)
    for name in (
        "STEPFLOW_RETRY_ATTEMPTS",
        "STEPFLOW_RETRY_DELAY_MS",
        "STEPFLOW_SNAPSHOT_DIR",
        "LOG_LEVEL",
        "LOG_FORMAT",
    ):
        monkeypatch.delenv(name, raising=False)
    return config_file


class TestConfig:
    def test_defaults_without_file_or_env(self, isolated_config):
        config = EngineConfig()

        assert config.retry_attempts == 0
        assert config.retry_delay_ms == 0
        assert config.snapshot_dir is None
        assert config.default_foreach_concurrency == 1
        assert get_log_level() == "INFO"

    def test_values_from_config_file(self, isolated_config, tmp_path):
        isolated_config.write_text(
            json.dumps(
                {
                    "retry": {"attempts": 3, "delay_ms": 250},
                    "snapshot_dir": str(tmp_path / "snaps"),
                    "log_level": "DEBUG",
                }
            )
        )

        config = EngineConfig()

        assert config.retry_attempts == 3
        assert config.retry_delay_ms == 250
        assert config.snapshot_dir == tmp_path / "snaps"
        assert get_log_level() == "DEBUG"

    def test_env_overrides_file(self, isolated_config, monkeypatch):
        isolated_config.write_text(json.dumps({"retry": {"attempts": 3}}))
        monkeypatch.setenv("STEPFLOW_RETRY_ATTEMPTS", "5")
        monkeypatch.setenv("STEPFLOW_SNAPSHOT_DIR", "/tmp/stepflow-snaps")

        assert get_retry_attempts() == 5
        assert str(get_snapshot_dir()) == "/tmp/stepflow-snaps"

    def test_bad_env_and_bad_file_are_ignored(self, isolated_config, monkeypatch):
        isolated_config.write_text("{broken")
        monkeypatch.setenv("STEPFLOW_RETRY_ATTEMPTS", "many")

        assert get_retry_attempts() == 0

    def test_negative_values_clamp_to_zero(self, isolated_config, monkeypatch):
        monkeypatch.setenv("STEPFLOW_RETRY_ATTEMPTS", "-2")
        assert get_retry_attempts() == 0


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


class TestStructuredLogging:
    def test_json_formatter_includes_trace_context_and_extras(self):
        set_trace_context(workflow_id="wf", run_id="run-123")

        line = StructuredFormatter().format(make_record("\033[32mstep done\033[0m", step_id="a"))
        entry = json.loads(line)

        assert entry["message"] == "step done"
        assert entry["level"] == "info"
        assert entry["workflow_id"] == "wf"
        assert entry["run_id"] == "run-123"
        assert entry["step_id"] == "a"

    def test_human_formatter_prefixes_context(self):
        set_trace_context(workflow_id="wf", run_id="abcdefgh12345678")

        line = HumanReadableFormatter().format(make_record("hi", step_id="a"))

        assert "[wf:wf | run:12345678]" in line
        assert line.endswith("hi (step=a)")

    def test_trace_context_merges_and_clears(self):
        set_trace_context(workflow_id="wf")
        set_trace_context(run_id="r1")
        assert get_trace_context() == {"workflow_id": "wf", "run_id": "r1"}

        clear_trace_context()
        assert get_trace_context() == {}

    def test_configure_logging_installs_formatter(self):
        root = logging.getLogger()
        saved_handlers, saved_level = list(root.handlers), root.level
        try:
            configure_logging(level="debug", format="json")
            assert root.level == logging.DEBUG
            assert isinstance(root.handlers[0].formatter, StructuredFormatter)

            configure_logging(level="WARNING", format="human")
            assert isinstance(root.handlers[0].formatter, HumanReadableFormatter)
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)

    @pytest.mark.asyncio
    async def test_step_bodies_see_run_context(self, engine):
        seen = {}

        def body(ctx):
            seen.update(get_trace_context())

        await engine.execute(workflow_id="wf", run_id="r-ctx", graph=[StepEntry(Step("a", body))])

        assert seen == {"workflow_id": "wf", "run_id": "r-ctx"}

    @pytest.mark.asyncio
    async def test_run_context_does_not_leak_into_caller(self, engine):
        set_trace_context(request_id="req-1")

        await engine.execute(workflow_id="wf", run_id="r1", graph=[StepEntry(Step("a", lambda ctx: 1))])

        assert get_trace_context() == {"request_id": "req-1"}

    @pytest.mark.asyncio
    async def test_run_context_is_reset_after_failed_run(self, engine):
        def body(ctx):
            raise RuntimeError("nope")

        result = await engine.execute(workflow_id="wf", run_id="r1", graph=[StepEntry(Step("a", body))])

        assert result.status == "failed"
        assert get_trace_context() == {}
