"""
Tests for configuration, structured logging and the error taxonomy
"""

import io
import json
import logging
import pytest

from approval_engine import config as config_module
from approval_engine.config import ApprovalEngineConfig, reload_config
from approval_engine.errors import (
    AuthorizationError, ConflictError, NotFoundError, ValidationError,
    WorkflowStateError, retry_on_conflict
)
from approval_engine.logging_config import JSONFormatter, log_action, setup_logging


class TestConfig:
    """Test environment-based settings"""

    def test_defaults(self):
        settings = ApprovalEngineConfig()
        assert settings.api_port == 8091
        assert settings.sweep_interval_seconds == 300
        assert settings.elevated_roles == ["admin"]
        assert settings.default_allowed_actions == ["APPROVE", "REJECT", "DELEGATE"]

    def test_environment_override(self, monkeypatch):
        """Test APPROVAL_ prefixed variables override defaults"""
        original = config_module.config
        monkeypatch.setenv("APPROVAL_API_PORT", "9100")
        monkeypatch.setenv("APPROVAL_DATABASE_URL", "memory")
        monkeypatch.setenv("APPROVAL_ELEVATED_ROLES", '["admin", "compliance_manager"]')
        try:
            settings = reload_config()
            assert settings.api_port == 9100
            assert settings.database_url == "memory"
            assert settings.elevated_roles == ["admin", "compliance_manager"]
            assert config_module.get_config() is settings
        finally:
            config_module.config = original


class TestStructuredLogging:
    """Test JSON log output"""

    @pytest.fixture
    def capture(self):
        stream = io.StringIO()
        handler = logging.StreamHandler(stream)
        handler.setFormatter(JSONFormatter())
        logger = logging.getLogger("approval_engine.tests.capture")
        logger.addHandler(handler)
        logger.setLevel(logging.DEBUG)
        logger.propagate = False
        yield logger, stream
        logger.removeHandler(handler)

    def test_log_action_fields(self, capture):
        logger, stream = capture
        log_action(logger, "info", "Step 1 approved", user_id="alice", action="approve_step",
                   resource="inst-1", extra={'status': 'IN_PROGRESS'})

        entry = json.loads(stream.getvalue())
        assert entry['level'] == "INFO"
        assert entry['message'] == "Step 1 approved"
        assert entry['user_id'] == "alice"
        assert entry['action'] == "approve_step"
        assert entry['resource'] == "inst-1"
        assert entry['extra'] == {'status': 'IN_PROGRESS'}

    def test_none_fields_dropped(self, capture):
        logger, stream = capture
        log_action(logger, "warning", "Version conflict")

        entry = json.loads(stream.getvalue())
        assert entry['level'] == "WARNING"
        assert 'user_id' not in entry
        assert 'extra' not in entry

    def test_below_level_skipped(self, capture):
        logger, stream = capture
        logger.setLevel(logging.ERROR)
        log_action(logger, "info", "ignored")
        assert stream.getvalue() == ""

    def test_setup_logging_replaces_handlers(self, tmp_path):
        log_file = tmp_path / "engine.log"
        logger = setup_logging("DEBUG", "text", str(log_file), logger_name="approval_engine_setup_test")
        logger = setup_logging("DEBUG", "text", str(log_file), logger_name="approval_engine_setup_test")
        try:
            assert len(logger.handlers) == 1
            logger.debug("sweeper started")
            logger.handlers[0].flush()
            assert "sweeper started" in log_file.read_text()
        finally:
            for handler in logger.handlers[:]:
                handler.close()
                logger.removeHandler(handler)


class TestErrors:
    """Test the error taxonomy"""

    def test_to_dict_drops_empty_context(self):
        error = NotFoundError("Workflow instance x not found", instance_id="x", step_order=None)
        assert error.to_dict() == {
            "error": "NotFoundError",
            "detail": "Workflow instance x not found",
            "context": {"instance_id": "x"}
        }

    def test_builtin_bases(self):
        assert isinstance(ValidationError("bad"), ValueError)
        assert isinstance(AuthorizationError("no"), PermissionError)
        assert not WorkflowStateError("closed").retryable

    def test_conflict_is_retryable(self):
        error = ConflictError("stale", instance_id="inst-1", expected_version=1, actual_version=2)
        assert error.retryable
        assert error.to_dict()["context"] == {
            "instance_id": "inst-1", "expected_version": 1, "actual_version": 2
        }

    def test_retry_gives_up(self):
        calls = []

        def always_stale():
            calls.append(1)
            raise ConflictError("stale", instance_id="inst-1")

        with pytest.raises(ConflictError):
            retry_on_conflict(always_stale, attempts=2)
        assert len(calls) == 2

    def test_other_errors_not_retried(self):
        calls = []

        def forbidden():
            calls.append(1)
            raise AuthorizationError("no")

        with pytest.raises(AuthorizationError):
            retry_on_conflict(forbidden, attempts=3)
        assert len(calls) == 1
