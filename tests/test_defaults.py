from __future__ import annotations

import tomllib
from typing import ClassVar

import pytest

from issueflow.defaults import (
    GATE_DEFAULTS,
    NOTIFY_DEFAULTS,
    PIPELINE_DEFAULTS,
    POOL_DEFAULTS,
    TIMEOUT_DEFAULTS,
    generate_toml,
)
from issueflow.models import Stage
from issueflow.stages import ORCHESTRATOR_STAGES

# ---------------------------------------------------------------------------
# Structure & type checks
# ---------------------------------------------------------------------------


class TestPipelineDefaults:
    def test_retry_budgets_are_positive(self):
        assert PIPELINE_DEFAULTS["max_attempts"] == 5
        assert PIPELINE_DEFAULTS["max_stage_attempts"] > 0

    def test_ui_labels_are_strings(self):
        assert all(isinstance(v, str) for v in PIPELINE_DEFAULTS["ui_labels"])


class TestPoolDefaults:
    expected_keys: ClassVar[set[str]] = {
        "max_sessions",
        "idle_ttl_seconds",
        "agent_command",
    }

    def test_keys(self):
        assert set(POOL_DEFAULTS) == self.expected_keys

    @pytest.mark.parametrize("key", ["max_sessions", "idle_ttl_seconds"])
    def test_int_values(self, key: str):
        assert isinstance(POOL_DEFAULTS[key], int)


class TestTimeoutDefaults:
    def test_every_worker_stage_has_a_timeout(self):
        worker_stages = {s.value for s in Stage if s not in ORCHESTRATOR_STAGES}
        assert set(TIMEOUT_DEFAULTS) == worker_stages

    def test_all_values_are_positive_ints(self):
        for v in TIMEOUT_DEFAULTS.values():
            assert isinstance(v, int)
            assert v > 0


class TestGateDefaults:
    def test_composite_check_names(self):
        assert set(GATE_DEFAULTS) == {"typecheck", "lint", "test", "coverage"}


class TestNotifyDefaults:
    def test_channel_is_known(self):
        assert NOTIFY_DEFAULTS["channel"] in ("sms", "email")


# ---------------------------------------------------------------------------
# generate_toml()
# ---------------------------------------------------------------------------


class TestGenerateToml:
    def test_parseable(self):
        parsed = tomllib.loads(generate_toml())
        assert isinstance(parsed, dict)

    def test_contains_all_sections(self):
        parsed = tomllib.loads(generate_toml())
        for section in ("pipeline", "gate", "pool", "timeout", "notify"):
            assert section in parsed

    def test_roundtrip_pipeline(self):
        parsed = tomllib.loads(generate_toml())
        for key, value in PIPELINE_DEFAULTS.items():
            assert parsed["pipeline"][key] == value

    def test_bool_rendered_as_toml_bool(self):
        assert "require_approval = false" in generate_toml()

    def test_empty_command_survives(self):
        parsed = tomllib.loads(generate_toml())
        assert parsed["gate"]["coverage"] == ""
