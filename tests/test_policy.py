"""Tests for escalation policy validation and YAML loading."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from grievance.core import ConfigurationException, ConfigurationGapException
from grievance.escalation.domain import EscalationPolicy, EscalationThreshold
from grievance.escalation.infrastructure import EscalationPolicyManager

REPO_POLICY = Path(__file__).resolve().parent.parent / "escalation_policy.yaml"

POLICY_YAML = """
thresholds:
  high:
    hours: 8
    target_role: manager
  low:
    hours: 40
    target_role: agent
cooldown_hours: 2
working_window:
  working_weekdays: [0, 1, 2, 3, 4]
"""


class TestEscalationPolicy:
    def test_defaults_cover_every_priority(self):
        policy = EscalationPolicy()
        assert policy.threshold_for("critical").hours == 4
        assert policy.threshold_for("low").target_role == "agent"
        assert policy.max_level == 3

    def test_missing_threshold_raises_gap(self):
        policy = EscalationPolicy(thresholds={
            "high": EscalationThreshold(priority="high", hours=12, target_role="manager")
        })
        with pytest.raises(ConfigurationGapException):
            policy.threshold_for("medium")

    def test_threshold_keys_filled_from_mapping(self):
        policy = EscalationPolicy(thresholds={"high": {"hours": 6, "target_role": "admin"}})
        assert policy.threshold_for("high").priority == "high"

    def test_mismatched_threshold_key_rejected(self):
        with pytest.raises(ValidationError):
            EscalationPolicy(thresholds={
                "high": {"priority": "low", "hours": 6, "target_role": "admin"}
            })

    def test_unknown_role_rejected(self):
        with pytest.raises(ValidationError):
            EscalationPolicy(level_roles={2: ["supervisor"]})
        with pytest.raises(ValidationError):
            EscalationPolicy(thresholds={"high": {"hours": 6, "target_role": "ceo"}})

    def test_non_positive_hours_rejected(self):
        with pytest.raises(ValidationError):
            EscalationPolicy(thresholds={"high": {"hours": 0, "target_role": "manager"}})

    def test_roles_for_level(self):
        policy = EscalationPolicy()
        threshold = policy.threshold_for("high")
        assert policy.roles_for_level(1, threshold) == ["manager"]
        assert policy.roles_for_level(2, threshold) == ["manager", "admin"]
        assert policy.roles_for_level(3, threshold) == ["admin"]

    def test_assignment_roles(self):
        policy = EscalationPolicy(assignment_roles={"low": ["agent"]})
        assert policy.assignment_roles_for("low") == ["agent"]
        with pytest.raises(ConfigurationGapException):
            policy.assignment_roles_for("critical")

    def test_unknown_role_sorts_last(self):
        assert EscalationPolicy().rank_of("guest") == 3


class TestEscalationPolicyManager:
    def test_load_from_yaml(self, tmp_path):
        path = tmp_path / "policy.yaml"
        path.write_text(POLICY_YAML)
        manager = EscalationPolicyManager()

        policy = manager.load(path)

        assert manager.get_policy() is policy
        assert policy.threshold_for("high").hours == 8
        assert policy.cooldown_hours == 2
        assert policy.working_window.working_weekdays == [0, 1, 2, 3, 4]
        with pytest.raises(ConfigurationGapException):
            policy.threshold_for("critical")

    def test_missing_file_uses_defaults(self, tmp_path):
        manager = EscalationPolicyManager()
        policy = manager.load(tmp_path / "absent.yaml")
        assert policy == EscalationPolicy()

    @pytest.mark.parametrize("content", [
        "thresholds: [unclosed",
        "- just\n- a\n- list\n",
        "max_level: 9\n",
    ])
    def test_invalid_file_raises(self, tmp_path, content):
        path = tmp_path / "policy.yaml"
        path.write_text(content)
        with pytest.raises(ConfigurationException):
            EscalationPolicyManager().load(path)

    def test_failed_reload_keeps_previous_policy(self, tmp_path):
        path = tmp_path / "policy.yaml"
        path.write_text(POLICY_YAML)
        manager = EscalationPolicyManager()
        manager.load(path)

        path.write_text("cooldown_hours: -1\n")
        assert manager.reload() is False
        assert manager.get_policy().cooldown_hours == 2

        path.write_text("cooldown_hours: 1\n")
        assert manager.reload() is True
        assert manager.get_policy().cooldown_hours == 1

    def test_get_policy_before_load(self):
        with pytest.raises(RuntimeError):
            EscalationPolicyManager().get_policy()

    def test_shipped_policy_is_valid(self):
        policy = EscalationPolicyManager().load(REPO_POLICY)
        assert sorted(policy.thresholds) == ["critical", "high", "low", "medium"]
        assert policy.working_window.timezone == "Asia/Kolkata"
        assert policy.level_roles[3] == ["admin"]
