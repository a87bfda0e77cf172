"""Tests for steward.lib.config module."""

import pytest

from steward.lib.config import DEFAULT_RULES, ApprovalsConfig, load_config
from steward.lib.errors import ValidationError


class TestLoadConfig:
    """Tests for load_config()."""

    def test_missing_file_gives_defaults(self, tmp_path, monkeypatch):
        """No config file means built-in defaults under ./.steward."""
        monkeypatch.chdir(tmp_path)
        config = load_config(tmp_path / "absent.yaml")

        assert config.state_dir == tmp_path.resolve() / ".steward"
        assert config.streams["sec"].emoji == "🛡️"
        assert config.naming.max_name_length == 128
        assert config.rules == DEFAULT_RULES
        assert config.callbacks.gated_actions["merge"] == "release"
        assert config.approvals.distinct_approvers is True

    def test_overrides(self, tmp_path):
        """YAML values override the defaults."""
        path = tmp_path / "steward.yaml"
        path.write_text(
            "state_dir: data\n"
            "streams:\n"
            "  infra:\n"
            "    emoji: \"🧱\"\n"
            "    limit: 12\n"
            "    escalation_contact: \"@infra\"\n"
            "chat:\n"
            "  chat_id: -1001234\n"
            "  report_topic_id: 7\n"
            "retry:\n"
            "  max_attempts: 5\n"
        )
        config = load_config(path)

        assert config.state_dir == tmp_path.resolve() / "data"
        assert list(config.streams) == ["infra"]
        assert config.streams["infra"].slug == "infra"
        assert config.stream("infra").limit == 12
        assert config.chat.chat_id == "-1001234"
        assert config.chat.report_topic_id == "7"
        assert config.retry.max_attempts == 5
        assert config.retry.base_delay == 0.5

    def test_state_dir_env_override(self, tmp_path, monkeypatch):
        """STEWARD_STATE_DIR overrides the configured state directory."""
        monkeypatch.setenv("STEWARD_STATE_DIR", str(tmp_path / "elsewhere"))
        path = tmp_path / "steward.yaml"
        path.write_text("state_dir: data\n")
        assert load_config(path).state_dir == tmp_path / "elsewhere"

    def test_config_env_var(self, tmp_path, monkeypatch):
        """STEWARD_CONFIG names the config file."""
        path = tmp_path / "custom.yaml"
        path.write_text("naming:\n  max_name_length: 64\n")
        monkeypatch.setenv("STEWARD_CONFIG", str(path))
        assert load_config().naming.max_name_length == 64

    def test_malformed_yaml(self, tmp_path):
        """Unparseable YAML is a validation error."""
        path = tmp_path / "steward.yaml"
        path.write_text("streams: [unclosed\n")
        with pytest.raises(ValidationError):
            load_config(path)

    def test_root_must_be_mapping(self, tmp_path):
        """The config root must be a mapping."""
        path = tmp_path / "steward.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ValidationError):
            load_config(path)

    def test_schema_violation_names_path(self, tmp_path):
        """A schema violation names the offending path."""
        path = tmp_path / "steward.yaml"
        path.write_text("retry:\n  max_attempts: 0\n")
        with pytest.raises(ValidationError) as exc:
            load_config(path)
        assert exc.value.details["path"] == "retry.max_attempts"

    def test_unknown_section_rejected(self, tmp_path):
        """Unknown top-level sections are rejected."""
        path = tmp_path / "steward.yaml"
        path.write_text("telemetry: true\n")
        with pytest.raises(ValidationError):
            load_config(path)

    def test_gated_action_must_be_subject_type(self, tmp_path):
        """Gated actions must map to a known subject type."""
        path = tmp_path / "steward.yaml"
        path.write_text("callbacks:\n  gated_actions:\n    merge: yolo\n")
        with pytest.raises(ValidationError):
            load_config(path)

    def test_unknown_stream(self, tmp_path):
        """Looking up an unconfigured stream is a validation error."""
        config = load_config(tmp_path / "absent.yaml")
        with pytest.raises(ValidationError):
            config.stream("nope")


class TestApprovalsConfig:
    """Tests for role resolution."""

    def test_required_roles(self):
        """Required roles depend on the subject type and release kind."""
        approvals = ApprovalsConfig()
        assert approvals.required_roles("rename_batch", {}) == ["governance"]
        assert approvals.required_roles("release", {}) == ["tech-lead"]
        assert approvals.required_roles("release", {"release_kind": "minor"}) == ["security", "tech-lead"]

    def test_unknown_release_kind(self):
        """An unknown release kind is a validation error."""
        with pytest.raises(ValidationError):
            ApprovalsConfig().required_roles("release", {"release_kind": "giant"})

    def test_subject_override_keeps_other_defaults(self, tmp_path):
        """Overriding one subject keeps the other defaults."""
        path = tmp_path / "steward.yaml"
        path.write_text("approvals:\n  subjects:\n    rename_batch: [governance, ops]\n")
        approvals = load_config(path).approvals
        assert approvals.required_roles("rename_batch", {}) == ["governance", "ops"]
        assert approvals.required_roles("destructive", {}) == ["owner", "security"]

    def test_roles_for(self):
        """roles_for returns the roles an approver holds."""
        approvals = ApprovalsConfig(approvers={"bob": ["tech-lead"]})
        assert approvals.roles_for("bob") == {"tech-lead"}
        assert approvals.roles_for("nobody") == set()
