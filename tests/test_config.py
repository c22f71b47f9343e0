"""Tests for configuration loading and validation."""

import os
from pathlib import Path

import pytest
import yaml

from sandboxer.config import DEFAULT_CONFIG_PATH, Config, load_config
from sandboxer.errors import ConfigError
from sandboxer.pipeline import Pipeline


class TestLayout:
    """Tests for volume layout placeholders."""

    def test_defaults_derive_from_workspace_root(self, config, tmp_path):
        workspace = tmp_path / "workspace"
        assert config.workspace_root == workspace
        assert config.deps_root == workspace / "deps"
        assert config.marker_dir == workspace / "deps" / ".installed"
        assert config.runtime_dir == workspace / "deps" / "runtime"
        assert config.env_file == workspace / "deps" / "env.sh"
        assert config.fragments_file == workspace / "deps" / "env.fragments.yaml"

    def test_expand(self, config):
        assert config.expand("{deps_root}/lib") == f"{config.deps_root}/lib"
        assert config.expand("{runtime_dir}/xdg") == f"{config.runtime_dir}/xdg"

    def test_expand_leaves_shell_references(self, config):
        """Only layout placeholders are expanded; ${VAR} is for the shell."""
        assert config.expand("${DEPS_ROOT}/bin") == "${DEPS_ROOT}/bin"

    def test_custom_layout(self, make_config, tmp_path):
        config = make_config(
            volume={
                "workspace_root": str(tmp_path / "ws"),
                "deps_root": "{workspace_root}/opt",
                "marker_dir": "{deps_root}/markers",
            }
        )
        assert config.deps_root == tmp_path / "ws" / "opt"
        assert config.marker_dir == tmp_path / "ws" / "opt" / "markers"

    def test_state_file_under_logs(self, config):
        assert config.get_state_file() == config.deps_root / "logs" / "state.json"

    def test_log_path(self, config, tmp_path):
        assert config.get_log_file_path() == tmp_path / "logs" / "sandboxer.log"
        assert config.should_log_to_console() is False


class TestStages:
    """Tests for stage configuration."""

    def test_declared_order_is_kept(self, config):
        assert list(config.stages) == ["prep", "tools"]

    def test_marker_defaults_to_name(self, config):
        assert config.get_stage("prep").marker == "prep"
        assert config.get_stage("tools").marker == "build-tools"

    def test_env_and_extra(self, config):
        stage = config.get_stage("tools")
        assert stage.env == {"TOOL_HOME": "${DEPS_ROOT}/tools"}
        assert stage.get("commands") == ["echo building"]
        assert "env" not in stage.extra

    def test_disabled_stage_not_enabled(self, make_config):
        config = make_config(
            stages={
                "a": {"type": "prep"},
                "b": {"type": "prep", "enabled": False},
            }
        )
        assert [s.name for s in config.get_enabled_stages()] == ["a"]

    def test_stages_must_be_mapping(self, make_config):
        with pytest.raises(ConfigError, match="mapping"):
            make_config(stages=[{"type": "prep"}])


class TestValidation:
    """Tests for Config.validate()."""

    def test_valid(self, config):
        config.validate()

    def test_unknown_stage_type(self, make_config):
        config = make_config(stages={"x": {"type": "teleport"}})
        with pytest.raises(ConfigError, match="unknown type 'teleport'"):
            config.validate()

    def test_missing_stage_type(self, make_config):
        config = make_config(stages={"x": {"description": "no type"}})
        with pytest.raises(ConfigError, match="missing 'type'"):
            config.validate()

    def test_duplicate_markers(self, make_config):
        config = make_config(
            stages={
                "a": {"type": "prep", "marker": "same"},
                "b": {"type": "prep", "marker": "same"},
            }
        )
        with pytest.raises(ConfigError, match="share marker 'same'"):
            config.validate()

    def test_marker_must_be_plain_name(self, make_config):
        config = make_config(stages={"a": {"type": "prep", "marker": "../escape"}})
        with pytest.raises(ConfigError, match="plain file name"):
            config.validate()

    def test_fail_fast_cannot_be_disabled(self, make_config):
        config = make_config(behavior={"fail_fast": False})
        with pytest.raises(ConfigError, match="fail_fast"):
            config.validate()

    def test_no_stages(self, make_config):
        config = make_config(stages={})
        with pytest.raises(ConfigError, match="No stages"):
            config.validate()

    def test_bad_uid(self, make_config):
        config = make_config(ownership={"uid": -1})
        with pytest.raises(ConfigError, match="ownership.uid"):
            config.validate()


class TestLoading:
    """Tests for loading configuration files."""

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            Config.from_file(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("stages: [unclosed\n")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            Config.from_file(path)

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        with pytest.raises(ConfigError, match="empty"):
            Config.from_file(path)

    def test_env_var_selects_file(self, write_config, monkeypatch):
        path = write_config()
        monkeypatch.setenv("SANDBOXER_CONFIG", str(path))
        config = load_config()
        assert config.config_path == path
        assert config.name == "test-sandbox"

    def test_dotenv_loaded_without_override(self, write_config, tmp_path, monkeypatch):
        env_file = tmp_path / ".env"
        env_file.write_text("SANDBOXER_TEST_NEW=from_file\nSANDBOXER_TEST_SET=from_file\n")
        monkeypatch.delenv("SANDBOXER_TEST_NEW", raising=False)
        monkeypatch.setenv("SANDBOXER_TEST_SET", "from_env")

        load_config(write_config(env_file=str(env_file)))

        assert os.environ["SANDBOXER_TEST_NEW"] == "from_file"
        assert os.environ["SANDBOXER_TEST_SET"] == "from_env"
        monkeypatch.delenv("SANDBOXER_TEST_NEW")


class TestServices:
    """Tests for service sections."""

    def test_service_values_are_expanded(self, make_config):
        config = make_config(services={"network_identity": {"state_dir": "{runtime_dir}/net", "readiness": {"attempts": 3}}})
        service = config.get_service("network_identity")
        assert service.enabled is True
        assert service.path("state_dir") == config.runtime_dir / "net"
        assert service.section("readiness") == {"attempts": 3}
        assert service.section("watcher") == {}

    def test_missing_service(self, config):
        assert config.get_service("remote_access") is None


class TestPackagedDefaults:
    """The shipped configuration must always be valid."""

    def test_defaults_validate(self):
        config = Config.from_file(DEFAULT_CONFIG_PATH)
        config.validate()
        assert list(config.stages)[0] == "prep"

    def test_every_default_stage_builds(self):
        config = Config.from_file(DEFAULT_CONFIG_PATH)
        stages = Pipeline(config).stages()
        assert [s.name for s in stages] == list(config.stages)
        assert len({s.marker_id for s in stages}) == len(stages)

    def test_default_file_is_yaml_mapping(self):
        assert isinstance(yaml.safe_load(Path(DEFAULT_CONFIG_PATH).read_text()), dict)
