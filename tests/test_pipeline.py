"""Tests for the install pipeline: idempotency, resumption, fragment ordering."""

import json
from unittest.mock import patch

import pytest

from conftest import FakeRunner, completed
from sandboxer.environment import EnvironmentDescriptor, parse_exports
from sandboxer.errors import FetchError
from sandboxer.markers import SETUP_COMPLETE, MarkerStore
from sandboxer.pipeline import Pipeline, PipelineResult
from sandboxer.stages import CommandStage


def failing_runner():
    return FakeRunner().respond(["bash", "-c"], completed(1, stderr="build broke"))


class TestRun:
    """Tests for Pipeline.run()."""

    def test_runs_all_stages_in_order(self, config, runner):
        result = Pipeline(config, runner=runner).run()

        assert result.success is True
        assert list(result.stages) == ["prep", "tools"]
        assert runner.scripts() == ["echo building"]
        markers = MarkerStore(config.marker_dir)
        assert markers.is_complete("prep")
        assert markers.is_complete("build-tools")

    def test_second_run_is_a_no_op(self, config, runner):
        Pipeline(config, runner=runner).run()
        calls_after_first = len(runner.calls)

        result = Pipeline(config, runner=runner).run()

        assert result.success is True
        assert all(r.skipped for r in result.stages.values())
        assert len(runner.calls) == calls_after_first
        assert len(EnvironmentDescriptor.load(config.fragments_file)) == 2

    def test_setup_complete_marker(self, config, runner):
        Pipeline(config, runner=runner).run()
        assert MarkerStore(config.marker_dir).is_complete(SETUP_COMPLETE)

    def test_partial_run_does_not_mark_setup_complete(self, config, runner):
        Pipeline(config, runner=runner).run(only="prep")
        assert not MarkerStore(config.marker_dir).is_complete(SETUP_COMPLETE)

    def test_failure_stops_and_resumes(self, config):
        result = Pipeline(config, runner=failing_runner()).run()

        assert result.success is False
        assert result.failed_stage == "tools"
        assert result.error_message.startswith("Stage tools failed:")
        markers = MarkerStore(config.marker_dir)
        assert markers.is_complete("prep")
        assert not markers.is_complete("build-tools")

        runner = FakeRunner()
        resumed = Pipeline(config, runner=runner).run()
        assert resumed.success is True
        assert resumed.stages["prep"].skipped is True
        assert resumed.stages["tools"].skipped is False
        assert runner.scripts() == ["echo building"]

    def test_transient_failure_is_retryable(self, config, runner):
        with patch.object(CommandStage, "execute", side_effect=FetchError("connection reset by mirror")):
            result = Pipeline(config, runner=runner).run()

        assert result.success is False
        assert result.failed_stage == "tools"
        assert result.error_message == "Stage tools failed: connection reset by mirror"
        assert result.retryable is True
        assert result.stages["tools"].retryable is True

    def test_command_failure_is_not_retryable(self, config):
        result = Pipeline(config, runner=failing_runner()).run()
        assert result.retryable is False
        assert result.stages["tools"].retryable is False

    def test_later_stages_not_attempted_after_failure(self, make_config):
        config = make_config(
            stages={
                "first": {"type": "command", "commands": ["false"]},
                "second": {"type": "command", "commands": ["echo second"]},
            }
        )
        runner = failing_runner()
        result = Pipeline(config, runner=runner).run()
        assert list(result.stages) == ["first"]
        assert len(runner.calls) == 1

    def test_failed_stage_appends_no_fragment(self, config):
        Pipeline(config, runner=failing_runner()).run()
        sources = [f.source for f in EnvironmentDescriptor.load(config.fragments_file).fragments]
        assert sources == ["prep"]

    def test_missing_output_leaves_marker_absent(self, make_config, runner):
        config = make_config(stages={"sdk": {"type": "command", "commands": [], "outputs": ["{deps_root}/sdk/bin/nvc++"]}})
        result = Pipeline(config, runner=runner).run()
        assert result.failed_stage == "sdk"
        assert not MarkerStore(config.marker_dir).is_complete("sdk")

    def test_unrecordable_fragment_leaves_marker_absent(self, make_config, runner):
        config = make_config(stages={"bad": {"type": "command", "commands": [], "env": {"NOT-A-NAME": "x"}}})
        result = Pipeline(config, runner=runner).run()
        assert result.success is False
        assert "could not record completion" in result.stages["bad"].error_message
        assert not MarkerStore(config.marker_dir).is_complete("bad")

    def test_unknown_stage(self, config, runner):
        result = Pipeline(config, runner=runner).run(only="nope")
        assert result.success is False
        assert "Unknown or disabled stage 'nope'" in result.error_message
        assert runner.calls == []

    def test_force_reruns_completed_stage(self, config, runner):
        Pipeline(config, runner=runner).run()
        result = Pipeline(config, runner=runner).run(only="tools", force=True)

        assert result.stages["tools"].skipped is False
        assert runner.scripts() == ["echo building", "echo building"]
        sources = [f.source for f in EnvironmentDescriptor.load(config.fragments_file).fragments]
        assert sources == ["prep", "tools", "tools"]

    def test_disabled_stage_skipped_entirely(self, make_config, runner):
        config = make_config(
            stages={
                "on": {"type": "command", "commands": ["echo on"]},
                "off": {"type": "command", "commands": ["echo off"], "enabled": False},
            }
        )
        result = Pipeline(config, runner=runner).run()
        assert list(result.stages) == ["on"]
        assert MarkerStore(config.marker_dir).is_complete(SETUP_COMPLETE)


class TestEnvironment:
    """Tests for environment accumulation across stages."""

    def test_fragments_in_stage_order(self, config, runner):
        Pipeline(config, runner=runner).run()
        descriptor = EnvironmentDescriptor.load(config.fragments_file)

        assert [f.source for f in descriptor.fragments] == ["prep", "tools"]
        resolved = descriptor.resolve(base={"PATH": "/usr/bin"})
        assert resolved["DEPS_ROOT"] == str(config.deps_root)
        assert resolved["TOOL_HOME"] == f"{config.deps_root}/tools"
        assert resolved["PATH"] == f"{config.deps_root}/bin:/usr/bin"

    def test_rendered_file_matches(self, config, runner):
        Pipeline(config, runner=runner).run()
        descriptor = EnvironmentDescriptor.load(config.fragments_file)
        base = {"PATH": "/usr/bin"}
        assert parse_exports(config.env_file.read_text(), base=base) == descriptor.resolve(base=base)

    def test_later_stage_sees_earlier_fragment(self, config):
        seen = []
        runner_env = {"current": None}

        def _record(command):
            seen.append(runner_env["current"])
            return completed()

        class EnvRecordingRunner(FakeRunner):
            def run(self, cmd, **kwargs):
                runner_env["current"] = dict(self.env or {})
                return super().run(cmd, **kwargs)

        runner = EnvRecordingRunner().respond(["bash", "-c"], _record)
        Pipeline(config, runner=runner).run()

        assert seen[0]["DEPS_ROOT"] == str(config.deps_root)
        assert seen[0]["PATH"].startswith(f"{config.deps_root}/bin:")


class TestStatus:
    """Tests for Pipeline.status() and the state file."""

    def test_state_file_written(self, config, runner):
        Pipeline(config, runner=runner).run()
        data = json.loads(config.get_state_file().read_text())
        assert data["success"] is True
        assert set(data["stages"]) == {"prep", "tools"}

    def test_state_round_trip(self, config):
        result = Pipeline(config, runner=failing_runner()).run()
        loaded = PipelineResult.from_dict(json.loads(config.get_state_file().read_text()))
        assert loaded.failed_stage == result.failed_stage == "tools"
        assert loaded.error_message == result.error_message
        assert loaded.retryable is result.retryable is False

    def test_status_before_any_run(self, config):
        status = Pipeline(config).status()
        assert status.complete is False
        assert status.last_run is None
        assert status.setup_completed_at is None
        assert [(s.name, s.marker, s.complete) for s in status.stages] == [
            ("prep", "prep", False),
            ("tools", "build-tools", False),
        ]

    def test_status_after_run(self, config, runner):
        Pipeline(config, runner=runner).run()
        status = Pipeline(config).status()
        assert status.complete is True
        assert status.setup_completed_at is not None
        assert status.last_run.success is True

    def test_corrupt_state_file_ignored(self, config):
        state = config.get_state_file()
        state.parent.mkdir(parents=True)
        state.write_text("{not json")
        assert Pipeline(config).status().last_run is None


class TestValidate:
    """Tests for Pipeline.validate()."""

    def test_valid(self, config):
        Pipeline(config).validate()

    def test_invalid_stage_type(self, make_config):
        from sandboxer.errors import ConfigError

        config = make_config(stages={"x": {"type": "teleport"}})
        with pytest.raises(ConfigError):
            Pipeline(config).validate()
