"""Tests for the install stage implementations."""

import io
import logging
import os
import stat
import tarfile
from pathlib import Path
from unittest.mock import patch

import pytest

from conftest import FakeRunner, completed
from sandboxer.environment import EnvironmentDescriptor
from sandboxer.errors import ConfigError
from sandboxer.fetch import Fetcher
from sandboxer.stages import (
    ArchiveStage,
    CommandStage,
    CopyStage,
    GitStage,
    IdentityStage,
    PrepStage,
    StageContext,
    build_stage,
)
from sandboxer.stages.base import Stage, StageResult


def make_context(config, runner) -> StageContext:
    return StageContext(
        config=config,
        runner=runner,
        fetcher=Fetcher(runner),
        descriptor=EnvironmentDescriptor(config.fragments_file, config.env_file),
        logger=logging.getLogger("sandboxer.tests"),
    )


def stage_for(make_config, name, settings):
    config = make_config(stages={name: settings})
    return config, build_stage(config.get_stage(name))


class TestBuildStage:
    """Tests for stage construction."""

    def test_known_types(self, make_config):
        config = make_config(
            stages={
                "a": {"type": "prep"},
                "b": {"type": "archive"},
                "c": {"type": "command"},
                "d": {"type": "git"},
                "e": {"type": "copy"},
                "f": {"type": "identity"},
            }
        )
        classes = [type(build_stage(s)) for s in config.stages.values()]
        assert classes == [PrepStage, ArchiveStage, CommandStage, GitStage, CopyStage, IdentityStage]

    def test_unknown_type(self, make_config):
        config = make_config(stages={"x": {"type": "teleport"}})
        with pytest.raises(ConfigError, match="unknown type"):
            build_stage(config.get_stage("x"))

    def test_ordinal_and_marker(self, make_config):
        config = make_config(stages={"x": {"type": "prep", "marker": "prep-v2"}})
        stage = build_stage(config.get_stage("x"), ordinal=3)
        assert stage.ordinal == 3
        assert stage.marker_id == "prep-v2"


class _Exploding(Stage):
    def __init__(self, config):
        super().__init__(config)
        self.cleaned = False

    def execute(self, ctx):
        raise RuntimeError("kaboom")

    def cleanup(self, ctx):
        self.cleaned = True


class TestStageLifecycle:
    """Tests for Stage.run()."""

    def test_exception_becomes_failed_result(self, config, runner):
        stage = _Exploding(config.get_stage("prep"))
        result = stage.run(make_context(config, runner))
        assert result.success is False
        assert result.error_message == "kaboom"
        assert result.marker == "prep"
        assert stage.cleaned is True

    def test_missing_output_fails_stage(self, make_config, runner):
        config, stage = stage_for(
            make_config, "tools", {"type": "command", "commands": [], "outputs": ["{deps_root}/bin/tool"]}
        )
        result = stage.run(make_context(config, runner))
        assert result.success is False
        assert "expected output missing" in result.error_message

    def test_present_output_recorded(self, make_config, runner):
        config, stage = stage_for(
            make_config, "tools", {"type": "command", "commands": [], "outputs": ["{deps_root}/bin/tool"]}
        )
        tool = config.deps_root / "bin" / "tool"
        tool.parent.mkdir(parents=True)
        tool.touch()
        result = stage.run(make_context(config, runner))
        assert result.success is True
        assert result.output_files == [tool]
        assert result.duration_seconds >= 0

    def test_fragment_expands_layout_only(self, config, runner):
        stage = build_stage(config.get_stage("prep"))
        fragment = stage.fragment(make_context(config, runner))
        assert fragment["DEPS_ROOT"] == str(config.deps_root)
        assert fragment["DEPS_BIN"] == "${DEPS_ROOT}/bin"

    def test_result_round_trip(self):
        result = StageResult(stage_name="x", success=True, fragment={"A": "1"}, output_files=[Path("/a")])
        assert StageResult.from_dict(result.to_dict()) == result


class TestPrepStage:
    """Tests for PrepStage."""

    def test_creates_directories(self, config, runner):
        stage = build_stage(config.get_stage("prep"))
        result = stage.run(make_context(config, runner))
        assert result.success
        assert (config.deps_root / "bin").is_dir()
        assert (config.deps_root / "lib").is_dir()
        assert result.metadata["directories_created"] == 2

    def test_default_directories(self, make_config, runner):
        config, stage = stage_for(make_config, "prep", {"type": "prep"})
        stage.run(make_context(config, runner))
        assert config.marker_dir.is_dir()
        assert (config.deps_root / "include").is_dir()

    def test_ccache_config_and_links(self, make_config):
        config, stage = stage_for(
            make_config,
            "prep",
            {"type": "prep", "ccache": {"dir": "{workspace_root}/.ccache", "max_size": "5G", "compilers": ["gcc", "g++"]}},
        )
        runner = FakeRunner(tools={"ccache": "/usr/bin/ccache"})
        result = stage.run(make_context(config, runner))

        conf = (config.workspace_root / ".ccache" / "ccache.conf").read_text()
        assert "max_size = 5G" in conf
        assert "compiler_check = content" in conf
        assert os.readlink(config.deps_root / "bin" / "gcc") == "/usr/bin/ccache"
        assert (config.deps_root / "bin" / "g++").is_symlink()
        assert result.metadata["cache_dir"] == str(config.workspace_root / ".ccache")

    def test_missing_ccache_is_not_fatal(self, make_config, runner):
        config, stage = stage_for(make_config, "prep", {"type": "prep", "ccache": {"max_size": "1G"}})
        result = stage.run(make_context(config, runner))
        assert result.success
        assert not (config.deps_root / "bin" / "gcc").exists()

    def test_reports_missing_tools(self, make_config):
        config, stage = stage_for(make_config, "prep", {"type": "prep", "tools": ["cmake", "ninja"]})
        runner = FakeRunner(tools={"cmake": "/usr/bin/cmake"})
        result = stage.run(make_context(config, runner))
        assert result.success
        assert result.metadata["missing_tools"] == ["ninja"]


class TestCommandStage:
    """Tests for CommandStage."""

    def test_runs_commands_in_order(self, make_config, runner):
        config, stage = stage_for(make_config, "cmds", {"type": "command", "commands": ["echo one", "echo {deps_root}"]})
        result = stage.run(make_context(config, runner))
        assert result.success
        assert runner.scripts() == ["echo one", f"echo {config.deps_root}"]
        assert runner.cwds == [config.deps_root, config.deps_root]

    def test_strict_shell(self, make_config, runner):
        config, stage = stage_for(make_config, "cmds", {"type": "command", "commands": ["true"]})
        stage.run(make_context(config, runner))
        assert runner.calls[0][:2] == ["bash", "-c"]
        assert runner.calls[0][2].startswith("set -euo pipefail\n")

    def test_failing_command_fails_stage(self, make_config):
        config, stage = stage_for(make_config, "cmds", {"type": "command", "commands": ["false", "echo never"]})
        runner = FakeRunner().respond(["bash", "-c"], completed(1, stderr="nope"))
        result = stage.run(make_context(config, runner))
        assert result.success is False
        assert "exit code 1" in result.error_message
        assert len(runner.calls) == 1

    def test_packages_installed_first(self, make_config, runner):
        config, stage = stage_for(
            make_config, "headers", {"type": "command", "packages": ["libeigen3-dev", "libtbb-dev"], "commands": ["ls"]}
        )
        with patch("sandboxer.stages.command.os.geteuid", return_value=0):
            stage.run(make_context(config, runner))
        assert runner.scripts() == [
            "apt-get update",
            "apt-get install -y --no-install-recommends libeigen3-dev libtbb-dev",
            "ls",
        ]

    def test_sudo_when_not_root(self, make_config):
        config, stage = stage_for(make_config, "headers", {"type": "command", "packages": ["jq"], "package_update": ""})
        runner = FakeRunner(tools={"sudo": "/usr/bin/sudo"})
        with patch("sandboxer.stages.command.os.geteuid", return_value=1000):
            stage.run(make_context(config, runner))
        assert runner.scripts() == ["sudo apt-get install -y --no-install-recommends jq"]

    def test_package_command_needs_slot(self, make_config, runner):
        config, stage = stage_for(
            make_config, "headers", {"type": "command", "packages": ["jq"], "package_command": "dnf install -y"}
        )
        result = stage.run(make_context(config, runner))
        assert result.success is False
        assert "{packages}" in result.error_message


class TestGitStage:
    """Tests for GitStage."""

    def _settings(self, **overrides):
        settings = {
            "type": "git",
            "repos": [
                {"name": "palabos", "url": "https://gitlab.com/x/palabos.git", "build": ["cmake -S . -B build"]},
                {"name": "gc", "url": "https://github.com/x/gc.git", "branch": "v1"},
            ],
        }
        settings.update(overrides)
        return settings

    def test_requires_git(self, make_config, runner):
        config, stage = stage_for(make_config, "libraries", self._settings())
        result = stage.run(make_context(config, runner))
        assert result.success is False
        assert "git is not installed" in result.error_message
        assert runner.calls == []

    def test_clones_and_builds(self, make_config):
        config, stage = stage_for(make_config, "libraries", self._settings())
        runner = FakeRunner(tools={"git": "/usr/bin/git"})
        result = stage.run(make_context(config, runner))

        assert result.success
        checkout = config.download_dir / "palabos"
        assert runner.calls[0] == [
            "git", "clone", "--depth", "1", "--recursive",
            "https://gitlab.com/x/palabos.git", str(checkout),
        ]
        assert runner.scripts() == ["cmake -S . -B build"]
        assert runner.cwds[1] == checkout
        assert runner.calls[2][-4:] == ["--branch", "v1", "https://github.com/x/gc.git", str(config.download_dir / "gc")]
        assert result.metadata["repos"] == ["palabos", "gc"]

    def test_checkout_removed_on_failure(self, make_config):
        config, stage = stage_for(make_config, "libraries", self._settings())
        checkout = config.download_dir / "palabos"

        def _clone(command):
            Path(command[-1]).mkdir(parents=True)
            return completed()

        runner = (
            FakeRunner(tools={"git": "/usr/bin/git"})
            .respond(["git", "clone"], _clone)
            .respond(["bash", "-c"], completed(2, stderr="cmake error"))
        )
        result = stage.run(make_context(config, runner))
        assert result.success is False
        assert not checkout.exists()

    def test_single_url_form(self, make_config):
        config, stage = stage_for(
            make_config, "tool", {"type": "git", "url": "https://example.com/tool.git", "build": ["make"]}
        )
        runner = FakeRunner(tools={"git": "/usr/bin/git"})
        assert stage.run(make_context(config, runner)).success
        assert runner.calls[0][-1] == str(config.download_dir / "tool")

    def test_repo_without_url(self, make_config):
        config, stage = stage_for(make_config, "libraries", {"type": "git", "repos": [{"name": "x"}]})
        result = stage.run(make_context(config, FakeRunner(tools={"git": "/usr/bin/git"})))
        assert result.success is False
        assert "needs a 'url'" in result.error_message


class TestArchiveStage:
    """Tests for ArchiveStage."""

    @pytest.fixture
    def archive_bytes(self):
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
            data = b"#!/bin/sh\n"
            info = tarfile.TarInfo("nvhpc_2024/install")
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
        return buffer.getvalue()

    def _runner(self, archive_bytes):
        def _download(command):
            Path(command[command.index("-o") + 1]).write_bytes(archive_bytes)
            return completed()

        return FakeRunner(tools={"curl": "/usr/bin/curl"}).respond(["curl"], _download)

    def test_rejects_unknown_format_before_download(self, make_config, runner):
        config, stage = stage_for(
            make_config, "sdk", {"type": "archive", "url": "https://example.com/sdk.rar", "dest": "/tmp/x"}
        )
        result = stage.run(make_context(config, runner))
        assert result.success is False
        assert "Unknown archive format" in result.error_message
        assert runner.calls == []

    def test_download_extract_install(self, make_config, archive_bytes, tmp_path):
        dest = tmp_path / "sdk-src"
        config, stage = stage_for(
            make_config,
            "sdk",
            {
                "type": "archive",
                "url": "https://example.com/sdk.tar.gz",
                "dest": str(dest),
                "workdir": "nvhpc_*",
                "install": ["./install --prefix={deps_root}/sdk"],
            },
        )
        runner = self._runner(archive_bytes)
        result = stage.run(make_context(config, runner))

        assert result.success, result.error_message
        assert (dest / "nvhpc_2024" / "install").exists()
        assert runner.scripts() == [f"./install --prefix={config.deps_root}/sdk"]
        assert runner.cwds[-1] == dest / "nvhpc_2024"
        assert not (config.download_dir / "sdk.tar.gz").exists()

    def test_remove_after_install(self, make_config, archive_bytes, tmp_path):
        dest = tmp_path / "sdk-src"
        config, stage = stage_for(
            make_config,
            "sdk",
            {"type": "archive", "url": "https://example.com/sdk.tar.gz", "dest": str(dest), "remove_after_install": True},
        )
        assert stage.run(make_context(config, self._runner(archive_bytes))).success
        assert not dest.exists()

    def test_workdir_without_match(self, make_config, archive_bytes, tmp_path):
        config, stage = stage_for(
            make_config,
            "sdk",
            {
                "type": "archive",
                "url": "https://example.com/sdk.tar.gz",
                "dest": str(tmp_path / "sdk-src"),
                "workdir": "missing_*",
                "install": ["./install"],
            },
        )
        result = stage.run(make_context(config, self._runner(archive_bytes)))
        assert result.success is False
        assert "no directory matching" in result.error_message


class TestCopyStage:
    """Tests for CopyStage."""

    @pytest.fixture
    def bundle(self, tmp_path):
        scripts = tmp_path / "bundle" / "scripts"
        scripts.mkdir(parents=True)
        (scripts / "paraview-manager.sh").write_text("#!/bin/bash\n")
        (scripts / "notes.txt").write_text("notes\n")
        return scripts

    def test_patterns_and_executable(self, make_config, runner, bundle):
        config, stage = stage_for(
            make_config,
            "scripts",
            {
                "type": "copy",
                "items": [{"source": str(bundle), "target": "{deps_root}/scripts", "patterns": ["*.sh"], "executable": True}],
            },
        )
        result = stage.run(make_context(config, runner))
        target = config.deps_root / "scripts"

        assert result.metadata["copied"] == 1
        assert (target / "paraview-manager.sh").stat().st_mode & stat.S_IXUSR
        assert not (target / "notes.txt").exists()

    def test_directory_copied_whole(self, make_config, runner, bundle):
        config, stage = stage_for(
            make_config, "scripts", {"type": "copy", "items": [{"source": str(bundle), "target": "{deps_root}/share"}]}
        )
        result = stage.run(make_context(config, runner))
        assert result.metadata["copied"] == 2
        assert (config.deps_root / "share" / "scripts" / "notes.txt").exists()

    def test_relative_source_resolves_against_config(self, make_config, runner, bundle):
        config, stage = stage_for(
            make_config, "scripts", {"type": "copy", "items": [{"source": "bundle/scripts/notes.txt", "target": "{deps_root}/doc"}]}
        )
        assert stage.run(make_context(config, runner)).success
        assert (config.deps_root / "doc" / "notes.txt").exists()

    def test_missing_optional_source(self, make_config, runner, tmp_path):
        config, stage = stage_for(
            make_config, "scripts", {"type": "copy", "items": [{"source": str(tmp_path / "nope"), "target": "{deps_root}/x"}]}
        )
        result = stage.run(make_context(config, runner))
        assert result.success
        assert result.metadata["copied"] == 0

    def test_missing_required_source(self, make_config, runner, tmp_path):
        config, stage = stage_for(
            make_config,
            "scripts",
            {"type": "copy", "items": [{"source": str(tmp_path / "nope"), "target": "{deps_root}/x", "required": True}]},
        )
        result = stage.run(make_context(config, runner))
        assert result.success is False
        assert "source not found" in result.error_message

    def test_symlinks(self, make_config, runner, bundle):
        config, stage = stage_for(
            make_config,
            "scripts",
            {
                "type": "copy",
                "items": [{"source": str(bundle), "target": "{deps_root}/scripts", "patterns": ["*.sh"]}],
                "symlinks": {
                    "{deps_root}/bin/pv": "{deps_root}/scripts/paraview-manager.sh",
                    "{deps_root}/bin/ghost": "{deps_root}/scripts/missing.sh",
                },
            },
        )
        stage.run(make_context(config, runner))
        link = config.deps_root / "bin" / "pv"
        assert link.is_symlink()
        assert link.resolve() == (config.deps_root / "scripts" / "paraview-manager.sh").resolve()
        assert not (config.deps_root / "bin" / "ghost").exists()

    def test_symlink_never_replaces_real_file(self, make_config, runner, bundle):
        config, stage = stage_for(
            make_config,
            "scripts",
            {
                "type": "copy",
                "items": [{"source": str(bundle), "target": "{deps_root}/scripts", "patterns": ["*.sh"]}],
                "symlinks": {"{deps_root}/bin/pv": "{deps_root}/scripts/paraview-manager.sh"},
            },
        )
        real = config.deps_root / "bin" / "pv"
        real.parent.mkdir(parents=True)
        real.write_text("user file\n")
        stage.run(make_context(config, runner))
        assert not real.is_symlink()
        assert real.read_text() == "user file\n"


class TestIdentityStage:
    """Tests for IdentityStage."""

    def _settings(self, tmp_path, **overrides):
        settings = {
            "type": "identity",
            "directories": ["{runtime_dir}/vscode-server/data/User", "{runtime_dir}/xdg/cache"],
            "files": {"{runtime_dir}/vscode-server/data/User/settings.json": '{"a": 1}'},
            "identity_dir": "{workspace_root}/.ssh",
            "host_key_types": ["rsa", "ed25519"],
            "authorized_keys": [str(tmp_path / "missing"), str(tmp_path / "authorized_keys")],
        }
        settings.update(overrides)
        return settings

    def test_directories_and_files(self, make_config, runner, tmp_path):
        config, stage = stage_for(make_config, "ide-ssh", self._settings(tmp_path))
        assert stage.run(make_context(config, runner)).success
        assert (config.runtime_dir / "xdg" / "cache").is_dir()
        settings = config.runtime_dir / "vscode-server" / "data" / "User" / "settings.json"
        assert settings.read_text() == '{"a": 1}\n'

    def test_authorized_keys_installed_from_first_existing(self, make_config, runner, tmp_path):
        (tmp_path / "authorized_keys").write_text("ssh-ed25519 AAAA user\n")
        config, stage = stage_for(make_config, "ide-ssh", self._settings(tmp_path))
        stage.run(make_context(config, runner))

        identity = config.workspace_root / ".ssh"
        installed = identity / "authorized_keys"
        assert installed.read_text() == "ssh-ed25519 AAAA user\n"
        assert stat.S_IMODE(installed.stat().st_mode) == 0o600
        assert stat.S_IMODE(identity.stat().st_mode) == 0o700

    def test_only_missing_host_keys_generated(self, make_config, runner, tmp_path):
        config, stage = stage_for(make_config, "ide-ssh", self._settings(tmp_path))
        identity = config.workspace_root / ".ssh"
        identity.mkdir(parents=True)
        (identity / "ssh_host_rsa_key").write_text("existing\n")

        result = stage.run(make_context(config, runner))

        keygen = [call for call in runner.calls if call[0] == "ssh-keygen"]
        assert keygen == [["ssh-keygen", "-t", "ed25519", "-f", str(identity / "ssh_host_ed25519_key"), "-N", "", "-q"]]
        assert result.metadata["host_keys_generated"] == ["ed25519"]
        assert (identity / "ssh_host_rsa_key").read_text() == "existing\n"

    def test_key_permissions_tightened(self, make_config, runner, tmp_path):
        config, stage = stage_for(make_config, "ide-ssh", self._settings(tmp_path, host_key_types=["rsa"]))
        identity = config.workspace_root / ".ssh"
        identity.mkdir(parents=True)
        key = identity / "ssh_host_rsa_key"
        key.write_text("k\n")
        key.chmod(0o666)
        public = identity / "ssh_host_rsa_key.pub"
        public.write_text("p\n")
        public.chmod(0o600)

        stage.run(make_context(config, runner))

        assert stat.S_IMODE(key.stat().st_mode) == 0o600
        assert stat.S_IMODE(public.stat().st_mode) == 0o644
