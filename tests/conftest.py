import subprocess
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import yaml

from sandboxer.config import Config
from sandboxer.errors import CommandError
from sandboxer.runner import CommandRunner


class FakeRunner(CommandRunner):
    """
    CommandRunner that records commands instead of executing them.

    Responses are matched by command prefix; the first match wins. A response
    is a CompletedProcess, an exception to raise, or a callable taking the
    command and returning either.
    """

    def __init__(self, tools=None, responses=None, env=None):
        super().__init__(env=env)
        self.tools = dict(tools or {})
        self.responses = list(responses or [])
        self.calls = []
        self.cwds = []
        self.spawned = []

    def respond(self, prefix, response):
        self.responses.append((list(prefix), response))
        return self

    def run(self, cmd, *, cwd=None, check=True, timeout=None, capture=True):
        command = [str(part) for part in cmd]
        self.calls.append(command)
        self.cwds.append(Path(cwd) if cwd else None)

        for prefix, response in self.responses:
            if command[: len(prefix)] != prefix:
                continue
            if callable(response) and not isinstance(response, subprocess.CompletedProcess):
                response = response(command)
            if isinstance(response, Exception):
                raise response
            if check and response.returncode != 0:
                raise CommandError(command, response.returncode, response.stderr or "")
            return response

        return subprocess.CompletedProcess(command, 0, stdout="", stderr="")

    def spawn(self, cmd, *, log_file=None):
        self.spawned.append([str(part) for part in cmd])
        process = MagicMock()
        process.pid = 4242
        process.poll.return_value = 0
        return process

    def which(self, name):
        return self.tools.get(name)

    def scripts(self):
        """Shell snippets passed to shell(), without the strict-mode prefix."""
        return [
            call[2].split("\n", 1)[1]
            for call in self.calls
            if call[:2] == ["bash", "-c"]
        ]


def completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess([], returncode, stdout=stdout, stderr=stderr)


DEFAULT_STAGES = {
    "prep": {
        "type": "prep",
        "directories": ["{deps_root}/bin", "{deps_root}/lib"],
        "env": {
            "DEPS_ROOT": "{deps_root}",
            "DEPS_BIN": "${DEPS_ROOT}/bin",
            "PATH": "${DEPS_BIN}:${PATH}",
        },
    },
    "tools": {
        "type": "command",
        "marker": "build-tools",
        "commands": ["echo building"],
        "env": {"TOOL_HOME": "${DEPS_ROOT}/tools"},
    },
}


def build_raw_config(tmp_path: Path, stages=None, **sections) -> dict:
    raw = {
        "sandbox": {"name": "test-sandbox", "version": "1.0.0"},
        "volume": {
            "workspace_root": str(tmp_path / "workspace"),
            "download_dir": str(tmp_path / "downloads"),
        },
        "stages": DEFAULT_STAGES if stages is None else stages,
        "logging": {
            "output": str(tmp_path / "logs" / "sandboxer.log"),
            "console": False,
        },
    }
    raw.update(sections)
    return raw


@pytest.fixture
def write_config(tmp_path):
    """Write a sandbox.yaml under tmp_path and return its path."""

    def _write(stages=None, **sections) -> Path:
        path = tmp_path / "sandbox.yaml"
        path.write_text(yaml.safe_dump(build_raw_config(tmp_path, stages, **sections), sort_keys=False))
        return path

    return _write


@pytest.fixture
def make_config(write_config):
    """Build a Config from a freshly written sandbox.yaml."""

    def _make(stages=None, **sections) -> Config:
        return Config.from_file(write_config(stages, **sections))

    return _make


@pytest.fixture
def config(make_config):
    return make_config()


@pytest.fixture
def runner():
    return FakeRunner()
