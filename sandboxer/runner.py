"""
External command execution.

All tools sandboxer drives (downloaders, build systems, service daemons) are
invoked through a CommandRunner so that every invocation sees the accumulated
environment and tests can substitute a fake.
"""

import logging
import os
import shutil
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from sandboxer.errors import CommandError
from sandboxer.utils import redact

logger = logging.getLogger(__name__)


class CommandRunner:
    """
    Thin wrapper over subprocess bound to one environment.

    Args:
        env: Environment for child processes (default: inherit os.environ)
        dry_run: Log commands instead of executing them
    """

    def __init__(self, env: Optional[Dict[str, str]] = None, dry_run: bool = False):
        self.env = dict(env) if env is not None else None
        self.dry_run = dry_run

    def with_env(self, env: Dict[str, str]) -> "CommandRunner":
        """Return a runner of the same kind bound to a different environment."""
        clone = self.__class__.__new__(self.__class__)
        clone.__dict__.update(self.__dict__)
        clone.env = dict(env)
        return clone

    def run(
        self,
        cmd: Sequence[str],
        *,
        cwd: Optional[Path] = None,
        check: bool = True,
        timeout: Optional[float] = None,
        capture: bool = True,
    ) -> subprocess.CompletedProcess:
        """
        Run a command to completion.

        Args:
            cmd: Command and arguments
            cwd: Working directory
            check: Raise CommandError on non-zero exit
            timeout: Seconds before the command is killed
            capture: Capture stdout/stderr as text

        Returns:
            subprocess.CompletedProcess result

        Raises:
            CommandError: If the command fails (with check) or times out
        """
        command = [str(part) for part in cmd]
        if self.dry_run:
            logger.info(f"[dry-run] {redact(command)}")
            return subprocess.CompletedProcess(command, 0, stdout="", stderr="")

        logger.debug(f"Executing: {redact(command)}")

        try:
            result = subprocess.run(
                command,
                cwd=str(cwd) if cwd else None,
                env=self.env,
                capture_output=capture,
                text=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            stderr = e.stderr.decode() if isinstance(e.stderr, bytes) else (e.stderr or "")
            raise CommandError(command, None, stderr)
        except FileNotFoundError as e:
            raise CommandError(command, 127, str(e))

        if check and result.returncode != 0:
            raise CommandError(command, result.returncode, result.stderr or "")

        return result

    def shell(
        self,
        script: str,
        *,
        cwd: Optional[Path] = None,
        timeout: Optional[float] = None,
        capture: bool = False,
    ) -> subprocess.CompletedProcess:
        """Run a shell snippet with bash, failing on the first error."""
        return self.run(
            ["bash", "-c", f"set -euo pipefail\n{script}"],
            cwd=cwd,
            timeout=timeout,
            capture=capture,
        )

    def spawn(self, cmd: Sequence[str], *, log_file: Optional[Path] = None) -> subprocess.Popen:
        """
        Start a long-running daemon without waiting for it.

        Output is appended to log_file when given, discarded otherwise.
        """
        command = [str(part) for part in cmd]
        logger.debug(f"Spawning: {redact(command)}")

        if log_file is not None:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            with open(log_file, "ab") as sink:
                return subprocess.Popen(
                    command,
                    env=self.env,
                    stdout=sink,
                    stderr=subprocess.STDOUT,
                    stdin=subprocess.DEVNULL,
                    start_new_session=True,
                )

        return subprocess.Popen(
            command,
            env=self.env,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            stdin=subprocess.DEVNULL,
            start_new_session=True,
        )

    def which(self, name: str) -> Optional[str]:
        """Locate an executable on the runner's PATH."""
        path = (self.env or os.environ).get("PATH")
        return shutil.which(name, path=path)

    def is_process_running(self, name: str) -> bool:
        """Check for a process with exactly this name."""
        try:
            result = self.run(["pgrep", "-x", name], check=False, timeout=5)
        except CommandError:
            return False
        return result.returncode == 0

    def kill_process(self, name: str, signal: int = 9) -> bool:
        """Kill processes by exact name. Never raises."""
        try:
            result = self.run(["pkill", f"-{signal}", "-x", name], check=False, timeout=5)
        except CommandError as e:
            logger.warning(f"Could not kill {name}: {e}")
            return False
        return result.returncode == 0
