"""
Remote access daemon (sshd) bring-up.

The daemon configuration is always regenerated from a fixed template, so a
hand-edited or half-written config never survives a restart. Host keys live in
the persistent identity directory: existing ones are reused, missing ones
are generated there, so the fingerprint survives restarts.
"""

import logging
import os
import shutil
from pathlib import Path
from typing import List, Optional

from sandboxer.config import ServiceConfig
from sandboxer.errors import CommandError
from sandboxer.runner import CommandRunner
from sandboxer.services.state import (
    PathKind,
    PersistedPath,
    ServiceDeclaration,
    ServicePhase,
    ServiceReport,
)

logger = logging.getLogger(__name__)

DEFAULT_KEY_TYPES = ["ed25519", "rsa", "ecdsa"]

CONFIG_TEMPLATE = """\
{ports}
{host_keys}
PermitRootLogin yes
PubkeyAuthentication yes
AuthorizedKeysFile {authorized_keys}
PasswordAuthentication no
ChallengeResponseAuthentication no
StrictModes no
ClientAliveInterval 60
ClientAliveCountMax 3
UseDNS no
Subsystem sftp {sftp_server}
MaxStartups 10:30:100
TCPKeepAlive yes
"""


class RemoteAccessService:
    """
    sshd with persistent host keys and key-only authentication.

    Args:
        declaration: Desired state and identity paths
        config: ``services.remote_access`` section
        runner: Command runner
    """

    def __init__(self, declaration: ServiceDeclaration, config: ServiceConfig, runner: CommandRunner):
        self.declaration = declaration
        self.config = config
        self.runner = runner

        self.name = declaration.name
        self.daemon = config.get("daemon", "/usr/sbin/sshd")
        self.process_name = config.get("process_name", "sshd")
        self.identity_dir = config.path("identity_dir", "{workspace_root}/.ssh")
        self.key_dir = config.path("key_dir", "/etc/ssh")
        self.config_path = config.path("config_path", "/tmp/sshd_config")
        self.error_log = config.path("error_log", "/tmp/sshd_error.log")
        self.authorized_keys = config.path("authorized_keys", "{workspace_root}/.ssh/authorized_keys")
        self.key_types: List[str] = list(config.get("key_types", DEFAULT_KEY_TYPES))
        self.ports: List[int] = [int(p) for p in config.get("ports", [22, 2222])]
        self.key_source: Optional[str] = None

    @classmethod
    def from_config(cls, config: ServiceConfig, runner: CommandRunner) -> "RemoteAccessService":
        identity_dir = config.path("identity_dir", "{workspace_root}/.ssh")
        key_types = list(config.get("key_types", DEFAULT_KEY_TYPES))
        declaration = ServiceDeclaration(
            name=config.name,
            identity_paths=[
                PersistedPath(identity_dir / f"ssh_host_{key_type}_key", PathKind.DURABLE, "host key")
                for key_type in key_types
            ],
        )
        return cls(declaration, config, runner)

    def _persistent_key(self, key_type: str) -> Path:
        return self.identity_dir / f"ssh_host_{key_type}_key"

    def _runtime_key(self, key_type: str) -> Path:
        return self.key_dir / f"ssh_host_{key_type}_key"

    def ensure_host_keys(self) -> str:
        """
        Provision host keys into the runtime key directory, one type at a time.

        A key already in the identity directory is reused. A missing one is
        generated into the identity directory (so the next start reuses it)
        and then installed. Only when the identity directory cannot be
        written is a throwaway key generated in the runtime directory.

        Returns:
            ``persistent`` when every key was reused, ``generated`` when some
            were created and persisted now, ``temporary`` when any key could
            not be persisted
        """
        self.key_dir.mkdir(parents=True, exist_ok=True)

        sources = {}
        for key_type in self.key_types:
            persistent = self._persistent_key(key_type)
            runtime = self._runtime_key(key_type)
            if persistent.is_file():
                self._install_key(persistent, runtime)
                sources[key_type] = "persistent"
                continue

            try:
                self._generate_key(key_type, persistent)
                self._install_key(persistent, runtime)
                sources[key_type] = "generated"
            except (OSError, CommandError) as e:
                logger.warning(
                    f"Could not persist {key_type} host key in {self.identity_dir}: {e}",
                    extra={"service": self.name, "event": "host_key_not_persisted"},
                )
                if not runtime.is_file():
                    self._generate_key(key_type, runtime)
                sources[key_type] = "temporary"

        if "temporary" in sources.values():
            self.key_source = "temporary"
            logger.warning(
                "Some host keys are temporary (fingerprint will change on restart)",
                extra={"service": self.name, "event": "host_keys_temporary", "metadata": sources},
            )
        elif "generated" in sources.values():
            self.key_source = "generated"
            logger.info(
                f"Generated and persisted missing host keys in {self.identity_dir}",
                extra={"service": self.name, "event": "host_keys_generated", "metadata": sources},
            )
        else:
            self.key_source = "persistent"
            logger.info(
                f"Using persistent host keys from {self.identity_dir}",
                extra={"service": self.name, "event": "host_keys_persistent"},
            )
        return self.key_source

    def _generate_key(self, key_type: str, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        public = path.with_name(path.name + ".pub")
        if public.exists():
            public.unlink()
        self.runner.run(
            ["ssh-keygen", "-t", key_type, "-f", str(path), "-N", "", "-q"],
            capture=True,
        )
        if path.is_file():
            os.chmod(path, 0o600)
        if public.is_file():
            os.chmod(public, 0o644)

    def _install_key(self, source: Path, target: Path) -> None:
        if target.is_symlink():
            target.unlink()
        shutil.copyfile(source, target)
        os.chmod(target, 0o600)

        public = source.with_name(source.name + ".pub")
        if public.is_file():
            public_target = target.with_name(target.name + ".pub")
            if public_target.is_symlink():
                public_target.unlink()
            shutil.copyfile(public, public_target)
            os.chmod(public_target, 0o644)

    def render_config(self) -> str:
        """Render the daemon config from the fixed template and write it."""
        text = CONFIG_TEMPLATE.format(
            ports="\n".join(f"Port {port}" for port in self.ports),
            host_keys="\n".join(f"HostKey {self._runtime_key(t)}" for t in self.key_types),
            authorized_keys=self.authorized_keys,
            sftp_server=self.config.get("sftp_server", "/usr/lib/openssh/sftp-server"),
        )
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self.config_path.write_text(text)
        return text

    def preflight(self) -> Optional[str]:
        """Validate the written config; return the first error line or None."""
        try:
            result = self.runner.run([self.daemon, "-t", "-f", str(self.config_path)], check=False, timeout=10)
        except CommandError as e:
            return str(e)

        if result.returncode == 0:
            return None
        output = (result.stderr or "") + (result.stdout or "")
        lines = [line.strip() for line in output.splitlines() if line.strip()]
        return lines[0] if lines else f"exit code {result.returncode}"

    def repair(self) -> None:
        """Re-provision key files with corrected permissions."""
        logger.info("Repairing host key files", extra={"service": self.name, "event": "repair"})
        for key_type in self.key_types:
            runtime = self._runtime_key(key_type)
            if runtime.is_symlink():
                runtime.unlink()
            persistent = self._persistent_key(key_type)
            if persistent.is_file():
                self._install_key(persistent, runtime)
            elif runtime.is_file():
                os.chmod(runtime, 0o600)
                public = runtime.with_name(runtime.name + ".pub")
                if public.is_file():
                    os.chmod(public, 0o644)
        if self.authorized_keys.is_file():
            os.chmod(self.authorized_keys, 0o600)

    def authorized_key_count(self) -> int:
        if not self.authorized_keys.is_file():
            return 0
        try:
            lines = self.authorized_keys.read_text().splitlines()
        except OSError:
            return 0
        return sum(1 for line in lines if line.startswith("ssh-"))

    def _ensure_authorized_keys(self, report: ServiceReport) -> None:
        if self.authorized_keys.is_file():
            os.chmod(self.authorized_keys, 0o600)
            count = self.authorized_key_count()
            report.details["authorized_keys"] = count
            logger.info(
                f"Authorized keys: {count} found in {self.authorized_keys}",
                extra={"service": self.name, "event": "authorized_keys"},
            )
            return

        self.authorized_keys.parent.mkdir(parents=True, exist_ok=True)
        self.authorized_keys.touch(mode=0o600)
        report.details["authorized_keys"] = 0
        report.messages.append("No SSH keys configured")
        report.actions.append(f"echo 'ssh-ed25519 YOUR_KEY' >> {self.authorized_keys}")
        logger.warning("No SSH keys configured", extra={"service": self.name, "event": "authorized_keys_missing"})

    def start(self) -> bool:
        try:
            result = self.runner.run([self.daemon, "-f", str(self.config_path)], check=False, timeout=30)
        except CommandError as e:
            self.error_log.write_text(str(e) + "\n")
            return False
        if result.returncode != 0:
            self.error_log.write_text(result.stderr or "")
            return False
        return True

    def bring_up(self) -> ServiceReport:
        """Start the daemon with one repair attempt. Never raises."""
        report = ServiceReport(name=self.name, details={"ports": self.ports})

        try:
            if self.runner.is_process_running(self.process_name):
                report.phase = ServicePhase.RUNNING
                report.details["authorized_keys"] = self.authorized_key_count()
                report.messages.append(f"Already running (ports {', '.join(map(str, self.ports))})")
                logger.info("sshd already running", extra={"service": self.name, "event": "already_running"})
                return report

            if not (Path(self.daemon).exists() or self.runner.which(self.daemon)):
                report.installed = False
                report.messages.append("Not installed")
                return report

            self._ensure_authorized_keys(report)
            report.details["host_keys"] = self.ensure_host_keys()
            self.render_config()

            error = self.preflight()
            if error:
                logger.warning(
                    f"Config validation failed: {error}; repairing once",
                    extra={"service": self.name, "event": "preflight_failed"},
                )
                self.repair()
                error = self.preflight()

            if error:
                report.phase = ServicePhase.DEGRADED
                report.errors.append(f"Configuration validation failed: {error}")
                report.actions.append(f"Check: tail -20 {self.error_log}")
                logger.error(
                    f"SSH setup cannot continue: {error}",
                    extra={"service": self.name, "event": "preflight_failed_final"},
                )
                return report

            if self.start():
                report.phase = ServicePhase.RUNNING
                report.messages.append(
                    f"Listening on ports {' and '.join(map(str, self.ports))} (key auth only)"
                )
                logger.info("sshd started", extra={"service": self.name, "event": "started"})
            else:
                report.phase = ServicePhase.DEGRADED
                report.errors.append("SSH failed to start")
                report.actions.append(f"Check: tail -20 {self.error_log}")
                logger.error("SSH failed to start", extra={"service": self.name, "event": "start_failed"})

        except Exception as e:
            report.phase = ServicePhase.DEGRADED
            report.errors.append(str(e))
            report.actions.append(f"Check: tail -20 {self.error_log}")
            logger.error(f"SSH bring-up failed: {e}", extra={"service": self.name, "event": "bring_up_failed"})

        return report
