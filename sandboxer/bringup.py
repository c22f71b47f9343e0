"""
Runtime bring-up, run on every container start.

Every step is fail-soft: the container must come up even when the volume has
never been set up or a service cannot start. Problems end up in the report
with a concrete remediation line instead of aborting the sequence.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from sandboxer.config import Config
from sandboxer.environment import EnvironmentDescriptor
from sandboxer.gpu import DEFAULT_OVERRIDE_ENV, GpuArch, detect_gpu
from sandboxer.permissions import OwnershipReport, ensure_directory_modes, reconcile_ownership
from sandboxer.runner import CommandRunner
from sandboxer.services.network import NetworkIdentityService
from sandboxer.services.remote_access import RemoteAccessService
from sandboxer.services.state import ServicePhase, ServiceReport
from sandboxer.services.watcher import Supervisor

logger = logging.getLogger(__name__)


@dataclass
class BringUpReport:
    """Everything the final status printout needs."""

    ownership: List[OwnershipReport] = field(default_factory=list)
    environment_loaded: bool = False
    environment_keys: int = 0
    checks: Dict[str, bool] = field(default_factory=dict)
    gpu: Optional[GpuArch] = None
    links: List[str] = field(default_factory=list)
    services: Dict[str, ServiceReport] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    actions: List[str] = field(default_factory=list)

    def summary_lines(self) -> List[str]:
        lines = []
        if self.environment_loaded:
            lines.append(f"Environment: loaded ({self.environment_keys} variables)")
        else:
            lines.append("Environment: not initialized")
        for name, ok in self.checks.items():
            lines.append(f"  {'✓' if ok else '✗'} {name}")
        if self.gpu is not None:
            lines.append(f"GPU: {self.gpu}")

        for name, report in self.services.items():
            lines.append(_service_line(name, report))

        hints = self.connection_hints()
        if hints:
            lines.append("Connect:")
            lines.extend(f"  {hint}" for hint in hints)

        for warning in self.warnings:
            lines.append(f"Warning: {warning}")
        actions = list(self.actions)
        for report in self.services.values():
            actions.extend(report.actions)
        for action in actions:
            lines.append(f"Action: {action}")
        return lines

    def connection_hints(self) -> List[str]:
        network = self.services.get("network_identity")
        remote = self.services.get("remote_access")
        if remote is None or remote.current_phase != ServicePhase.RUNNING:
            return []
        if network is None or network.current_phase != ServicePhase.RUNNING:
            return []

        hints = []
        if network.current_address:
            hints.append(f"Direct:    ssh root@{network.current_address}")
        if network.hostname:
            hints.append(f"MagicDNS:  ssh root@{network.hostname}")
            if network.mode == "userspace":
                hints.append(f"Serve:     ssh root@{network.hostname} -p 2222")
        return hints


def _service_line(name: str, report: ServiceReport) -> str:
    if not report.installed:
        return f"{name}: not installed"
    line = f"{name}: {report.current_phase.value}"
    if report.current_address:
        line += f" @ {report.current_address}"
    extras = []
    if report.hostname:
        extras.append(report.hostname)
    if report.mode:
        extras.append(f"mode: {report.mode}")
    if "authorized_keys" in report.details:
        extras.append(f"keys: {report.details['authorized_keys']}")
    if extras:
        line += f" ({', '.join(extras)})"
    for error in report.errors:
        line += f" - {error}"
    return line


class BringUp:
    """
    Runtime bring-up coordinator.

    Args:
        config: Sandbox configuration
        runner: Command runner (default: a fresh CommandRunner)
        supervisor: Owner of background watchers and daemons
        environ: Base environment (default: os.environ)
    """

    def __init__(
        self,
        config: Config,
        runner: Optional[CommandRunner] = None,
        supervisor: Optional[Supervisor] = None,
        environ=None,
        chown: Callable = os.chown,
    ):
        self.config = config
        self.runner = runner or CommandRunner()
        self.supervisor = supervisor or Supervisor()
        self.environ = os.environ if environ is None else environ
        self.chown = chown
        self.descriptor: Optional[EnvironmentDescriptor] = None

    def _step(self, report: BringUpReport, description: str, fn: Callable) -> None:
        try:
            fn(report)
        except Exception as e:
            report.warnings.append(f"{description} failed: {e}")
            logger.error(
                f"Startup step '{description}' failed: {e}",
                extra={"event": "startup_step_failed", "metadata": {"step": description}},
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )

    def run(self) -> BringUpReport:
        """Run every startup step in order. Never raises."""
        report = BringUpReport()
        logger.info(f"Starting {self.config.name} runtime", extra={"event": "startup_started"})

        self._step(report, "ownership", self.reconcile_ownership)
        self._step(report, "mode repair", self.repair_modes)
        self._step(report, "gpu detection", self.detect_gpu_arch)
        self._step(report, "environment", self.load_environment)
        self._step(report, "tool checks", self.check_tools)
        self._step(report, "persistence links", self.create_links)
        self._step(report, "remote access", self.start_remote_access)
        self._step(report, "network identity", self.start_network_identity)

        logger.info(
            "Startup sequence complete",
            extra={
                "event": "startup_completed",
                "metadata": {
                    "services": {name: r.current_phase.value for name, r in report.services.items()},
                    "warnings": len(report.warnings),
                },
            },
        )
        return report

    def reconcile_ownership(self, report: BringUpReport) -> None:
        ownership = self.config.ownership
        if ownership.get("enabled", True) is False:
            return
        uid = int(ownership.get("uid", 1000))
        gid = int(ownership.get("gid", 1000))
        exclude = ownership.get("exclude", [".ssh"])
        for root in self.config.get_ownership_paths():
            result = reconcile_ownership(root, uid, gid, chown=self.chown, exclude=exclude)
            report.ownership.append(result)
            if result.failed:
                report.warnings.append(f"Ownership: {result.failed} entries under {root} could not be repaired")

    def repair_modes(self, report: BringUpReport) -> None:
        paths = [Path(self.config.expand(p)) for p in self.config.runtime.get("repair_modes", [])]
        ensure_directory_modes(paths)

    def detect_gpu_arch(self, report: BringUpReport) -> None:
        settings = self.config.runtime.get("gpu", {}) or {}
        if settings.get("enabled", True) is False:
            return
        arch = detect_gpu(self.runner, self.environ, settings.get("override_env", DEFAULT_OVERRIDE_ENV))
        report.gpu = arch
        if arch is None:
            report.warnings.append("GPU detection failed; builds will target multiple architectures")
            return
        if not self.config.fragments_file.exists():
            return

        descriptor = EnvironmentDescriptor.load(self.config.fragments_file, self.config.env_file)
        values = arch.fragment()
        current = descriptor.resolve(base={})
        if any(current.get(key) != value for key, value in values.items()):
            descriptor.append_fragment("gpu", values)

    def load_environment(self, report: BringUpReport) -> None:
        if not self.config.fragments_file.exists():
            report.actions.append("Run 'sandboxer setup' to initialize the environment")
            logger.error(
                f"Environment not initialized at {self.config.fragments_file}",
                extra={"event": "environment_missing"},
            )
            return

        self.descriptor = EnvironmentDescriptor.load(self.config.fragments_file, self.config.env_file)
        environ = self.descriptor.environ(self.environ)
        self.runner = self.runner.with_env(environ)
        report.environment_loaded = True
        report.environment_keys = len(self.descriptor.resolve(self.environ))
        logger.info(
            f"Environment loaded from {self.config.fragments_file}",
            extra={"event": "environment_loaded", "metadata": {"keys": report.environment_keys}},
        )

    def check_tools(self, report: BringUpReport) -> None:
        for check in self.config.runtime.get("checks", []) or []:
            name = check.get("name") or check.get("command") or check.get("path")
            if check.get("command"):
                ok = self.runner.which(check["command"]) is not None
            elif check.get("path"):
                ok = Path(self.config.expand(check["path"])).exists()
            else:
                continue
            report.checks[name] = ok
            if not ok and check.get("hint"):
                report.actions.append(f"{name}: {check['hint']}")

    def create_links(self, report: BringUpReport) -> None:
        for raw_link, raw_target in (self.config.links or {}).items():
            link = Path(os.path.expanduser(self.config.expand(raw_link)))
            target = Path(self.config.expand(raw_target))
            if not target.is_absolute():
                target = self.config.runtime_dir / target
            if _ensure_link(link, target):
                report.links.append(str(link))
            else:
                report.warnings.append(f"{link} exists and is not a link; left as is")
        if report.links:
            logger.info(
                f"Persistence links ready ({len(report.links)})",
                extra={"event": "links_ready", "metadata": {"links": report.links}},
            )

    def start_remote_access(self, report: BringUpReport) -> None:
        service_config = self.config.get_service("remote_access")
        if service_config is None or not service_config.enabled:
            return
        service = RemoteAccessService.from_config(service_config, self.runner)
        report.services[service.name] = service.bring_up()

    def start_network_identity(self, report: BringUpReport) -> None:
        service_config = self.config.get_service("network_identity")
        if service_config is None or not service_config.enabled:
            return
        service = NetworkIdentityService.from_config(
            service_config, self.runner, self.supervisor, environ=self.environ
        )
        report.services[service.name] = service.bring_up()


def _ensure_link(link: Path, target: Path) -> bool:
    """Point link at target, replacing an old link or an empty directory."""
    target.mkdir(parents=True, exist_ok=True)
    link.parent.mkdir(parents=True, exist_ok=True)

    if link.is_symlink():
        if Path(os.readlink(link)) == target:
            return True
        link.unlink()
    elif link.is_dir():
        if any(link.iterdir()):
            return False
        link.rmdir()
    elif link.exists():
        return False

    link.symlink_to(target)
    return True
