"""
Network identity service: join the private overlay network on every start.

The sequence is fail-soft end to end. Each step logs its own failure and the
bring-up moves on, so a missing credential or a slow daemon never prevents
the container from starting. Durable identity (daemon state, credential,
node id) is never deleted by the automatic cleanup path.
"""

import logging
import time
from pathlib import Path
from typing import Callable, List, Optional

from sandboxer.config import ServiceConfig
from sandboxer.errors import CommandError
from sandboxer.runner import CommandRunner
from sandboxer.services.credentials import (
    DEFAULT_CREDENTIAL_ENV,
    DEFAULT_HOSTNAME_ENV,
    DEFAULT_POD_ID_ENV,
    NODE_ID_FILE,
    Credential,
    load_credential,
    resolve_hostname,
)
from sandboxer.services.state import (
    Action,
    BackendState,
    PathKind,
    PersistedPath,
    ReadinessLedger,
    ServiceDeclaration,
    ServiceObservation,
    ServicePhase,
    ServiceReport,
    ServiceStateMachine,
    durable_paths,
    transient_paths,
)
from sandboxer.services.watcher import BackgroundWatcher, BackoffSchedule, Supervisor

logger = logging.getLogger(__name__)

STATE_FILE = "tailscaled.state"
LEDGER_FILE = "readiness.yaml"


class NetworkIdentityService:
    """
    Overlay network daemon and client.

    Args:
        declaration: Desired state and identity paths
        config: ``services.network_identity`` section
        runner: Command runner
        supervisor: Owner of the spawned daemon and the background watcher
        environ: Environment for credential and hostname lookup
        sleep: Sleep function used by the readiness poll
    """

    def __init__(
        self,
        declaration: ServiceDeclaration,
        config: ServiceConfig,
        runner: CommandRunner,
        supervisor: Optional[Supervisor] = None,
        environ=None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.declaration = declaration
        self.config = config
        self.runner = runner
        self.supervisor = supervisor or Supervisor()
        self.environ = environ
        self.sleep = sleep

        self.name = declaration.name
        self.client = config.get("client", "tailscale")
        self.daemon = config.get("daemon", "tailscaled")
        self.state_dir = config.path("state_dir", "{runtime_dir}/tailscale")
        self.socket = config.path("socket", "/run/tailscale/tailscaled.sock")
        self.tun_device = config.path("tun_device", "/dev/net/tun")
        self.credential_file = self.state_dir / config.get("credential_file", "authkey")
        self.ledger = ReadinessLedger(self.state_dir / LEDGER_FILE)
        self.state_machine = ServiceStateMachine(self.name)
        self._mode: Optional[str] = None

    @classmethod
    def from_config(
        cls,
        config: ServiceConfig,
        runner: CommandRunner,
        supervisor: Optional[Supervisor] = None,
        **kwargs,
    ) -> "NetworkIdentityService":
        state_dir = config.path("state_dir", "{runtime_dir}/tailscale")
        declaration = ServiceDeclaration(
            name=config.name,
            identity_paths=durable_paths(_persisted_paths(config, state_dir)),
            hostname=config.get("hostname"),
        )
        return cls(declaration, config, runner, supervisor, **kwargs)

    @property
    def mode(self) -> str:
        """``kernel`` with a TUN device, ``userspace`` without."""
        if self._mode is None:
            self._mode = "kernel" if self.tun_device.exists() else "userspace"
        return self._mode

    def persisted_paths(self) -> List[PersistedPath]:
        return _persisted_paths(self.config, self.state_dir)

    def is_installed(self) -> bool:
        return self.runner.which(self.daemon) is not None and self.runner.which(self.client) is not None

    def ensure_daemon(self) -> bool:
        """
        Start the daemon unless it is already running.

        Returns:
            True if a new daemon process was spawned
        """
        if self.runner.is_process_running(self.daemon):
            logger.info(f"{self.daemon} already running", extra={"service": self.name, "event": "daemon_present"})
            return False

        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.socket.parent.mkdir(parents=True, exist_ok=True)

        command = [self.daemon]
        if self.mode == "userspace":
            command.append("--tun=userspace-networking")
        command += [f"--state={self.state_dir / STATE_FILE}", f"--socket={self.socket}"]

        process = self.runner.spawn(command, log_file=self.state_dir / f"{self.daemon}.log")
        self.supervisor.track_process(self.daemon, process)
        logger.info(
            f"Started {self.daemon} ({self.mode} mode)",
            extra={"service": self.name, "event": "daemon_started", "metadata": {"mode": self.mode}},
        )
        return True

    def wait_ready(self, attempts: int = 10, interval: float = 0.5) -> bool:
        """Bounded poll until the client can talk to the daemon."""
        for attempt in range(attempts):
            try:
                result = self.runner.run([self.client, "status", "--json"], check=False, timeout=5)
                if result.returncode == 0:
                    return True
            except CommandError:
                pass
            if attempt < attempts - 1:
                self.sleep(interval)
        return False

    def observe(self) -> ServiceObservation:
        """Address first, then the reported backend state. Never raises."""
        try:
            result = self.runner.run([self.client, "ip", "-4"], check=False, timeout=2)
            lines = [line.strip() for line in (result.stdout or "").splitlines() if line.strip()]
            if result.returncode == 0 and lines:
                return ServiceObservation(BackendState.RUNNING, lines[0])
        except CommandError:
            pass

        try:
            result = self.runner.run([self.client, "status", "--json"], check=False, timeout=5)
        except CommandError:
            return ServiceObservation(BackendState.UNKNOWN)
        return ServiceObservation(BackendState.from_status(result.stdout))

    def authenticate(self, credential: Credential, hostname: str) -> None:
        """Start authentication in the background; completion is observed by the watcher."""
        logger.info(
            f"Initiating authentication (source: {credential.source})",
            extra={"service": self.name, "event": "auth_started", "metadata": {"source": credential.source}},
        )
        process = self.runner.spawn(
            [self.client, "up", f"--authkey={credential.value}", f"--hostname={hostname}"]
        )
        self.supervisor.track_process(f"{self.client}-up", process)

    def update_hostname(self, hostname: str) -> bool:
        logger.info(
            f"Already authenticated, updating hostname to {hostname}",
            extra={"service": self.name, "event": "hostname_update"},
        )
        try:
            result = self.runner.run([self.client, "up", f"--hostname={hostname}"], check=False, timeout=10)
        except CommandError as e:
            logger.warning(f"Hostname update failed: {e}", extra={"service": self.name})
            return False
        return result.returncode == 0

    def enable_features(self) -> List[str]:
        """Best-effort optional features once connected."""
        enabled = []
        if self.config.get("ssh", True):
            if self._best_effort([self.client, "set", "--ssh"]):
                enabled.append("ssh")
                logger.info("Network SSH enabled", extra={"service": self.name, "event": "feature_enabled"})

        port = self.config.get("serve_port", 2222)
        if self.mode == "userspace" and port:
            command = [self.client, "serve", "--bg", "--tcp", str(port), f"127.0.0.1:{port}"]
            if self._best_effort(command):
                enabled.append(f"serve:{port}")
                logger.info(
                    f"Serving port {port} through the overlay",
                    extra={"service": self.name, "event": "feature_enabled"},
                )
        return enabled

    def _best_effort(self, command: List[str]) -> bool:
        try:
            return self.runner.run(command, check=False, timeout=5).returncode == 0
        except CommandError as e:
            logger.debug(f"{command[1]} failed: {e}")
            return False

    def cleanup_transient_state(self) -> List[Path]:
        """
        Kill a stalled daemon and delete TRANSIENT files only.

        With ``force_state_reset`` configured the daemon state file is also
        removed; that changes the machine's network identity.

        Returns:
            Paths that were removed
        """
        if self.runner.is_process_running(self.daemon):
            self.runner.kill_process(self.daemon, signal=9)
            self.sleep(1)
            logger.info("Killed stalled daemon process", extra={"service": self.name, "event": "daemon_killed"})

        paths = self.persisted_paths()
        protected = {p for entry in durable_paths(paths) for p in entry.matches()}
        removed = []
        for entry in transient_paths(paths):
            for path in entry.matches():
                if path in protected:
                    logger.error(
                        f"Refusing to delete durable path {path}",
                        extra={"service": self.name, "event": "cleanup_refused"},
                    )
                    continue
                try:
                    path.unlink()
                    removed.append(path)
                except OSError as e:
                    logger.warning(f"Could not remove {path}: {e}", extra={"service": self.name})

        if self.config.get("force_state_reset", False) is True:
            state_file = self.state_dir / STATE_FILE
            if state_file.exists():
                state_file.unlink()
                removed.append(state_file)
                logger.warning(
                    "Daemon state removed (force_state_reset): this machine will join as a new node",
                    extra={"service": self.name, "event": "identity_reset"},
                )
        else:
            logger.info(
                f"Preserved {STATE_FILE}; only cleaned locks and socket",
                extra={"service": self.name, "event": "transient_cleaned", "metadata": {"removed": [str(p) for p in removed]}},
            )
        return removed

    def _step(self, report: ServiceReport, description: str, fn: Callable, default=None):
        try:
            return fn()
        except Exception as e:
            report.errors.append(f"{description}: {e}")
            logger.error(
                f"{self.name}: {description} failed: {e}",
                extra={"service": self.name, "event": "step_failed", "metadata": {"step": description}},
            )
            return default

    def bring_up(self) -> ServiceReport:
        """Run the full start sequence. Never raises."""
        report = ServiceReport(name=self.name, state_machine=self.state_machine)

        if not self.is_installed():
            report.installed = False
            report.messages.append("Not installed")
            logger.info(f"{self.daemon} not installed, skipping", extra={"service": self.name, "event": "not_installed"})
            return report

        report.mode = self.mode
        readiness = self.config.section("readiness")
        threshold = int(self.config.get("cleanup_after_timeouts", 2))

        if self._step(report, "readiness ledger", lambda: self.ledger.cleanup_due(threshold), False):
            report.messages.append(
                f"Daemon missed readiness {self.ledger.consecutive_timeouts} times in a row; cleaned transient state"
            )
            report.actions.append("Clean restart needed: restart the container if the network stays down")
            self._step(report, "cleanup", self.cleanup_transient_state)

        self._step(report, "start daemon", self.ensure_daemon)

        ready = self._step(
            report,
            "readiness wait",
            lambda: self.wait_ready(
                attempts=int(readiness.get("attempts", 10)),
                interval=float(readiness.get("interval", 0.5)),
            ),
            False,
        )
        if ready:
            logger.info("Daemon ready", extra={"service": self.name, "event": "daemon_ready"})
            self._step(report, "readiness ledger", self.ledger.record_ready)
        else:
            count = self._step(report, "readiness ledger", self.ledger.record_timeout, 0)
            self.state_machine.mark_degraded()
            report.messages.append("Daemon slow to start (continuing anyway)")
            logger.warning(
                "Daemon slow to start (continuing anyway)",
                extra={"service": self.name, "event": "daemon_slow", "metadata": {"consecutive_timeouts": count}},
            )

        environ = self.environ
        credential = self._step(
            report,
            "credential",
            lambda: load_credential(
                self.config.get("credential_env", DEFAULT_CREDENTIAL_ENV), self.credential_file, environ
            ),
        )
        hostname = self._step(
            report,
            "hostname",
            lambda: self.declaration.hostname or resolve_hostname(
                self.config.get("hostname_prefix", "sandbox"),
                self.state_dir,
                environ,
                hostname_env=self.config.get("hostname_env", DEFAULT_HOSTNAME_ENV),
                pod_id_env=self.config.get("pod_id_env", DEFAULT_POD_ID_ENV),
            ),
        )
        report.hostname = hostname
        if credential is not None:
            report.details["credential_source"] = credential.source

        observation = self.observe()
        event = self.state_machine.observe(observation)
        if event is not None:
            logger.info(
                f"{self.name}: {event.previous.value} -> {event.current.value}",
                extra={"service": self.name, "event": "state_transition", "metadata": event.to_dict()},
            )

        action = self.state_machine.next_action(credential is not None)
        if action is Action.AUTHENTICATE:
            self._step(report, "authenticate", lambda: self.authenticate(credential, hostname))
        elif action is Action.UPDATE_HOSTNAME and hostname:
            self._step(report, "hostname update", lambda: self.update_hostname(hostname))
        elif credential is None and self.state_machine.phase != ServicePhase.RUNNING:
            report.messages.append("No auth key provided")
            report.actions.append(
                f"Set {self.config.get('credential_env', DEFAULT_CREDENTIAL_ENV)} "
                f"or echo 'tskey-...' > {self.credential_file}"
            )
            logger.warning("No auth key provided", extra={"service": self.name, "event": "credential_missing"})

        watch = self.config.section("watcher")
        watcher = BackgroundWatcher(
            self.name,
            self.observe,
            on_running=self._on_running,
            max_duration=float(watch.get("max_duration", 120)),
            schedule=BackoffSchedule(
                floor=float(watch.get("floor", 0.5)),
                ceiling=float(watch.get("ceiling", 10)),
            ),
            state_machine=self.state_machine,
            target=self.declaration.desired,
        )
        self._step(report, "watcher", lambda: self.supervisor.start_watcher(watcher))
        report.details["watcher"] = watcher

        report.phase = self.state_machine.phase
        report.address = observation.address
        return report

    def _on_running(self, observation: ServiceObservation) -> None:
        self.ledger.record_ready()
        features = self.enable_features()
        logger.info(
            f"Connected @ {observation.address or 'unknown'} (mode: {self.mode})",
            extra={"service": self.name, "event": "connected", "metadata": {"features": features}},
        )


def _persisted_paths(config: ServiceConfig, state_dir: Path) -> List[PersistedPath]:
    socket = config.path("socket", "/run/tailscale/tailscaled.sock")
    credential_file = state_dir / config.get("credential_file", "authkey")
    return [
        PersistedPath(state_dir / STATE_FILE, PathKind.DURABLE, "daemon node identity"),
        PersistedPath(credential_file, PathKind.DURABLE, "auth credential"),
        PersistedPath(state_dir / NODE_ID_FILE, PathKind.DURABLE, "hostname node id"),
        PersistedPath(state_dir / LEDGER_FILE, PathKind.DURABLE, "readiness timeout ledger"),
        PersistedPath(state_dir / "*.lock", PathKind.TRANSIENT, "daemon lock files", glob=True),
        PersistedPath(state_dir / f"{STATE_FILE}.tmp", PathKind.TRANSIENT, "partial state write"),
        PersistedPath(socket, PathKind.TRANSIENT, "daemon control socket"),
    ]
