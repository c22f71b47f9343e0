"""
Explicit state for runtime services.

The state machine here is pure: it is fed observations (backend state and
address) and decides the next action, without touching processes or files.
Persisted files are classified once, as DURABLE (identity, must survive every
restart) or TRANSIENT (safe to delete during a clean restart).
"""

import enum
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional

import yaml

from sandboxer.utils import atomic_write_text

logger = logging.getLogger(__name__)


class BackendState(enum.Enum):
    """State reported by a service's control client."""

    UNKNOWN = "unknown"
    NEEDS_AUTH = "needs_auth"
    RUNNING = "running"

    @classmethod
    def from_status(cls, text: Optional[str]) -> "BackendState":
        """
        Map a raw status value (or a JSON status document) to a BackendState.

        Anything unrecognized, including empty or garbled output, is UNKNOWN.
        """
        if not text:
            return cls.UNKNOWN

        value = text.strip()
        if value.startswith("{"):
            try:
                value = str(json.loads(value).get("BackendState", ""))
            except (ValueError, AttributeError):
                return cls.UNKNOWN

        if value == "Running":
            return cls.RUNNING
        if value in ("NeedsLogin", "NeedsMachineAuth"):
            return cls.NEEDS_AUTH
        return cls.UNKNOWN


class ServicePhase(enum.Enum):
    """Lifecycle phase tracked by the state machine."""

    UNKNOWN = "unknown"
    STARTING = "starting"
    NEEDS_AUTH = "needs_auth"
    RUNNING = "running"
    DEGRADED = "degraded"


class Action(enum.Enum):
    """What the bring-up sequence should do next."""

    NONE = "none"
    AUTHENTICATE = "authenticate"
    UPDATE_HOSTNAME = "update_hostname"
    ENABLE_FEATURES = "enable_features"


class PathKind(enum.Enum):
    DURABLE = "durable"
    TRANSIENT = "transient"


@dataclass(frozen=True)
class PersistedPath:
    """A file a service keeps on disk, with its cleanup classification."""

    path: Path
    kind: PathKind
    description: str = ""
    glob: bool = False

    def matches(self) -> List[Path]:
        """Concrete paths this entry currently refers to."""
        if self.glob:
            return sorted(self.path.parent.glob(self.path.name))
        return [self.path] if self.path.exists() or self.path.is_symlink() else []


def transient_paths(paths: Iterable[PersistedPath]) -> List[PersistedPath]:
    return [p for p in paths if p.kind is PathKind.TRANSIENT]


def durable_paths(paths: Iterable[PersistedPath]) -> List[PersistedPath]:
    return [p for p in paths if p.kind is PathKind.DURABLE]


@dataclass
class ServiceDeclaration:
    """Desired state of one runtime service."""

    name: str
    desired: ServicePhase = ServicePhase.RUNNING
    identity_paths: List[PersistedPath] = field(default_factory=list)
    hostname: Optional[str] = None


@dataclass
class ServiceObservation:
    """One observation of a running service."""

    backend: BackendState = BackendState.UNKNOWN
    address: Optional[str] = None

    @property
    def state(self) -> ServicePhase:
        if self.address:
            return ServicePhase.RUNNING
        if self.backend is BackendState.RUNNING:
            return ServicePhase.RUNNING
        if self.backend is BackendState.NEEDS_AUTH:
            return ServicePhase.NEEDS_AUTH
        return ServicePhase.UNKNOWN


@dataclass
class StateTransitionEvent:
    service: str
    previous: ServicePhase
    current: ServicePhase
    address: Optional[str] = None
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "service": self.service,
            "previous": self.previous.value,
            "current": self.current.value,
            "address": self.address,
            "at": self.at.isoformat(),
        }


class ServiceStateMachine:
    """
    Tracks a service's phase from observations.

    Transitions are recorded only when the phase actually changes. The
    machine never guesses: an UNKNOWN observation leads to no action.
    """

    def __init__(self, name: str, initial: ServicePhase = ServicePhase.STARTING):
        self.name = name
        self.phase = initial
        self.address: Optional[str] = None
        self.history: List[StateTransitionEvent] = []

    def observe(self, observation: ServiceObservation) -> Optional[StateTransitionEvent]:
        """Feed one observation; return the transition it caused, if any."""
        current = observation.state
        if observation.address:
            self.address = observation.address

        if current == self.phase:
            return None

        event = StateTransitionEvent(
            service=self.name,
            previous=self.phase,
            current=current,
            address=observation.address,
        )
        self.phase = current
        self.history.append(event)
        return event

    def mark_degraded(self) -> Optional[StateTransitionEvent]:
        """Record that the service did not become ready in time."""
        if self.phase == ServicePhase.DEGRADED:
            return None
        event = StateTransitionEvent(self.name, self.phase, ServicePhase.DEGRADED)
        self.phase = ServicePhase.DEGRADED
        self.history.append(event)
        return event

    def next_action(self, credential_available: bool) -> Action:
        if self.phase == ServicePhase.RUNNING:
            return Action.UPDATE_HOSTNAME
        if self.phase == ServicePhase.NEEDS_AUTH and credential_available:
            return Action.AUTHENTICATE
        return Action.NONE

    def __repr__(self) -> str:
        return f"ServiceStateMachine(name={self.name}, phase={self.phase.value})"


class ReadinessLedger:
    """
    Consecutive readiness timeouts, persisted across restarts.

    The ledger file is durable but carries no identity: deleting it only
    resets the counter.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def _load(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            data = yaml.safe_load(self.path.read_text()) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Unreadable readiness ledger {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, data: dict) -> None:
        atomic_write_text(self.path, yaml.safe_dump(data, default_flow_style=False))

    @property
    def consecutive_timeouts(self) -> int:
        try:
            return int(self._load().get("consecutive_timeouts", 0))
        except (TypeError, ValueError):
            return 0

    def record_timeout(self) -> int:
        count = self.consecutive_timeouts + 1
        self._save(
            {
                "consecutive_timeouts": count,
                "last_timeout_at": datetime.now(timezone.utc).isoformat(),
            }
        )
        return count

    def record_ready(self) -> None:
        if self.consecutive_timeouts:
            self._save({"consecutive_timeouts": 0})

    def cleanup_due(self, threshold: int) -> bool:
        return threshold > 0 and self.consecutive_timeouts >= threshold


@dataclass
class ServiceReport:
    """Outcome of bringing one service up, for the final status printout."""

    name: str
    installed: bool = True
    phase: ServicePhase = ServicePhase.UNKNOWN
    address: Optional[str] = None
    hostname: Optional[str] = None
    mode: Optional[str] = None
    messages: List[str] = field(default_factory=list)
    actions: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    details: dict = field(default_factory=dict)
    state_machine: Optional[ServiceStateMachine] = None

    @property
    def current_phase(self) -> ServicePhase:
        """Live phase when a background watcher is still updating it."""
        if self.state_machine is not None:
            return self.state_machine.phase
        return self.phase

    @property
    def current_address(self) -> Optional[str]:
        if self.state_machine is not None and self.state_machine.address:
            return self.state_machine.address
        return self.address
