"""
Detached background watchers and the supervisor that owns them.

A watcher polls a service until it reports RUNNING, with a growing delay
between checks and a hard limit on total duration. It runs on a daemon
thread so bring-up can finish while authentication completes; the
supervisor is the single place those threads (and any spawned daemon
processes) are joined, cancelled, or terminated.
"""

import enum
import logging
import subprocess
import threading
import time
from typing import Callable, Dict, Iterator, List, Optional

from sandboxer.services.state import (
    BackendState,
    ServiceObservation,
    ServicePhase,
    ServiceStateMachine,
)

logger = logging.getLogger(__name__)


class BackoffSchedule:
    """
    Delays 0.5, 1, 2, 4, 8, then the ceiling forever.

    Args:
        floor: First delay in seconds
        ceiling: Largest delay in seconds
        factor: Growth factor between delays
    """

    def __init__(self, floor: float = 0.5, ceiling: float = 10.0, factor: float = 2.0):
        if floor <= 0 or ceiling < floor or factor < 1:
            raise ValueError("BackoffSchedule needs 0 < floor <= ceiling and factor >= 1")
        self.floor = floor
        self.ceiling = ceiling
        self.factor = factor

    def __iter__(self) -> Iterator[float]:
        delay = self.floor
        while True:
            yield min(delay, self.ceiling)
            delay = min(delay * self.factor, self.ceiling)


class WatchOutcome(enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class BackgroundWatcher:
    """
    Poll a service until it reaches its target phase, then run a completion hook once.

    Args:
        name: Service name (for logs)
        observe: Returns the current ServiceObservation
        on_running: Called once with the first observation in the target phase
        max_duration: Seconds before giving up
        schedule: Delay schedule (default BackoffSchedule())
        clock: Monotonic time source
        state_machine: Machine fed by every observation (default: a fresh one)
        target: Phase that counts as up (default RUNNING)
    """

    def __init__(
        self,
        name: str,
        observe: Callable[[], ServiceObservation],
        on_running: Optional[Callable[[ServiceObservation], None]] = None,
        max_duration: float = 120.0,
        schedule: Optional[BackoffSchedule] = None,
        clock: Callable[[], float] = time.monotonic,
        state_machine: Optional[ServiceStateMachine] = None,
        target: ServicePhase = ServicePhase.RUNNING,
    ):
        self.name = name
        self.observe = observe
        self.on_running = on_running
        self.max_duration = max_duration
        self.schedule = schedule or BackoffSchedule()
        self.clock = clock
        self.state_machine = state_machine or ServiceStateMachine(name)
        self.target = target
        self.outcome = WatchOutcome.PENDING
        self.last_observation: Optional[ServiceObservation] = None
        self._cancel = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def done(self) -> bool:
        return self.outcome is not WatchOutcome.PENDING

    def start(self) -> "BackgroundWatcher":
        if self._thread is not None:
            return self
        self._thread = threading.Thread(
            target=self.run, name=f"watch-{self.name}", daemon=True
        )
        self._thread.start()
        return self

    def cancel(self) -> None:
        self._cancel.set()

    def join(self, timeout: Optional[float] = None) -> WatchOutcome:
        if self._thread is not None:
            self._thread.join(timeout)
        return self.outcome

    def _observe(self) -> ServiceObservation:
        try:
            return self.observe()
        except Exception as e:
            logger.debug(f"{self.name} status check failed: {e}", extra={"service": self.name})
            return ServiceObservation(BackendState.UNKNOWN)

    def run(self) -> WatchOutcome:
        """Watch loop; also usable synchronously. Never raises."""
        started = self.clock()
        delays = iter(self.schedule)

        while not self._cancel.is_set():
            observation = self._observe()
            self.last_observation = observation

            event = self.state_machine.observe(observation)
            if event is not None:
                logger.info(
                    f"{self.name}: {event.previous.value} -> {event.current.value}",
                    extra={"service": self.name, "event": "state_transition", "metadata": event.to_dict()},
                )

            if observation.state == self.target:
                self._complete(observation)
                self.outcome = WatchOutcome.RUNNING
                return self.outcome

            remaining = self.max_duration - (self.clock() - started)
            if remaining <= 0:
                break
            self._cancel.wait(min(next(delays), remaining))

        if self._cancel.is_set():
            self.outcome = WatchOutcome.CANCELLED
            logger.info(f"{self.name} watcher cancelled", extra={"service": self.name, "event": "watch_cancelled"})
        else:
            self.outcome = WatchOutcome.TIMEOUT
            logger.warning(
                f"{self.name} not running after {self.max_duration:.0f}s (continuing in background)",
                extra={"service": self.name, "event": "watch_timeout"},
            )
        return self.outcome

    def _complete(self, observation: ServiceObservation) -> None:
        logger.info(
            f"{self.name} connected @ {observation.address or 'unknown'}",
            extra={"service": self.name, "event": "service_running", "metadata": {"address": observation.address}},
        )
        if self.on_running is None:
            return
        try:
            self.on_running(observation)
        except Exception as e:
            logger.warning(
                f"{self.name} post-connect step failed: {e}",
                extra={"service": self.name, "event": "on_running_failed"},
            )


class Supervisor:
    """Owns background watchers and spawned daemon processes."""

    def __init__(self):
        self.watchers: List[BackgroundWatcher] = []
        self.processes: Dict[str, subprocess.Popen] = {}
        self._lock = threading.Lock()

    def start_watcher(self, watcher: BackgroundWatcher) -> BackgroundWatcher:
        with self._lock:
            self.watchers.append(watcher)
        return watcher.start()

    def track_process(self, name: str, process: subprocess.Popen) -> None:
        with self._lock:
            self.processes[name] = process

    def cancel_all(self) -> None:
        for watcher in list(self.watchers):
            watcher.cancel()

    @property
    def pending(self) -> List[BackgroundWatcher]:
        """Watchers that have not reached an outcome yet."""
        return [watcher for watcher in self.watchers if not watcher.done]

    def wait(self, stop: threading.Event, poll: float = 0.5) -> bool:
        """
        Wait until every watcher is done or stop is set.

        Returns:
            True when all watchers finished, False when stop came first
        """
        while self.pending:
            if stop.wait(poll):
                return False
        return True

    def join(self, timeout: Optional[float] = None) -> Dict[str, WatchOutcome]:
        """
        Wait for every watcher.

        Args:
            timeout: Overall seconds to wait (None waits for all)
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        outcomes = {}
        for watcher in list(self.watchers):
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            outcomes[watcher.name] = watcher.join(remaining)
        return outcomes

    def teardown(self, timeout: float = 5.0) -> None:
        """Cancel and join watchers, then terminate tracked processes."""
        self.cancel_all()
        self.join(timeout)
        for name, process in list(self.processes.items()):
            if process.poll() is not None:
                continue
            logger.info(f"Stopping {name} (pid {process.pid})", extra={"event": "process_stopping"})
            process.terminate()
            try:
                process.wait(timeout)
            except subprocess.TimeoutExpired:
                process.kill()
        with self._lock:
            self.processes.clear()
