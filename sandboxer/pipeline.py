"""
Install pipeline orchestrator for sandboxer.

Runs the configured stages in their fixed order against the persistent
volume. A stage whose marker exists is skipped; the first failure aborts the
run and leaves that stage's marker absent, so the next invocation resumes
exactly there. After a stage succeeds its environment fragment is appended
and only then is its marker written.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from sandboxer.config import Config
from sandboxer.environment import EnvironmentDescriptor
from sandboxer.errors import ConfigError, StageError
from sandboxer.fetch import Fetcher
from sandboxer.markers import SETUP_COMPLETE, MarkerStore
from sandboxer.runner import CommandRunner
from sandboxer.stages import Stage, StageContext, StageResult, build_stage
from sandboxer.utils import (
    format_duration,
    print_banner,
    print_error,
    print_info,
    print_success,
)

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    """Result of one install run."""

    success: bool
    started_at: datetime
    ended_at: datetime
    duration_seconds: float
    stages: Dict[str, StageResult] = field(default_factory=dict)
    failed_stage: Optional[str] = None
    error_message: Optional[str] = None
    retryable: bool = False

    def to_dict(self) -> Dict:
        """Convert to dictionary for serialization."""
        return {
            "success": self.success,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat(),
            "duration_seconds": self.duration_seconds,
            "stages": {name: result.to_dict() for name, result in self.stages.items()},
            "failed_stage": self.failed_stage,
            "error_message": self.error_message,
            "retryable": self.retryable,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "PipelineResult":
        return cls(
            success=data["success"],
            started_at=datetime.fromisoformat(data["started_at"]),
            ended_at=datetime.fromisoformat(data["ended_at"]),
            duration_seconds=data["duration_seconds"],
            stages={
                name: StageResult.from_dict(result)
                for name, result in (data.get("stages") or {}).items()
            },
            failed_stage=data.get("failed_stage"),
            error_message=data.get("error_message"),
            retryable=data.get("retryable", False),
        )


@dataclass
class StageStatus:
    """Completion state of one configured stage."""

    name: str
    marker: str
    enabled: bool
    completed_at: Optional[datetime] = None

    @property
    def complete(self) -> bool:
        return self.completed_at is not None


@dataclass
class PipelineStatus:
    """Marker state of every stage plus the last recorded run."""

    stages: List[StageStatus]
    setup_completed_at: Optional[datetime] = None
    last_run: Optional[PipelineResult] = None

    @property
    def complete(self) -> bool:
        return all(s.complete for s in self.stages if s.enabled)


class Pipeline:
    """
    Install pipeline orchestrator.

    Args:
        config: Sandbox configuration
        runner: Command runner (default: a fresh CommandRunner)
        fetcher: Downloader (default: built from the ``fetch`` section per stage)
        markers: Marker store (default: config.marker_dir)
        descriptor: Environment descriptor (default: loaded from the volume)
    """

    def __init__(
        self,
        config: Config,
        runner: Optional[CommandRunner] = None,
        fetcher: Optional[Fetcher] = None,
        markers: Optional[MarkerStore] = None,
        descriptor: Optional[EnvironmentDescriptor] = None,
    ):
        self.config = config
        self.runner = runner or CommandRunner()
        self.fetcher = fetcher
        self.markers = markers or MarkerStore(config.marker_dir)
        self.descriptor = descriptor

    def stages(self) -> List[Stage]:
        """Enabled stages in declared order."""
        return [
            build_stage(stage_config, ordinal)
            for ordinal, stage_config in enumerate(self.config.get_enabled_stages())
        ]

    def validate(self) -> None:
        """
        Validate configuration and stage construction.

        Raises:
            ConfigError: If validation fails
        """
        self.config.validate()
        for stage in self.stages():
            logger.debug(f"Stage {stage.name} ({stage.config.type}) constructed")

    def _load_descriptor(self) -> EnvironmentDescriptor:
        if self.descriptor is None:
            self.descriptor = EnvironmentDescriptor.load(
                self.config.fragments_file, self.config.env_file
            )
        return self.descriptor

    def _context(self, descriptor: EnvironmentDescriptor) -> StageContext:
        # Bound per stage so each one sees every fragment appended before it
        runner = self.runner.with_env(descriptor.environ())
        fetcher = self.fetcher or Fetcher.from_config(runner, self.config.fetch)
        return StageContext(
            config=self.config,
            runner=runner,
            fetcher=fetcher,
            descriptor=descriptor,
            logger=logging.getLogger("sandboxer.stages"),
        )

    def _select(self, only: Optional[str]) -> List[Stage]:
        stages = self.stages()
        if only is None:
            return stages
        selected = [stage for stage in stages if stage.name == only]
        if not selected:
            raise ConfigError(
                f"Unknown or disabled stage '{only}' "
                f"(available: {', '.join(s.name for s in stages)})"
            )
        return selected

    def run(self, only: Optional[str] = None, force: bool = False) -> PipelineResult:
        """
        Run install stages.

        Args:
            only: Run just this stage
            force: Ignore completion markers of the selected stages

        Returns:
            PipelineResult with execution details
        """
        started_at = datetime.now(timezone.utc)
        start_time = time.time()

        logger.info(
            f"Starting setup: {self.config.name} v{self.config.version}",
            extra={
                "event": "pipeline_started",
                "metadata": {"only": only, "force": force},
            },
        )
        print_banner(f"{self.config.name} v{self.config.version}")

        stage_results: Dict[str, StageResult] = {}

        try:
            selected = self._select(only)
            descriptor = self._load_descriptor()
            self.config.deps_root.mkdir(parents=True, exist_ok=True)

            for stage in selected:
                if not force and self.markers.is_complete(stage.marker_id):
                    completed_at = self.markers.completed_at(stage.marker_id)
                    logger.info(
                        f"Stage {stage.name} already complete, skipping",
                        extra={
                            "stage": stage.name,
                            "event": "stage_skipped",
                            "metadata": {
                                "completed_at": completed_at.isoformat() if completed_at else None
                            },
                        },
                    )
                    print_info(f"{stage.name}: already installed")
                    stage_results[stage.name] = StageResult(
                        stage_name=stage.name,
                        success=True,
                        skipped=True,
                        marker=stage.marker_id,
                    )
                    continue

                result = stage.run(self._context(descriptor))
                stage_results[stage.name] = result

                if result.success:
                    result = self._commit(stage, result, descriptor)
                    stage_results[stage.name] = result

                if not result.success:
                    error = StageError(stage.name, result.error_message or "unknown error")
                    print_error(f"{stage.name}: {result.error_message}")
                    logger.error(
                        f"Setup failed at stage {stage.name}",
                        extra={
                            "event": "pipeline_failed",
                            "stage": stage.name,
                            "metadata": {"error": result.error_message, "retryable": result.retryable},
                        },
                    )
                    return self._finish(
                        False,
                        started_at,
                        start_time,
                        stage_results,
                        failed_stage=error.stage_name,
                        error_message=str(error),
                        retryable=result.retryable,
                    )

                print_success(f"{stage.name}: installed in {format_duration(result.duration_seconds)}")

            if all(self.markers.is_complete(stage.marker_id) for stage in self.stages()):
                self.markers.mark_complete(SETUP_COMPLETE)

            duration = time.time() - start_time
            print_success(f"Setup completed successfully in {format_duration(duration)}")
            logger.info(
                "Setup completed successfully",
                extra={"event": "pipeline_completed", "metadata": {"duration_seconds": duration}},
            )
            return self._finish(True, started_at, start_time, stage_results)

        except Exception as e:
            print_error(f"Setup failed: {e}")
            logger.error(
                f"Setup failed with exception: {e}",
                extra={"event": "pipeline_exception", "metadata": {"exception": str(e)}},
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            return self._finish(False, started_at, start_time, stage_results, error_message=str(e))

    def _commit(
        self, stage: Stage, result: StageResult, descriptor: EnvironmentDescriptor
    ) -> StageResult:
        """Append the stage's fragment, then write its marker."""
        try:
            ctx = self._context(descriptor)
            fragment = stage.fragment(ctx)
            if fragment:
                descriptor.append_fragment(stage.name, fragment)
            result.fragment = fragment
            self.markers.mark_complete(stage.marker_id)
        except Exception as e:
            result.success = False
            result.error_message = f"could not record completion: {e}"
        return result

    def _finish(
        self,
        success: bool,
        started_at: datetime,
        start_time: float,
        stage_results: Dict[str, StageResult],
        failed_stage: Optional[str] = None,
        error_message: Optional[str] = None,
        retryable: bool = False,
    ) -> PipelineResult:
        result = PipelineResult(
            success=success,
            started_at=started_at,
            ended_at=datetime.now(timezone.utc),
            duration_seconds=time.time() - start_time,
            stages=stage_results,
            failed_stage=failed_stage,
            error_message=error_message,
            retryable=retryable,
        )
        self._save_state(result)
        return result

    def status(self) -> PipelineStatus:
        """
        Get per-stage completion and the last recorded run.

        Returns:
            PipelineStatus for every configured stage (enabled or not)
        """
        stages = [
            StageStatus(
                name=name,
                marker=stage_config.marker,
                enabled=bool(stage_config.enabled),
                completed_at=self.markers.completed_at(stage_config.marker),
            )
            for name, stage_config in self.config.stages.items()
        ]
        return PipelineStatus(
            stages=stages,
            setup_completed_at=self.markers.completed_at(SETUP_COMPLETE),
            last_run=self._load_state(),
        )

    def _load_state(self) -> Optional[PipelineResult]:
        state_file = self._get_state_file()
        if not state_file.exists():
            return None

        try:
            with open(state_file, "r") as f:
                return PipelineResult.from_dict(json.load(f))
        except (OSError, ValueError, KeyError) as e:
            logger.warning(f"Could not load setup state: {e}")
            return None

    def _save_state(self, result: PipelineResult) -> None:
        """
        Save the run summary to disk.

        Args:
            result: Pipeline result to save
        """
        state_file = self._get_state_file()

        try:
            state_file.parent.mkdir(parents=True, exist_ok=True)
            with open(state_file, "w") as f:
                json.dump(result.to_dict(), f, indent=2)

            logger.debug(
                f"Saved setup state to {state_file}",
                extra={"event": "state_saved", "metadata": {"file": str(state_file)}},
            )

        except OSError as e:
            logger.warning(
                f"Could not save setup state: {e}",
                extra={"event": "state_save_failed", "metadata": {"error": str(e)}},
            )

    def _get_state_file(self) -> Path:
        """Get path to the last-run state file."""
        return self.config.get_state_file()
