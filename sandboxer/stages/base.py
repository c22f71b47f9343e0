"""
Base classes for install stages.

All stages inherit from Stage and return StageResult. A stage is a named,
ordered unit of installation work; the pipeline decides whether it runs
(marker absent) and what happens after it succeeds (fragment, marker).
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from sandboxer.config import Config, StageConfig
from sandboxer.environment import EnvironmentDescriptor
from sandboxer.errors import ConfigError, TransientError
from sandboxer.fetch import Fetcher
from sandboxer.runner import CommandRunner


@dataclass
class StageResult:
    """Result of stage execution."""

    stage_name: str
    success: bool
    duration_seconds: float = 0.0
    skipped: bool = False
    marker: Optional[str] = None
    output_files: List[Path] = field(default_factory=list)
    fragment: Dict[str, str] = field(default_factory=dict)
    error_message: Optional[str] = None
    retryable: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "stage_name": self.stage_name,
            "success": self.success,
            "skipped": self.skipped,
            "marker": self.marker,
            "duration_seconds": self.duration_seconds,
            "output_files": [str(f) for f in self.output_files],
            "fragment": dict(self.fragment),
            "error_message": self.error_message,
            "retryable": self.retryable,
            "metadata": self.metadata,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StageResult":
        return cls(
            stage_name=data["stage_name"],
            success=data["success"],
            duration_seconds=data.get("duration_seconds", 0.0),
            skipped=data.get("skipped", False),
            marker=data.get("marker"),
            output_files=[Path(f) for f in data.get("output_files", [])],
            fragment=dict(data.get("fragment") or {}),
            error_message=data.get("error_message"),
            retryable=data.get("retryable", False),
            metadata=data.get("metadata", {}),
            started_at=datetime.fromisoformat(data["started_at"]) if data.get("started_at") else None,
            ended_at=datetime.fromisoformat(data["ended_at"]) if data.get("ended_at") else None,
        )


@dataclass
class StageContext:
    """Collaborators a stage action may use."""

    config: Config
    runner: CommandRunner
    fetcher: Fetcher
    descriptor: EnvironmentDescriptor
    logger: logging.Logger


class Stage(ABC):
    """
    Abstract base class for install stages.

    Each stage must implement:
    - execute(): Perform the installation work

    and may override:
    - validate(): Check prerequisites before execution
    - cleanup(): Clean up scratch files after execution
    """

    def __init__(self, config: StageConfig, ordinal: int = 0):
        """
        Initialize stage.

        Args:
            config: Stage configuration
            ordinal: Position in the install order
        """
        self.config = config
        self.name = config.name
        self.ordinal = ordinal
        self.marker_id = config.marker

    def validate(self, ctx: StageContext) -> None:
        """
        Validate stage prerequisites.

        Raises:
            Exception: If validation fails
        """
        pass

    @abstractmethod
    def execute(self, ctx: StageContext) -> StageResult:
        """
        Execute the stage.

        Returns:
            StageResult with execution details

        Raises:
            Exception: If execution fails
        """
        pass

    def cleanup(self, ctx: StageContext) -> None:
        """
        Clean up resources after stage execution.

        Override if stage needs cleanup.
        """
        pass

    def fragment(self, ctx: StageContext) -> Dict[str, str]:
        """Environment exports appended after the stage succeeds."""
        return {key: ctx.config.expand(value) for key, value in self.config.env.items()}

    def expected_outputs(self, ctx: StageContext) -> List[Path]:
        """Paths that must exist once the stage has run."""
        return [Path(ctx.config.expand(p)) for p in self.config.outputs]

    def run(self, ctx: StageContext) -> StageResult:
        """
        Run the complete stage lifecycle.

        Never raises: any exception becomes a failed StageResult.

        Returns:
            StageResult with execution details
        """
        logger = ctx.logger
        logger.info(
            f"Starting stage: {self.name}",
            extra={"stage": self.name, "event": "stage_started"},
        )

        started_at = datetime.now(timezone.utc)
        start_time = time.time()

        try:
            # Validate
            self.validate(ctx)
            logger.debug(
                f"Stage {self.name} validation passed",
                extra={"stage": self.name, "event": "validation_passed"},
            )

            # Execute
            result = self.execute(ctx)

            if result.success:
                missing = [p for p in self.expected_outputs(ctx) if not p.exists()]
                if missing:
                    result.success = False
                    result.error_message = (
                        f"expected output missing: {', '.join(str(p) for p in missing)}"
                    )
                else:
                    result.output_files.extend(self.expected_outputs(ctx))

            result.marker = self.marker_id
            result.started_at = started_at
            result.ended_at = datetime.now(timezone.utc)
            result.duration_seconds = time.time() - start_time

            if result.success:
                logger.info(
                    f"Stage {self.name} completed successfully",
                    extra={
                        "stage": self.name,
                        "event": "stage_completed",
                        "metadata": {
                            "duration_seconds": result.duration_seconds,
                            "output_files_count": len(result.output_files),
                        },
                    },
                )
            else:
                logger.error(
                    f"Stage {self.name} failed: {result.error_message}",
                    extra={
                        "stage": self.name,
                        "event": "stage_failed",
                        "metadata": {"error": result.error_message},
                    },
                )

            return result

        except Exception as e:
            duration = time.time() - start_time

            logger.error(
                f"Stage {self.name} failed with exception: {e}",
                extra={
                    "stage": self.name,
                    "event": "stage_exception",
                    "metadata": {"exception": str(e), "type": type(e).__name__},
                },
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )

            return StageResult(
                stage_name=self.name,
                success=False,
                duration_seconds=duration,
                marker=self.marker_id,
                error_message=str(e),
                retryable=isinstance(e, TransientError),
                started_at=started_at,
                ended_at=datetime.now(timezone.utc),
            )

        finally:
            try:
                self.cleanup(ctx)
            except Exception as e:
                logger.warning(
                    f"Stage {self.name} cleanup failed: {e}",
                    extra={"stage": self.name, "event": "cleanup_failed"},
                )

    def _ok(self, **metadata: Any) -> StageResult:
        return StageResult(stage_name=self.name, success=True, metadata=metadata)

    def _require(self, key: str) -> Any:
        value = self.config.get(key)
        if value in (None, "", []):
            raise ConfigError(f"Stage {self.name}: missing required setting '{key}'")
        return value

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name}, type={self.config.type})"
