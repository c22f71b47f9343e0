"""
Marker store: persisted completion records for install stages.

A marker is a file named after the stage's marker id inside the marker
directory; its content is the completion timestamp. Presence means the
stage completed and its side effects exist on the volume. Markers are only
written after a stage succeeds and are never removed automatically.
"""

import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

from sandboxer.config import MARKER_ID_PATTERN
from sandboxer.errors import ConfigError

logger = logging.getLogger(__name__)

SETUP_COMPLETE = "setup-complete"


class MarkerStore:
    """Directory of stage completion markers."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def _path(self, stage_id: str) -> Path:
        if not MARKER_ID_PATTERN.match(stage_id or ""):
            raise ConfigError(f"Invalid marker id: {stage_id!r}")
        return self.directory / stage_id

    def is_complete(self, stage_id: str) -> bool:
        """Check whether a stage has a completion marker."""
        return self._path(stage_id).is_file()

    def mark_complete(self, stage_id: str, when: Optional[datetime] = None) -> Path:
        """
        Record that a stage completed.

        The marker is written to a temporary file and renamed into place, so
        a crash never leaves a half-written marker behind.

        Args:
            stage_id: Marker id
            when: Completion time (default: now, UTC)

        Returns:
            Path to the marker file
        """
        path = self._path(stage_id)
        self.directory.mkdir(parents=True, exist_ok=True)
        stamp = (when or datetime.now(timezone.utc)).isoformat()

        fd, tmp_name = tempfile.mkstemp(prefix=f".{stage_id}.", dir=self.directory)
        try:
            with os.fdopen(fd, "w") as f:
                f.write(stamp + "\n")
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        logger.info(
            f"Marked {stage_id} as installed",
            extra={"event": "marker_written", "metadata": {"marker": stage_id}},
        )
        return path

    def completed_at(self, stage_id: str) -> Optional[datetime]:
        """Get the completion time of a stage, if it completed."""
        path = self._path(stage_id)
        if not path.is_file():
            return None

        text = path.read_text().strip()
        try:
            return datetime.fromisoformat(text)
        except ValueError:
            # Markers written by hand or by older tooling hold free-form dates
            return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)

    def completed(self) -> Dict[str, Optional[datetime]]:
        """Get all markers present, sorted by id."""
        if not self.directory.is_dir():
            return {}

        return {
            path.name: self.completed_at(path.name)
            for path in sorted(self.directory.iterdir())
            if path.is_file() and MARKER_ID_PATTERN.match(path.name) and not path.name.startswith(".")
        }

    def clear(self, stage_id: str) -> bool:
        """
        Remove a marker so the stage re-runs next time.

        Only operators call this (``sandboxer reset``); the pipeline never does.

        Returns:
            True if a marker was removed
        """
        path = self._path(stage_id)
        if not path.exists():
            return False
        path.unlink()
        logger.info(
            f"Removed marker {stage_id}",
            extra={"event": "marker_cleared", "metadata": {"marker": stage_id}},
        )
        return True

    def __repr__(self) -> str:
        return f"MarkerStore(directory={self.directory})"
