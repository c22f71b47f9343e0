"""
Archive stage: download a prebuilt payload and install it.

Fetches the archive through the resilient fetch chain, extracts it, runs the
payload's own installer commands inside the extracted tree, and verifies the
declared outputs. The payload itself is opaque to sandboxer.
"""

from pathlib import Path
from typing import List, Optional

from sandboxer.errors import ConfigError
from sandboxer.fetch import archive_format, archive_name, clear_directory, download_and_extract
from sandboxer.stages.base import Stage, StageContext, StageResult


class ArchiveStage(Stage):
    """Download + extract + optional install commands."""

    def _dest(self, ctx: StageContext) -> Path:
        return Path(ctx.config.expand(self._require("dest")))

    def validate(self, ctx: StageContext) -> None:
        """Reject unknown archive formats before any download starts."""
        url = self._require("url")
        archive_format(Path(archive_name(url)))
        self._dest(ctx)

    def execute(self, ctx: StageContext) -> StageResult:
        url = self._require("url")
        dest = self._dest(ctx)

        if self.config.get("clean_dest", False):
            clear_directory(dest)

        download_and_extract(
            ctx.fetcher,
            url,
            dest,
            ctx.config.download_dir,
            sha256=self.config.get("sha256"),
        )

        commands: List[str] = self.config.get("install", []) or []
        workdir = self._workdir(ctx, dest)
        for command in commands:
            ctx.logger.info(
                f"Running installer step: {command}",
                extra={"stage": self.name, "event": "install_step", "metadata": {"cwd": str(workdir)}},
            )
            ctx.runner.shell(ctx.config.expand(command), cwd=workdir)

        if self.config.get("remove_after_install", False):
            clear_directory(dest)

        return self._ok(url=url, dest=str(dest), install_steps=len(commands))

    def _workdir(self, ctx: StageContext, dest: Path) -> Path:
        """Directory installer commands run in; may be a glob inside dest."""
        pattern: Optional[str] = self.config.get("workdir")
        if not pattern:
            return dest

        matches = sorted(dest.glob(ctx.config.expand(pattern)))
        dirs = [m for m in matches if m.is_dir()]
        if not dirs:
            raise ConfigError(f"Stage {self.name}: no directory matching '{pattern}' in {dest}")
        return dirs[0]
