"""Copy stage: install files that ship with the setup bundle onto the volume."""

import os
import shutil
import stat
from pathlib import Path
from typing import Any, Dict, List

from sandboxer.errors import ConfigError
from sandboxer.stages.base import Stage, StageContext, StageResult


class CopyStage(Stage):
    """
    Copy files or trees into the dependency root.

    Settings:
        items: List of {source, target, patterns, executable, required}.
            A relative source is resolved against the config file's directory.
            Without patterns a directory is copied as a whole tree.
        symlinks: Mapping of link path to target, created after copying
    """

    def _items(self) -> List[Dict[str, Any]]:
        items = self.config.get("items")
        if not items:
            raise ConfigError(f"Stage {self.name}: missing required setting 'items'")
        return items

    def _source(self, ctx: StageContext, raw: str) -> Path:
        source = Path(os.path.expanduser(ctx.config.expand(raw)))
        if not source.is_absolute() and ctx.config.config_path is not None:
            source = Path(ctx.config.config_path).parent / source
        return source

    def execute(self, ctx: StageContext) -> StageResult:
        copied = 0
        for item in self._items():
            if "source" not in item or "target" not in item:
                raise ConfigError(f"Stage {self.name}: copy items need 'source' and 'target'")

            source = self._source(ctx, item["source"])
            target = Path(ctx.config.expand(item["target"]))

            if not source.exists():
                if item.get("required", False):
                    raise ConfigError(f"Stage {self.name}: source not found: {source}")
                ctx.logger.warning(
                    f"Nothing to copy: {source} not found",
                    extra={"stage": self.name, "event": "copy_source_missing"},
                )
                continue

            copied += self._copy(source, target, item)

        for link, link_target in (self.config.get("symlinks") or {}).items():
            self._link(ctx, Path(ctx.config.expand(link)), Path(ctx.config.expand(link_target)))

        ctx.logger.info(
            f"Installed {copied} file(s)",
            extra={"stage": self.name, "event": "copy_complete", "metadata": {"count": copied}},
        )
        return self._ok(copied=copied)

    def _copy(self, source: Path, target: Path, item: Dict[str, Any]) -> int:
        patterns = item.get("patterns")
        executable = item.get("executable", False)

        if source.is_file():
            target.mkdir(parents=True, exist_ok=True)
            files = [shutil.copy2(source, target / source.name)]
        elif not patterns:
            destination = target / source.name
            shutil.copytree(source, destination, symlinks=True, dirs_exist_ok=True)
            files = [p for p in destination.rglob("*") if p.is_file()]
        else:
            target.mkdir(parents=True, exist_ok=True)
            files = []
            for pattern in patterns:
                for match in sorted(source.glob(pattern)):
                    if match.is_file():
                        files.append(shutil.copy2(match, target / match.name))

        if executable:
            for path in files:
                mode = os.stat(path).st_mode
                os.chmod(path, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return len(files)

    def _link(self, ctx: StageContext, link: Path, target: Path) -> None:
        if not target.exists():
            ctx.logger.warning(
                f"Skipping link {link}: {target} does not exist",
                extra={"stage": self.name, "event": "link_skipped"},
            )
            return
        link.parent.mkdir(parents=True, exist_ok=True)
        if link.is_symlink():
            link.unlink()
        elif link.exists():
            ctx.logger.warning(
                f"Skipping link {link}: a real file is in the way",
                extra={"stage": self.name, "event": "link_skipped"},
            )
            return
        link.symlink_to(target)
