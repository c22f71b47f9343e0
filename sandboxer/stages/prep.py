"""
Prep stage: lay out the volume before anything is installed.

Creates the standard directory structure, configures the compiler cache and
reports which build tools are present. Later stages assume this layout.
"""

import os
from pathlib import Path
from typing import List

from sandboxer.stages.base import Stage, StageContext, StageResult

DEFAULT_DIRECTORIES = [
    "{deps_root}/bin",
    "{deps_root}/lib",
    "{deps_root}/include",
    "{deps_root}/share",
    "{marker_dir}",
]

CACHED_COMPILERS = ["gcc", "g++", "cc", "c++", "nvc++", "nvcc"]


class PrepStage(Stage):
    """Directory layout, compiler cache, build tool report."""

    def _directories(self, ctx: StageContext) -> List[Path]:
        configured = self.config.get("directories") or DEFAULT_DIRECTORIES
        return [Path(ctx.config.expand(d)) for d in configured]

    def execute(self, ctx: StageContext) -> StageResult:
        created = []
        for directory in self._directories(ctx):
            if not directory.exists():
                created.append(directory)
            directory.mkdir(parents=True, exist_ok=True)

        ctx.logger.info(
            f"Directory structure ready ({len(created)} created)",
            extra={
                "stage": self.name,
                "event": "directories_ready",
                "metadata": {"created": [str(d) for d in created]},
            },
        )

        cache = self.config.get("ccache") or {}
        cache_dir = None
        if cache:
            cache_dir = self._configure_cache(ctx, cache)

        missing_tools = self._report_tools(ctx)

        return self._ok(
            directories_created=len(created),
            cache_dir=str(cache_dir) if cache_dir else None,
            missing_tools=missing_tools,
        )

    def _configure_cache(self, ctx: StageContext, cache: dict) -> Path:
        cache_dir = Path(ctx.config.expand(cache.get("dir", "{workspace_root}/.ccache")))
        cache_dir.mkdir(parents=True, exist_ok=True)

        max_size = cache.get("max_size", "10G")
        (cache_dir / "ccache.conf").write_text(
            f"max_size = {max_size}\n"
            "compression = true\n"
            "compiler_check = content\n"
            "hash_dir = false\n"
        )

        ccache = ctx.runner.which("ccache")
        if not ccache:
            ctx.logger.warning(
                "ccache not found - builds will be slower",
                extra={"stage": self.name, "event": "ccache_missing"},
            )
            return cache_dir

        bin_dir = Path(ctx.config.expand(cache.get("bin_dir", "{deps_root}/bin")))
        bin_dir.mkdir(parents=True, exist_ok=True)
        for compiler in cache.get("compilers", CACHED_COMPILERS):
            link = bin_dir / compiler
            if link.is_symlink() or link.exists():
                continue
            try:
                os.symlink(ccache, link)
            except OSError as e:
                ctx.logger.warning(
                    f"Could not link {compiler} to ccache: {e}",
                    extra={"stage": self.name, "event": "ccache_link_failed"},
                )

        ctx.logger.info(
            f"ccache configured ({max_size}) with compiler symlinks",
            extra={"stage": self.name, "event": "ccache_configured"},
        )
        return cache_dir

    def _report_tools(self, ctx: StageContext) -> List[str]:
        missing = []
        for tool in self.config.get("tools", []):
            location = ctx.runner.which(tool)
            if location:
                ctx.logger.info(f"{tool}: {location}", extra={"stage": self.name, "event": "tool_found"})
            else:
                missing.append(tool)
                ctx.logger.warning(
                    f"{tool} not found - some stages may fail",
                    extra={"stage": self.name, "event": "tool_missing"},
                )
        return missing
