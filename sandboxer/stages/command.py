"""
Command and git stages: build steps driven by shell commands.

Both run their commands with bash under ``set -euo pipefail`` so the first
failing step fails the stage. The runner they receive is already bound to
the environment accumulated by earlier stages.
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from sandboxer.errors import ConfigError
from sandboxer.fetch import clear_directory
from sandboxer.stages.base import Stage, StageContext, StageResult

DEFAULT_PACKAGE_UPDATE = "apt-get update"
DEFAULT_PACKAGE_INSTALL = "apt-get install -y --no-install-recommends {packages}"


class CommandStage(Stage):
    """
    System packages followed by arbitrary build commands.

    Settings:
        packages: Packages installed first with package_command
        package_command: Install template with a ``{packages}`` slot
        package_update: Command run once before installing (empty to skip)
        commands: Shell commands, run in order
        cwd: Working directory for commands (default: deps_root)
    """

    def execute(self, ctx: StageContext) -> StageResult:
        packages: List[str] = list(self.config.get("packages", []) or [])
        if packages:
            self._install_packages(ctx, packages)

        commands: List[str] = list(self.config.get("commands", []) or [])
        cwd = Path(ctx.config.expand(self.config.get("cwd", "{deps_root}")))
        cwd.mkdir(parents=True, exist_ok=True)

        for index, command in enumerate(commands, start=1):
            ctx.logger.info(
                f"[{index}/{len(commands)}] {command}",
                extra={"stage": self.name, "event": "command_started", "metadata": {"cwd": str(cwd)}},
            )
            ctx.runner.shell(ctx.config.expand(command), cwd=cwd)

        return self._ok(packages=packages, commands_run=len(commands))

    def _install_packages(self, ctx: StageContext, packages: List[str]) -> None:
        prefix = _privilege_prefix(ctx)
        update = self.config.get("package_update", DEFAULT_PACKAGE_UPDATE)
        template = self.config.get("package_command", DEFAULT_PACKAGE_INSTALL)
        if "{packages}" not in template:
            raise ConfigError(f"Stage {self.name}: package_command needs a {{packages}} slot")

        ctx.logger.info(
            f"Installing system packages: {' '.join(packages)}",
            extra={"stage": self.name, "event": "packages_install", "metadata": {"packages": packages}},
        )
        if update:
            ctx.runner.shell(prefix + update)
        ctx.runner.shell(prefix + template.replace("{packages}", " ".join(packages)))


def _privilege_prefix(ctx: StageContext) -> str:
    """``sudo `` when not root and sudo is available."""
    if os.geteuid() != 0 and ctx.runner.which("sudo"):
        ctx.logger.info("Using sudo for package installation")
        return "sudo "
    return ""


class GitStage(Stage):
    """
    Clone source repositories and build them.

    Each entry of ``repos`` is cloned shallowly (with submodules) into a
    scratch directory, built with its ``build`` commands run from the
    checkout, and the checkout is removed afterwards.
    """

    def _repos(self) -> List[Dict[str, Any]]:
        repos = self.config.get("repos")
        if repos is None and self.config.get("url"):
            repos = [{"name": self.name, **self.config.extra}]
        if not repos:
            raise ConfigError(f"Stage {self.name}: missing required setting 'repos'")
        for repo in repos:
            if not isinstance(repo, dict) or not repo.get("url"):
                raise ConfigError(f"Stage {self.name}: every repo needs a 'url'")
        return repos

    def _scratch(self, ctx: StageContext, repo: Dict[str, Any]) -> Path:
        name = repo.get("name") or Path(repo["url"].rstrip("/")).stem
        return ctx.config.download_dir / name

    def validate(self, ctx: StageContext) -> None:
        self._repos()
        if not ctx.runner.which("git"):
            raise ConfigError(f"Stage {self.name}: git is not installed")

    def execute(self, ctx: StageContext) -> StageResult:
        built = []
        for repo in self._repos():
            checkout = self._scratch(ctx, repo)
            clear_directory(checkout)
            checkout.parent.mkdir(parents=True, exist_ok=True)

            clone = ["git", "clone", "--depth", "1", "--recursive"]
            branch: Optional[str] = repo.get("branch")
            if branch:
                clone += ["--branch", branch]
            ctx.logger.info(
                f"Cloning {repo['url']}",
                extra={"stage": self.name, "event": "git_clone", "metadata": {"dest": str(checkout)}},
            )
            ctx.runner.run(clone + [repo["url"], str(checkout)], capture=True)

            for command in repo.get("build", []) or []:
                ctx.logger.info(
                    f"{checkout.name}: {command}",
                    extra={"stage": self.name, "event": "build_step"},
                )
                ctx.runner.shell(ctx.config.expand(command), cwd=checkout)

            if repo.get("keep_checkout", False) is not True:
                clear_directory(checkout)
            built.append(checkout.name)

        return self._ok(repos=built)

    def cleanup(self, ctx: StageContext) -> None:
        """Remove checkouts left behind by a failed build."""
        try:
            repos = self._repos()
        except ConfigError:
            return
        for repo in repos:
            if repo.get("keep_checkout", False) is not True:
                clear_directory(self._scratch(ctx, repo))
