"""
Identity stage: persistent runtime directories and SSH identity material.

Host keys live on the volume so a machine keeps the same SSH fingerprint
across container restarts. Existing keys are never regenerated.
"""

import os
import shutil
from pathlib import Path
from typing import List, Optional

from sandboxer.stages.base import Stage, StageContext, StageResult

DEFAULT_KEY_TYPES = ["rsa", "ed25519", "ecdsa"]


def host_key_path(identity_dir: Path, key_type: str) -> Path:
    return identity_dir / f"ssh_host_{key_type}_key"


class IdentityStage(Stage):
    """
    Runtime directories, IDE defaults, authorized keys and SSH host keys.

    Settings:
        directories: Runtime directories to create
        files: Mapping of path to literal content (IDE settings and similar)
        identity_dir: Where SSH material persists (default {workspace_root}/.ssh)
        host_key_types: Key algorithms to generate when missing
        authorized_keys: Candidate source files; the first that exists is installed
    """

    def _identity_dir(self, ctx: StageContext) -> Path:
        return Path(ctx.config.expand(self.config.get("identity_dir", "{workspace_root}/.ssh")))

    def execute(self, ctx: StageContext) -> StageResult:
        directories = [Path(ctx.config.expand(d)) for d in self.config.get("directories", []) or []]
        for directory in directories:
            directory.mkdir(parents=True, exist_ok=True)
        ctx.logger.info(
            f"Runtime directories ready ({len(directories)})",
            extra={"stage": self.name, "event": "runtime_dirs_ready"},
        )

        for raw_path, content in (self.config.get("files") or {}).items():
            path = Path(ctx.config.expand(raw_path))
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content if content.endswith("\n") else content + "\n")

        identity_dir = self._identity_dir(ctx)
        identity_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(identity_dir, 0o700)

        installed_keys = self._install_authorized_keys(ctx, identity_dir)
        generated = self._ensure_host_keys(ctx, identity_dir)
        self._tighten(ctx, identity_dir)

        return self._ok(
            directories=len(directories),
            authorized_keys=str(installed_keys) if installed_keys else None,
            host_keys_generated=generated,
        )

    def _install_authorized_keys(self, ctx: StageContext, identity_dir: Path) -> Optional[Path]:
        target = identity_dir / "authorized_keys"
        for candidate in self.config.get("authorized_keys", []) or []:
            source = Path(ctx.config.expand(candidate))
            if source.is_file():
                shutil.copyfile(source, target)
                os.chmod(target, 0o600)
                ctx.logger.info(
                    f"Installed authorized_keys from {source}",
                    extra={"stage": self.name, "event": "authorized_keys_installed"},
                )
                return target

        ctx.logger.warning(
            "No authorized_keys file found - SSH will require manual key setup",
            extra={"stage": self.name, "event": "authorized_keys_missing"},
        )
        return None

    def _ensure_host_keys(self, ctx: StageContext, identity_dir: Path) -> List[str]:
        generated = []
        for key_type in self.config.get("host_key_types", DEFAULT_KEY_TYPES):
            key_path = host_key_path(identity_dir, key_type)
            if key_path.exists():
                continue
            ctx.runner.run(
                ["ssh-keygen", "-t", key_type, "-f", str(key_path), "-N", "", "-q"],
                capture=True,
            )
            generated.append(key_type)

        if generated:
            ctx.logger.info(
                f"Generated SSH host keys: {', '.join(generated)}",
                extra={"stage": self.name, "event": "host_keys_generated"},
            )
        else:
            ctx.logger.info("SSH host keys already exist", extra={"stage": self.name, "event": "host_keys_present"})
        return generated

    def _tighten(self, ctx: StageContext, identity_dir: Path) -> None:
        """Root-owned, owner-only SSH material; failures are tolerated."""
        for path in identity_dir.iterdir():
            try:
                if os.geteuid() == 0:
                    os.chown(path, 0, 0)
                if path.name.endswith(".pub"):
                    os.chmod(path, 0o644)
                elif path.is_file():
                    os.chmod(path, 0o600)
            except OSError as e:
                ctx.logger.warning(
                    f"Could not tighten permissions on {path}: {e}",
                    extra={"stage": self.name, "event": "permissions_skipped"},
                )
