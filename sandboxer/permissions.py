"""
Ownership reconciliation for the persistent volume.

Files written by root during setup must stay usable by the development user.
Repair is best effort: a single unchangeable file (network volumes often
refuse chown) is counted and logged, never fatal.
"""

import logging
import os
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, List, Sequence

logger = logging.getLogger(__name__)

# Owner bits only: identity and credential files under the volume stay private
DEFAULT_FILE_MODE = stat.S_IRUSR | stat.S_IWUSR
DEFAULT_DIR_MODE = stat.S_IRWXU
SHARED_DIR_MODE = 0o755


@dataclass
class OwnershipReport:
    """Counts from one reconciliation pass."""

    root: Path
    checked: int = 0
    skipped: int = 0
    changed: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    def merge(self, other: "OwnershipReport") -> "OwnershipReport":
        self.checked += other.checked
        self.skipped += other.skipped
        self.changed += other.changed
        self.failed += other.failed
        self.errors.extend(other.errors)
        return self

    def summary(self) -> str:
        return (
            f"{self.root}: {self.checked} checked, {self.changed} changed, "
            f"{self.skipped} skipped, {self.failed} failed"
        )


def _repair(
    path: Path,
    uid: int,
    gid: int,
    file_mode: int,
    dir_mode: int,
    chown: Callable,
    report: OwnershipReport,
) -> None:
    report.checked += 1
    try:
        st = os.lstat(path)
        if stat.S_ISLNK(st.st_mode):
            # lchown only; never follow the link out of the tree
            if (st.st_uid, st.st_gid) != (uid, gid):
                chown(path, uid, gid, follow_symlinks=False)
                report.changed += 1
            return

        changed = False
        if (st.st_uid, st.st_gid) != (uid, gid):
            chown(path, uid, gid)
            changed = True

        wanted = dir_mode if stat.S_ISDIR(st.st_mode) else file_mode
        current = stat.S_IMODE(st.st_mode)
        if current | wanted != current:
            os.chmod(path, current | wanted)
            changed = True

        if changed:
            report.changed += 1
    except OSError as e:
        report.failed += 1
        report.errors.append(f"{path}: {e}")
        logger.debug(f"Could not repair {path}: {e}")


def _walk(
    path: Path,
    uid: int,
    gid: int,
    file_mode: int,
    dir_mode: int,
    chown: Callable,
    report: OwnershipReport,
) -> None:
    _repair(path, uid, gid, file_mode, dir_mode, chown, report)
    if path.is_symlink() or not path.is_dir():
        return

    for dirpath, dirnames, filenames in os.walk(path, followlinks=False, onerror=None):
        for name in dirnames + filenames:
            _repair(Path(dirpath) / name, uid, gid, file_mode, dir_mode, chown, report)


def reconcile_ownership(
    root: Path,
    uid: int,
    gid: int,
    file_mode: int = DEFAULT_FILE_MODE,
    dir_mode: int = DEFAULT_DIR_MODE,
    chown: Callable = os.chown,
    exclude: Sequence[str] = (),
) -> OwnershipReport:
    """
    Give root's tree to uid:gid and add owner read/write mode bits.

    Top-level entries already owned by uid:gid are skipped without descending,
    so a mostly-correct volume is cheap to re-check on every start. Mode bits
    are only ever added.

    Args:
        root: Directory to reconcile
        uid: Target owner
        gid: Target group
        file_mode: Bits added to files (default u+rw)
        dir_mode: Bits added to directories (default u+rwx)
        chown: Ownership function (injectable for tests)
        exclude: Top-level entry names left untouched

    Returns:
        OwnershipReport with counts and individual errors
    """
    root = Path(root)
    report = OwnershipReport(root=root)

    if not root.exists():
        logger.warning(
            f"Ownership root {root} does not exist",
            extra={"event": "ownership_root_missing", "metadata": {"root": str(root)}},
        )
        return report

    _repair(root, uid, gid, file_mode, dir_mode, chown, report)

    try:
        entries = sorted(root.iterdir())
    except OSError as e:
        report.failed += 1
        report.errors.append(f"{root}: {e}")
        entries = []

    for entry in entries:
        if entry.name in exclude:
            report.skipped += 1
            continue
        try:
            st = os.lstat(entry)
        except OSError as e:
            report.failed += 1
            report.errors.append(f"{entry}: {e}")
            continue
        if (st.st_uid, st.st_gid) == (uid, gid):
            report.skipped += 1
            continue
        _walk(entry, uid, gid, file_mode, dir_mode, chown, report)

    level = logging.WARNING if report.failed else logging.INFO
    logger.log(
        level,
        f"Ownership reconciled: {report.summary()}",
        extra={
            "event": "ownership_reconciled",
            "metadata": {
                "checked": report.checked,
                "changed": report.changed,
                "skipped": report.skipped,
                "failed": report.failed,
            },
        },
    )
    return report


def ensure_directory_modes(paths: Iterable[Path], mode: int = SHARED_DIR_MODE) -> int:
    """
    Add mode bits recursively to existing directories (caches, script dirs).

    Returns:
        Number of entries that could not be changed
    """
    failures = 0
    for path in paths:
        path = Path(path)
        if not path.exists():
            continue
        targets = [path] + ([p for p in path.rglob("*") if not p.is_symlink()] if path.is_dir() else [])
        for target in targets:
            try:
                current = stat.S_IMODE(target.stat().st_mode)
                if current | mode != current:
                    os.chmod(target, current | mode)
            except OSError as e:
                failures += 1
                logger.debug(f"Could not chmod {target}: {e}")
    return failures
