"""
Resilient fetch: multi-strategy downloads and archive extraction.

Strategies are tried in a fixed order and the first whose tool is installed
handles the whole download:

1. aria2c  - segmented, multi-connection (fastest on network volumes)
2. curl    - range-resuming with bounded retries and a fixed retry delay
3. wget    - simpler resuming fallback with bounded retries

A failed download never leaves a partial file behind, and a tool that claims
success without producing a non-empty file is treated as a failure.
"""

import logging
import shutil
import tarfile
import zipfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import urlparse

from sandboxer.errors import (
    ArchiveFormatError,
    CommandError,
    ConfigError,
    FetchError,
    NoFetchStrategyError,
)
from sandboxer.runner import CommandRunner
from sandboxer.utils import get_file_checksum

logger = logging.getLogger(__name__)


class FetchStrategy(ABC):
    """
    Base class for download tool adapters.

    Each strategy wraps one external downloader and knows how to build its
    command line for a (uri, destination) pair.
    """

    name: str = ""
    binary: str = ""

    def __init__(self, retries: int = 3, retry_delay: int = 5, timeout: int = 60, connections: int = 16):
        self.retries = retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.connections = connections

    def available(self, runner: CommandRunner) -> bool:
        """Check whether the underlying tool is installed."""
        return runner.which(self.binary) is not None

    @abstractmethod
    def command(self, uri: str, destination: Path) -> List[str]:
        """Build the download command line."""
        pass

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(binary={self.binary})"


class SegmentedStrategy(FetchStrategy):
    """aria2c: split the file into segments fetched over parallel connections."""

    name = "segmented"
    binary = "aria2c"

    def command(self, uri: str, destination: Path) -> List[str]:
        return [
            self.binary,
            "-x", str(self.connections),
            "-s", str(self.connections),
            "-k", "1M",
            "--file-allocation=none",
            "--console-log-level=warn",
            "--allow-overwrite=true",
            "-d", str(destination.parent),
            "-o", destination.name,
            uri,
        ]


class ResumingStrategy(FetchStrategy):
    """curl: follow redirects, resume ranges, retry with a fixed delay."""

    name = "resuming"
    binary = "curl"

    def command(self, uri: str, destination: Path) -> List[str]:
        return [
            self.binary,
            "-L",
            "--fail",
            "-C", "-",
            "--retry", str(self.retries),
            "--retry-delay", str(self.retry_delay),
            "--silent", "--show-error",
            "-o", str(destination),
            uri,
        ]


class FallbackStrategy(FetchStrategy):
    """wget: last resort, continue partial downloads."""

    name = "fallback"
    binary = "wget"

    def command(self, uri: str, destination: Path) -> List[str]:
        return [
            self.binary,
            f"--timeout={self.timeout}",
            f"--tries={self.retries}",
            "-c",
            "-q",
            "-O", str(destination),
            uri,
        ]


STRATEGIES = {
    SegmentedStrategy.name: SegmentedStrategy,
    ResumingStrategy.name: ResumingStrategy,
    FallbackStrategy.name: FallbackStrategy,
}

DEFAULT_ORDER = ("segmented", "resuming", "fallback")


def build_strategies(fetch_config: Optional[Dict[str, Any]] = None) -> List[FetchStrategy]:
    """
    Build the strategy chain from the ``fetch`` config section.

    Raises:
        ConfigError: If an unknown strategy name is configured
    """
    fetch_config = fetch_config or {}
    order = fetch_config.get("strategies") or list(DEFAULT_ORDER)
    options = {
        "retries": int(fetch_config.get("retries", 3)),
        "retry_delay": int(fetch_config.get("retry_delay", 5)),
        "timeout": int(fetch_config.get("timeout", 60)),
        "connections": int(fetch_config.get("connections", 16)),
    }

    strategies = []
    for name in order:
        if name not in STRATEGIES:
            raise ConfigError(
                f"Unknown fetch strategy '{name}' (expected one of: {', '.join(STRATEGIES)})"
            )
        strategies.append(STRATEGIES[name](**options))
    return strategies


class Fetcher:
    """
    Download files through the first available strategy.

    Args:
        runner: Command runner used to locate and invoke tools
        strategies: Ordered strategy chain (default: aria2c, curl, wget)
        fall_through: Try the next available strategy after a failure
    """

    def __init__(
        self,
        runner: CommandRunner,
        strategies: Optional[Sequence[FetchStrategy]] = None,
        fall_through: bool = False,
    ):
        self.runner = runner
        self.strategies = list(strategies) if strategies is not None else build_strategies()
        self.fall_through = fall_through

    @classmethod
    def from_config(cls, runner: CommandRunner, fetch_config: Optional[Dict[str, Any]] = None) -> "Fetcher":
        fetch_config = fetch_config or {}
        return cls(
            runner,
            strategies=build_strategies(fetch_config),
            fall_through=bool(fetch_config.get("fall_through", False)),
        )

    def available_strategies(self) -> List[FetchStrategy]:
        """Strategies whose tool is installed, in chain order."""
        return [strategy for strategy in self.strategies if strategy.available(self.runner)]

    def select_strategy(self) -> FetchStrategy:
        """
        Pick the first strategy whose tool is installed.

        Raises:
            NoFetchStrategyError: If no download tool is installed
        """
        available = self.available_strategies()
        if not available:
            tools = ", ".join(strategy.binary for strategy in self.strategies)
            raise NoFetchStrategyError(f"No download tool found (tried: {tools})")
        return available[0]

    def fetch(self, uri: str, destination: Path, sha256: Optional[str] = None) -> Path:
        """
        Download uri to destination.

        Args:
            uri: Source URL
            destination: Target file path
            sha256: Optional expected checksum

        Returns:
            The destination path

        Raises:
            NoFetchStrategyError: If no download tool is installed
            FetchError: If the download fails or produces no usable file
        """
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)

        chain = self.available_strategies() if self.fall_through else [self.select_strategy()]
        if not chain:
            self.select_strategy()  # raises NoFetchStrategyError

        errors = []
        for strategy in chain:
            logger.info(
                f"Downloading {uri} with {strategy.binary}",
                extra={
                    "event": "fetch_started",
                    "metadata": {"uri": uri, "strategy": strategy.name, "destination": str(destination)},
                },
            )
            try:
                self._run_strategy(strategy, uri, destination, sha256)
                return destination
            except FetchError as e:
                errors.append(str(e))
                logger.warning(
                    f"Download with {strategy.binary} failed: {e}",
                    extra={"event": "fetch_failed", "metadata": {"uri": uri, "strategy": strategy.name}},
                )

        raise FetchError(f"Failed to download {uri}: {'; '.join(errors)}")

    def _run_strategy(self, strategy: FetchStrategy, uri: str, destination: Path, sha256: Optional[str]) -> None:
        try:
            self.runner.run(strategy.command(uri, destination), capture=True)
        except CommandError as e:
            _remove_partial(destination)
            raise FetchError(f"{strategy.binary} failed: {e}")

        if not destination.is_file() or destination.stat().st_size == 0:
            _remove_partial(destination)
            raise FetchError(f"{strategy.binary} reported success but {destination} is missing or empty")

        if sha256:
            actual = get_file_checksum(destination)
            if actual.lower() != sha256.lower():
                _remove_partial(destination)
                raise FetchError(f"Checksum mismatch for {destination.name}: expected {sha256}, got {actual}")


def _remove_partial(destination: Path) -> None:
    for leftover in (destination, destination.with_name(destination.name + ".aria2")):
        if leftover.exists():
            leftover.unlink()


ARCHIVE_SUFFIXES = (
    (".tar.gz", "tar"),
    (".tgz", "tar"),
    (".tar.bz2", "tar"),
    (".tbz2", "tar"),
    (".tar.xz", "tar"),
    (".txz", "tar"),
    (".tar", "tar"),
    (".zip", "zip"),
)


def archive_format(path: Path) -> str:
    """
    Classify an archive by file name suffix only.

    Raises:
        ArchiveFormatError: If the suffix is not recognized
    """
    name = Path(path).name.lower()
    for suffix, kind in ARCHIVE_SUFFIXES:
        if name.endswith(suffix):
            return kind
    raise ArchiveFormatError(f"Unknown archive format: {path}")


def _check_member(dest_dir: Path, member_name: str) -> None:
    target = (dest_dir / member_name).resolve()
    if target != dest_dir and dest_dir not in target.parents:
        raise ArchiveFormatError(f"Archive member escapes destination: {member_name}")


def extract_archive(path: Path, dest_dir: Path) -> Path:
    """
    Extract an archive into dest_dir, dispatching on its suffix.

    Args:
        path: Archive file
        dest_dir: Extraction directory (created if missing)

    Returns:
        dest_dir

    Raises:
        ArchiveFormatError: Unknown suffix or unsafe member paths
        FetchError: If the archive is corrupt
    """
    kind = archive_format(path)
    dest_dir = Path(dest_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)
    root = dest_dir.resolve()

    logger.info(
        f"Extracting {Path(path).name} into {dest_dir}",
        extra={"event": "extract_started", "metadata": {"archive": str(path), "format": kind}},
    )

    try:
        if kind == "tar":
            with tarfile.open(path, "r:*") as archive:
                for member in archive.getmembers():
                    _check_member(root, member.name)
                if hasattr(tarfile, "tar_filter"):
                    archive.extractall(dest_dir, filter="tar")
                else:
                    archive.extractall(dest_dir)
        else:
            with zipfile.ZipFile(path) as archive:
                for name in archive.namelist():
                    _check_member(root, name)
                archive.extractall(dest_dir)
    except (tarfile.TarError, zipfile.BadZipFile, EOFError) as e:
        raise FetchError(f"Failed to extract {path}: {e}")

    return dest_dir


def archive_name(uri: str) -> str:
    """File name to download a URI to."""
    name = Path(urlparse(uri).path).name
    if not name:
        raise ConfigError(f"Cannot derive a file name from {uri}")
    return name


def download_and_extract(
    fetcher: Fetcher,
    uri: str,
    dest_dir: Path,
    download_dir: Path,
    sha256: Optional[str] = None,
) -> Path:
    """
    Download an archive, extract it, then delete the archive.

    The format is checked before downloading, so a misconfigured URL fails
    without spending time on the transfer.
    """
    archive_path = Path(download_dir) / archive_name(uri)
    archive_format(archive_path)

    fetcher.fetch(uri, archive_path, sha256=sha256)
    try:
        extract_archive(archive_path, dest_dir)
    finally:
        if archive_path.exists():
            archive_path.unlink()
    return Path(dest_dir)


def clear_directory(path: Path) -> None:
    """Remove a scratch directory if present."""
    if Path(path).exists():
        shutil.rmtree(path)
