"""
Error classes for sandboxer.

These error types enable retry classification at stage and service boundaries:
- TransientError: Safe to retry (network issues, daemon not ready yet)
- PermanentError: Do not retry (invalid configuration, unknown archive format)

Install-time code raises these inside stage actions; the pipeline converts
them into a failed StageResult at the stage boundary and stops. Runtime code
catches them per step, logs, and continues.
"""

from typing import List, Optional, Sequence

from sandboxer.utils import redact


class SandboxerError(Exception):
    """Base exception for sandboxer."""
    pass


class TransientError(SandboxerError):
    """
    Transient error - safe to retry.

    Examples:
    - Download interrupted
    - Service daemon not ready yet
    - Connection reset
    """
    pass


class PermanentError(SandboxerError):
    """
    Permanent error - do not retry.

    Examples:
    - Invalid configuration
    - Unrecognized archive format
    - No download tool installed
    """
    pass


class ConfigError(PermanentError):
    """Configuration validation error."""
    pass


class StageError(SandboxerError):
    """A named install stage failed."""

    def __init__(self, stage_name: str, message: str):
        self.stage_name = stage_name
        super().__init__(f"Stage {stage_name} failed: {message}")


class FetchError(TransientError):
    """A download did not produce a usable file."""
    pass


class NoFetchStrategyError(PermanentError):
    """None of the download tools is installed."""
    pass


class ArchiveFormatError(PermanentError):
    """Archive suffix is not one we know how to extract."""
    pass


class CommandError(SandboxerError):
    """An external command failed or timed out."""

    def __init__(
        self,
        command: Sequence[str],
        returncode: Optional[int],
        stderr: str = "",
    ):
        self.command: List[str] = [str(part) for part in command]
        self.returncode = returncode
        self.stderr = stderr or ""

        if returncode is None:
            message = f"Command timed out: {redact(self.command)}"
        else:
            message = (
                f"Command failed with exit code {returncode}: {redact(self.command)}"
            )
        if self.stderr:
            message += f": {self.stderr.strip()[-500:]}"
        super().__init__(message)
