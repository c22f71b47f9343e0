"""
Credential and hostname inputs for the network identity service.

The credential may come from an environment variable or a file on the
persistent volume. Whichever source is present is sanitized and checked
against the expected format; a malformed value is discarded, never used.
"""

import logging
import os
import re
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

CREDENTIAL_PATTERN = re.compile(r"^tskey-(auth|tag)-[A-Za-z0-9_-]+$")

DEFAULT_CREDENTIAL_ENV = "TAILSCALE_AUTHKEY"
DEFAULT_HOSTNAME_ENV = "TAILSCALE_HOSTNAME"
DEFAULT_POD_ID_ENV = "RUNPOD_POD_ID"
NODE_ID_FILE = "node-id"


@dataclass(frozen=True)
class Credential:
    """A validated auth credential and where it came from ("env" or "file")."""

    value: str
    source: str

    def __repr__(self) -> str:
        return f"Credential(source={self.source}, value={mask(self.value)})"

    __str__ = __repr__


def mask(value: str) -> str:
    """Show only the credential's kind prefix."""
    if not value:
        return ""
    parts = value.split("-")
    if len(parts) >= 3 and parts[0] == "tskey":
        return f"tskey-{parts[1]}-****"
    return "****"


def sanitize_credential(text: Optional[str]) -> str:
    """Drop line breaks, outer whitespace and one layer of double quotes."""
    if text is None:
        return ""
    value = text.replace("\r", "").replace("\n", "").strip()
    if value.startswith('"'):
        value = value[1:]
    if value.endswith('"'):
        value = value[:-1]
    return value


def is_valid_credential(value: str) -> bool:
    return bool(value) and CREDENTIAL_PATTERN.match(value) is not None


def load_credential(
    env_var: str,
    file_path: Path,
    environ: Optional[Mapping[str, str]] = None,
) -> Optional[Credential]:
    """
    Load the auth credential.

    A set environment variable decides the source even when its value is
    invalid; only when it is unset is the file consulted.

    Args:
        env_var: Environment variable name
        file_path: Credential file (first line is used)
        environ: Environment to read (default: os.environ)

    Returns:
        Credential, or None when absent or malformed
    """
    environ = os.environ if environ is None else environ
    file_path = Path(file_path)

    raw = environ.get(env_var)
    if raw:
        value = sanitize_credential(raw)
        if is_valid_credential(value):
            return Credential(value, "env")
        logger.warning(
            f"{env_var} is set but has an invalid format; ignoring",
            extra={"service": "network_identity", "event": "credential_invalid", "metadata": {"source": "env"}},
        )
        return None

    if not file_path.is_file():
        return None

    try:
        with open(file_path, "r") as f:
            first_line = f.readline()
    except OSError as e:
        logger.warning(f"Could not read credential file {file_path}: {e}")
        return None

    value = sanitize_credential(first_line)
    if not is_valid_credential(value):
        logger.warning(
            f"Credential file {file_path} has an invalid format; ignoring",
            extra={"service": "network_identity", "event": "credential_invalid", "metadata": {"source": "file"}},
        )
        return None

    try:
        os.chmod(file_path, 0o600)
    except OSError as e:
        logger.debug(f"Could not tighten {file_path}: {e}")

    return Credential(value, "file")


def load_node_id(state_dir: Path) -> str:
    """
    Read the persisted node id, creating it on first use.

    The id is part of the machine's durable identity and is never rewritten
    once it exists.
    """
    node_file = Path(state_dir) / NODE_ID_FILE
    if node_file.is_file():
        try:
            existing = node_file.read_text()[:8].strip()
        except OSError:
            existing = ""
        if existing:
            return existing

    node_id = secrets.token_hex(4)
    try:
        node_file.parent.mkdir(parents=True, exist_ok=True)
        node_file.write_text(node_id + "\n")
    except OSError as e:
        logger.warning(f"Could not persist node id to {node_file}: {e}")
    return node_id


def resolve_hostname(
    prefix: str,
    state_dir: Path,
    environ: Optional[Mapping[str, str]] = None,
    hostname_env: str = DEFAULT_HOSTNAME_ENV,
    pod_id_env: str = DEFAULT_POD_ID_ENV,
) -> str:
    """
    Pick the machine's network hostname.

    Precedence: explicit hostname variable, then the platform pod id
    (first 8 characters), then the persisted node id.
    """
    environ = os.environ if environ is None else environ

    explicit = environ.get(hostname_env)
    if explicit:
        return explicit

    pod_id = environ.get(pod_id_env)
    if pod_id:
        return f"{prefix}-{pod_id[:8]}"

    return f"{prefix}-{load_node_id(state_dir)}"
