"""
Environment descriptor: the accumulated configuration every tool consumes.

Install stages append fragments (ordered key/value blocks); nothing is ever
updated or removed in place. A later fragment that defines the same key
shadows the earlier definition ("last write wins").

Two artifacts are kept in sync on the volume:
- the structured fragment list (YAML), which is the source of truth and is
  merged explicitly by resolve();
- the rendered shell file of ``export KEY="VALUE"`` lines, for interactive
  shells that want to ``source`` it.

Values use double-quoted shell syntax: ``$VAR`` and ``${VAR}`` expand to
values merged so far, then to the base environment; ``\\$`` is a literal
dollar sign.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Mapping, Optional

import yaml

from sandboxer.errors import ConfigError
from sandboxer.utils import atomic_write_text

logger = logging.getLogger(__name__)

KEY_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_REFERENCE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-)?\}|\$([A-Za-z_][A-Za-z0-9_]*)")
# Characters a backslash escapes inside double quotes
_SHELL_SPECIAL = '$"`\\'
_EXPORT_LINE = re.compile(r"^\s*(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)=(.*)$")

HEADER = "# Generated by sandboxer. Do not edit: append a stage fragment instead.\n"


@dataclass
class EnvironmentFragment:
    """One appended block of exports."""

    source: str
    values: Dict[str, str]
    appended_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict:
        return {
            "source": self.source,
            "appended_at": self.appended_at.isoformat(),
            "values": dict(self.values),
        }

    @classmethod
    def from_dict(cls, data: Mapping) -> "EnvironmentFragment":
        appended_at = data.get("appended_at")
        return cls(
            source=str(data.get("source", "unknown")),
            values={str(k): "" if v is None else str(v) for k, v in (data.get("values") or {}).items()},
            appended_at=(
                datetime.fromisoformat(appended_at)
                if isinstance(appended_at, str)
                else datetime.now(timezone.utc)
            ),
        )

    def render(self) -> str:
        lines = [f"# {self.source}"]
        for key, value in self.values.items():
            lines.append(f'export {key}="{_shell_value(value)}"')
        return "\n".join(lines) + "\n"


def _shell_value(value: str) -> str:
    """
    Quote a fragment value for a double-quoted export line.

    References stay live as ``${NAME:-}`` so an unset variable expands to an
    empty string even under ``set -u``. Every other special character is
    escaped: sourcing the line never runs a command substitution and never
    drops a backslash.
    """
    out: List[str] = []
    i = 0
    while i < len(value):
        char = value[i]
        if char == "\\" and i + 1 < len(value) and value[i + 1] in _SHELL_SPECIAL:
            out.append(value[i : i + 2])
            i += 2
            continue
        if char == "$":
            match = _REFERENCE.match(value, i)
            if match:
                out.append("${" + (match.group(1) or match.group(2)) + ":-}")
                i = match.end()
                continue
        out.append("\\" + char if char in _SHELL_SPECIAL else char)
        i += 1
    return "".join(out)


def _expand(value: str, lookup: Mapping[str, str]) -> str:
    """Expand double-quoted shell content against lookup."""
    out: List[str] = []
    i = 0
    while i < len(value):
        char = value[i]
        if char == "\\" and i + 1 < len(value) and value[i + 1] in _SHELL_SPECIAL:
            out.append(value[i + 1])
            i += 2
            continue
        if char == "$":
            match = _REFERENCE.match(value, i)
            if match:
                name = match.group(1) or match.group(2)
                out.append(lookup.get(name, ""))
                i = match.end()
                continue
        out.append(char)
        i += 1
    return "".join(out)


class _ChainLookup(Mapping):
    """Merged values first, then the base environment."""

    def __init__(self, merged: Dict[str, str], base: Mapping[str, str]):
        self.merged = merged
        self.base = base

    def __getitem__(self, key):
        if key in self.merged:
            return self.merged[key]
        return self.base[key]

    def __iter__(self):
        return iter({**dict(self.base), **self.merged})

    def __len__(self):
        return len({**dict(self.base), **self.merged})


def parse_exports(text: str, base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """
    Evaluate rendered export lines the way ``source`` would.

    Lines are applied in order, so a later export of a key replaces the
    earlier one. Comments, blank lines and anything that is not an
    assignment are ignored.

    Args:
        text: Rendered descriptor
        base: Environment references fall back to (default: empty)

    Returns:
        The variables the text assigns, fully expanded
    """
    merged: Dict[str, str] = {}
    lookup = _ChainLookup(merged, base or {})

    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        match = _EXPORT_LINE.match(line)
        if not match:
            continue

        key, rhs = match.group(1), match.group(2).strip()
        if len(rhs) >= 2 and rhs[0] == rhs[-1] == "'":
            value = rhs[1:-1]
        elif len(rhs) >= 2 and rhs[0] == rhs[-1] == '"':
            value = _expand(rhs[1:-1], lookup)
        else:
            value = _expand(rhs, lookup)
        merged[key] = value

    return merged


class EnvironmentDescriptor:
    """
    Append-only, ordered list of environment fragments.

    Args:
        fragments_file: Structured fragment list (YAML)
        rendered_file: Shell rendering kept alongside (optional)
    """

    def __init__(self, fragments_file: Path, rendered_file: Optional[Path] = None):
        self.fragments_file = Path(fragments_file)
        self.rendered_file = Path(rendered_file) if rendered_file else None
        self._fragments: List[EnvironmentFragment] = []

    @classmethod
    def load(cls, fragments_file: Path, rendered_file: Optional[Path] = None) -> "EnvironmentDescriptor":
        """Load persisted fragments; a missing file is an empty descriptor."""
        descriptor = cls(fragments_file, rendered_file)
        if not descriptor.fragments_file.exists():
            return descriptor

        try:
            with open(descriptor.fragments_file, "r") as f:
                data = yaml.safe_load(f) or []
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid environment fragments file {fragments_file}: {e}")

        if not isinstance(data, list):
            raise ConfigError(f"Environment fragments file {fragments_file} must hold a list")

        descriptor._fragments = [EnvironmentFragment.from_dict(item) for item in data]
        return descriptor

    @property
    def fragments(self) -> List[EnvironmentFragment]:
        """Fragments in append order."""
        return list(self._fragments)

    def __len__(self) -> int:
        return len(self._fragments)

    def append_fragment(self, source: str, values: Mapping[str, str]) -> EnvironmentFragment:
        """
        Append a fragment and persist both artifacts.

        Args:
            source: Who appended it (stage name)
            values: Ordered key/value exports

        Returns:
            The appended fragment

        Raises:
            ConfigError: If a key is not a valid variable name
        """
        for key, value in values.items():
            if not KEY_PATTERN.match(str(key)):
                raise ConfigError(f"Invalid environment variable name from {source}: {key!r}")
            if value is not None and ("\n" in str(value) or "\0" in str(value)):
                raise ConfigError(f"Environment value for {key} from {source} must be a single line")

        fragment = EnvironmentFragment(
            source=source,
            values={str(k): "" if v is None else str(v) for k, v in values.items()},
        )
        self._fragments.append(fragment)
        self.save()

        logger.info(
            f"Appended environment fragment from {source} ({len(fragment.values)} keys)",
            extra={
                "event": "fragment_appended",
                "metadata": {"source": source, "keys": list(fragment.values)},
            },
        )
        return fragment

    def save(self) -> None:
        """Persist the fragment list and the shell rendering."""
        atomic_write_text(
            self.fragments_file,
            yaml.safe_dump(
                [fragment.to_dict() for fragment in self._fragments],
                default_flow_style=False,
                sort_keys=False,
            ),
        )
        if self.rendered_file is not None:
            atomic_write_text(self.rendered_file, self.render(), mode=0o755)

    def render(self) -> str:
        """Render all fragments, in append order, as shell exports."""
        body = "\n".join(fragment.render() for fragment in self._fragments)
        return "#!/bin/bash\n" + HEADER + ("\n" + body if body else "")

    def resolve(self, base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        """
        Merge all fragments with last-write-wins and expand references.

        Args:
            base: Environment references fall back to (default: os.environ)

        Returns:
            Every key any fragment defines, mapped to its final value
        """
        base = os.environ if base is None else base
        merged: Dict[str, str] = {}
        lookup = _ChainLookup(merged, base)
        for fragment in self._fragments:
            for key, value in fragment.values.items():
                merged[key] = _expand(value, lookup)
        return merged

    def get(self, key: str, default: Optional[str] = None, base: Optional[Mapping[str, str]] = None) -> Optional[str]:
        """Get one resolved value."""
        return self.resolve(base).get(key, default)

    def get_path(self, key: str, base: Optional[Mapping[str, str]] = None) -> Optional[Path]:
        """Get one resolved value as a Path."""
        value = self.get(key, base=base)
        return Path(value) if value else None

    def environ(self, base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        """Build a full process environment: base overlaid with resolved values."""
        base = os.environ if base is None else base
        env = dict(base)
        env.update(self.resolve(base))
        return env

    def __repr__(self) -> str:
        return f"EnvironmentDescriptor(file={self.fragments_file}, fragments={len(self._fragments)})"
