"""
GPU architecture detection.

Compilers build much faster when they target the one architecture the
machine actually has. On every start the attached GPU is identified with
nvidia-smi (compute capability first, then a table of known model names)
and the matching build flags are appended to the environment descriptor as
a ``gpu`` fragment. A manual override variable skips detection entirely.
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Sequence, Tuple

from sandboxer.errors import CommandError
from sandboxer.runner import CommandRunner

logger = logging.getLogger(__name__)

DEFAULT_OVERRIDE_ENV = "CUDA_ARCH_OVERRIDE"

# (name substrings, compute capability, architecture); first match wins
KNOWN_GPUS: Sequence[Tuple[Tuple[str, ...], str, str]] = (
    (("B200", "B100"), "100", "Blackwell"),
    (("H100", "H200", "GH200"), "90", "Hopper"),
    (("RTX 4090", "RTX 4080", "RTX 4070", "GeForce RTX 409", "GeForce RTX 408", "GeForce RTX 407"), "89", "Ada Lovelace"),
    (("L40S", "L40", "L20", "L4"), "89", "Ada Lovelace"),
    (("RTX 6000 Ada", "RTX 5880 Ada", "RTX 5000 Ada", "RTX 4500 Ada", "RTX 4000 Ada"), "89", "Ada Lovelace"),
    (("RTX 3080", "RTX 3070", "RTX 3060", "RTX 3050"), "86", "Ampere (Consumer)"),
    (("RTX A6000", "RTX A5500", "RTX A5000", "RTX A4500", "RTX A4000", "RTX A2000"), "86", "Ampere (Professional)"),
    (("A100", "A30"), "80", "Ampere (Data Center)"),
    (("RTX 3090",), "86", "Ampere (Consumer)"),
    (("A6000", "A40", "A10", "A16", "A2"), "86", "Ampere (Data Center)"),
    (("RTX 2080", "RTX 2070", "RTX 2060"), "75", "Turing"),
    (("T4", "Quadro RTX"), "75", "Turing"),
    (("V100",), "70", "Volta"),
    (("GTX 1080", "GTX 1070", "GTX 1060"), "61", "Pascal"),
    (("P100", "P40", "P6", "P4"), "60", "Pascal"),
)


@dataclass(frozen=True)
class GpuArch:
    """Detected GPU and its compute capability (digits only, e.g. ``89``)."""

    name: str
    capability: str
    arch_name: str

    @property
    def flag(self) -> str:
        return f"cc{self.capability}"

    def fragment(self) -> Dict[str, str]:
        """Build flags in the form each toolchain expects."""
        return {
            "CUDA_COMPUTE_CAPABILITY": self.capability,
            "CUDA_ARCH_FLAG": self.flag,
            "CUDA_ARCH_SM": f"sm_{self.capability}",
            "NVHPC_GPU_FLAG": f"-gpu={self.flag}",
            "CMAKE_CUDA_ARCHITECTURES": self.capability,
            "GPU_ARCH_NAME": self.arch_name,
            "GPU_NAME": self.name,
        }

    def __str__(self) -> str:
        return f"{self.name} ({self.arch_name}, {self.flag})"


def arch_from_name(name: str) -> Optional[GpuArch]:
    """Look a model name up in KNOWN_GPUS."""
    for patterns, capability, arch_name in KNOWN_GPUS:
        if any(pattern in name for pattern in patterns):
            return GpuArch(name, capability, arch_name)
    return None


def arch_from_override(value: str) -> Optional[GpuArch]:
    """``89``, ``8.9`` or ``cc89`` all mean compute capability 89."""
    capability = re.sub(r"[^0-9]", "", value)
    if not capability:
        return None
    return GpuArch(f"Override (cc{capability})", capability, "Manual Override")


def _query(runner: CommandRunner, field_name: str) -> str:
    try:
        result = runner.run(
            ["nvidia-smi", f"--query-gpu={field_name}", "--format=csv,noheader"],
            check=False,
            timeout=10,
        )
    except CommandError as e:
        logger.debug(f"nvidia-smi query {field_name} failed: {e}")
        return ""
    if result.returncode != 0 or not result.stdout:
        return ""
    first = result.stdout.strip().splitlines()
    value = first[0].strip() if first else ""
    return "" if value == "N/A" else value


def detect_gpu(
    runner: CommandRunner,
    environ: Optional[Mapping[str, str]] = None,
    override_env: str = DEFAULT_OVERRIDE_ENV,
) -> Optional[GpuArch]:
    """
    Identify the first GPU.

    Precedence: the override variable, the compute capability nvidia-smi
    reports, then the model name table.

    Returns:
        GpuArch, or None when there is no GPU, no nvidia-smi, or an unknown model
    """
    environ = environ or {}
    override = environ.get(override_env)
    if override:
        arch = arch_from_override(override)
        if arch is not None:
            logger.info(f"Using GPU architecture override: {override}", extra={"event": "gpu_override"})
            return arch
        logger.warning(f"Ignoring {override_env}={override!r}: no digits", extra={"event": "gpu_override_invalid"})

    if runner.which("nvidia-smi") is None:
        logger.warning("nvidia-smi not found; unable to detect GPU architecture", extra={"event": "gpu_tool_missing"})
        return None

    name = _query(runner, "name")
    if not name:
        logger.warning("No GPU detected", extra={"event": "gpu_missing"})
        return None

    raw = _query(runner, "compute_cap") or _query(runner, "compute_capability")
    capability = re.sub(r"[^0-9]", "", raw)
    if capability:
        known = arch_from_name(name)
        arch = GpuArch(name, capability, known.arch_name if known else "NVIDIA")
    else:
        arch = arch_from_name(name)
        if arch is None:
            logger.warning(
                f"Unknown GPU architecture: {name} (set {override_env} to override)",
                extra={"event": "gpu_unknown", "metadata": {"name": name}},
            )
            return None

    logger.info(
        f"GPU detected: {arch}",
        extra={"event": "gpu_detected", "metadata": arch.fragment()},
    )
    return arch
