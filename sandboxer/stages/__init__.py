"""Install stage implementations."""

from typing import Dict, Type

from sandboxer.config import StageConfig
from sandboxer.errors import ConfigError
from sandboxer.stages.archive import ArchiveStage
from sandboxer.stages.base import Stage, StageContext, StageResult
from sandboxer.stages.command import CommandStage, GitStage
from sandboxer.stages.copy import CopyStage
from sandboxer.stages.identity import IdentityStage
from sandboxer.stages.prep import PrepStage

STAGE_TYPES: Dict[str, Type[Stage]] = {
    "prep": PrepStage,
    "archive": ArchiveStage,
    "command": CommandStage,
    "git": GitStage,
    "copy": CopyStage,
    "identity": IdentityStage,
}


def build_stage(stage_config: StageConfig, ordinal: int = 0) -> Stage:
    """
    Instantiate the stage class for a configured stage.

    Raises:
        ConfigError: If the stage type is unknown
    """
    stage_class = STAGE_TYPES.get(stage_config.type)
    if stage_class is None:
        raise ConfigError(f"Stage {stage_config.name}: unknown type '{stage_config.type}'")
    return stage_class(stage_config, ordinal)


__all__ = [
    "STAGE_TYPES",
    "Stage",
    "StageContext",
    "StageResult",
    "build_stage",
    "ArchiveStage",
    "CommandStage",
    "CopyStage",
    "GitStage",
    "IdentityStage",
    "PrepStage",
]
