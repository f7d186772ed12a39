"""Configuration modules for crosspack."""

from .ini_parser import CONFIG_FILENAME, CrosspackConfig, CrosspackConfigError, ProjectSettings
from .targets import (
    DEFAULT_DEPENDENCIES,
    LIBOPUS,
    NativeDependencySpec,
    RuntimeSelection,
    TargetConfigError,
    TargetOverride,
    TargetSpec,
    default_target_table,
)

__all__ = [
    "CONFIG_FILENAME",
    "CrosspackConfig",
    "CrosspackConfigError",
    "ProjectSettings",
    "DEFAULT_DEPENDENCIES",
    "LIBOPUS",
    "NativeDependencySpec",
    "RuntimeSelection",
    "TargetConfigError",
    "TargetOverride",
    "TargetSpec",
    "default_target_table",
]
