"""Artifact selection, verification, dependency checks and installation."""

from .batch import BatchResult, PluginResult, install_many
from .dependencies import (
    DependencyChecker,
    DependencyReport,
    DependencyResult,
    DependencyStatus,
    register_probe,
)
from .engine import InstallEngine, InstallOutcome
from .integrity import verify
from .records import LocalInstallRecord, RecordStore
from .selector import current_platform_key, select_artifact

__all__ = [
    "BatchResult",
    "DependencyChecker",
    "DependencyReport",
    "DependencyResult",
    "DependencyStatus",
    "InstallEngine",
    "InstallOutcome",
    "LocalInstallRecord",
    "PluginResult",
    "RecordStore",
    "current_platform_key",
    "install_many",
    "register_probe",
    "select_artifact",
    "verify",
]
