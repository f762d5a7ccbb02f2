"""Shared type definitions for release_orchestrator.

This module contains enums and dataclasses shared across subpackages
to avoid circular imports.
"""

from dataclasses import dataclass, field
from enum import Enum


class BuildStatus(str, Enum):
    """Status of a build."""

    QUEUED = "queued"
    BUILDING = "building"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Whether no further transitions are possible."""
        return self in TERMINAL_BUILD_STATUSES


TERMINAL_BUILD_STATUSES = frozenset(
    {BuildStatus.SUCCESS, BuildStatus.FAILED, BuildStatus.CANCELLED}
)


class Platform(str, Enum):
    """Native build platform."""

    IOS = "ios"
    ANDROID = "android"


class BuildProfile(str, Enum):
    """Provider build profile."""

    DEVELOPMENT = "development"
    PREVIEW = "preview"
    PRODUCTION = "production"


class ProviderBuildStatus(str, Enum):
    """Build status vocabulary used by the external provider."""

    IN_QUEUE = "in-queue"
    IN_PROGRESS = "in-progress"
    FINISHED = "finished"
    ERRORED = "errored"
    CANCELED = "canceled"


class UpdateStatus(str, Enum):
    """Status of an OTA update."""

    PENDING = "pending"
    ACTIVE = "active"
    ARCHIVED = "archived"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


class UpdatePlatform(str, Enum):
    """Platforms an OTA update targets."""

    IOS = "ios"
    ANDROID = "android"
    ALL = "all"


class ChangeType(str, Enum):
    """Kind of change carried by an OTA update."""

    FEATURE = "feature"
    FIX = "fix"
    CONTENT = "content"
    CONFIG = "config"


class UpdateEventType(str, Enum):
    """Telemetry events reported by deployed app instances."""

    DOWNLOAD_START = "download_start"
    DOWNLOAD_COMPLETE = "download_complete"
    DOWNLOAD_ERROR = "download_error"
    APPLY_START = "apply_start"
    APPLY_COMPLETE = "apply_complete"
    APPLY_ERROR = "apply_error"
    ROLLBACK = "rollback"

    @property
    def is_error(self) -> bool:
        """Whether this event reports a failure."""
        return self in (UpdateEventType.DOWNLOAD_ERROR, UpdateEventType.APPLY_ERROR)


class JobStatus(str, Enum):
    """Status of a queued job."""

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class Severity(str, Enum):
    """Severity of a validation issue."""

    ERROR = "error"
    WARNING = "warning"


class ValidationTier(str, Enum):
    """Depth of pre-build validation."""

    QUICK = "quick"
    FULL = "full"


# Queue priority per build profile; higher runs first.
PROFILE_PRIORITY: dict[BuildProfile, int] = {
    BuildProfile.PRODUCTION: 10,
    BuildProfile.PREVIEW: 5,
    BuildProfile.DEVELOPMENT: 1,
}


@dataclass
class ValidationIssue:
    """A single diagnostic produced by a validation stage."""

    file: str
    message: str
    severity: Severity = Severity.ERROR
    line: int | None = None
    column: int | None = None
    code: str | None = None
    stage: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Convert to a JSON-friendly dictionary."""
        return {
            "file": self.file,
            "line": self.line,
            "column": self.column,
            "code": self.code,
            "message": self.message,
            "severity": self.severity.value,
            "stage": self.stage,
        }


@dataclass
class ValidationResult:
    """Outcome of a validation pipeline run."""

    passed: bool
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)
    stages_run: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0


@dataclass
class OperationResult:
    """Result of an operation that may degrade without failing."""

    success: bool
    message: str
    code: str | None = None
    details: dict[str, object] = field(default_factory=dict)


__all__ = [
    "BuildProfile",
    "BuildStatus",
    "ChangeType",
    "JobStatus",
    "OperationResult",
    "PROFILE_PRIORITY",
    "Platform",
    "ProviderBuildStatus",
    "Severity",
    "TERMINAL_BUILD_STATUSES",
    "UpdateEventType",
    "UpdatePlatform",
    "UpdateStatus",
    "ValidationIssue",
    "ValidationResult",
    "ValidationTier",
]
