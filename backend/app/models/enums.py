"""Enum definitions for the compliance scan models."""

from enum import Enum


class ScanStatus(str, Enum):
    """Lifecycle status of a compliance check (scan)."""
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not ScanStatus.IN_PROGRESS


class ControlStatus(str, Enum):
    """Result of a single control as derived from the benchmark engine."""
    PASS = "pass"
    FAIL = "fail"
    ERROR = "error"
    SKIP = "skip"


class RemediationStatus(str, Enum):
    """User-managed remediation state of a finding."""
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"


class CloudProvider(str, Enum):
    """Cloud providers the benchmark engine can evaluate."""
    AWS = "aws"
    AZURE = "azure"
    GCP = "gcp"


class PermissionErrorType(str, Enum):
    """Classification of access-denial failures reported by the engine."""
    ACCESS_DENIED = "AccessDenied"
    UNAUTHORIZED_OPERATION = "UnauthorizedOperation"
    FORBIDDEN = "Forbidden"
    PERMISSION_ERROR = "PermissionError"
