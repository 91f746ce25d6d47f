"""Database models package for SQLAlchemy ORM.

This module exports all SQLAlchemy models and enums used by the compliance
scan service.
"""

from app.models.client import Client
from app.models.compliance_check import ComplianceCheck
from app.models.control_metadata import ControlMetadata
from app.models.credential import Credential
from app.models.enums import (
    CloudProvider,
    ControlStatus,
    PermissionErrorType,
    RemediationStatus,
    ScanStatus,
)
from app.models.finding import Finding
from app.models.finding_history import FindingHistory

__all__ = [
    # Models
    "Client",
    "Credential",
    "ComplianceCheck",
    "Finding",
    "FindingHistory",
    "ControlMetadata",
    # Enums
    "ScanStatus",
    "ControlStatus",
    "RemediationStatus",
    "CloudProvider",
    "PermissionErrorType",
]
