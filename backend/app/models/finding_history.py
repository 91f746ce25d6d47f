"""FindingHistory model: immutable snapshots of findings replaced by a later scan."""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import Boolean, DateTime, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, JSONType


class FindingHistory(Base):
    """SQLAlchemy model for archived findings.

    Append-only ledger used for trend and audit views. No foreign keys, so
    rows outlive the findings and scans they were copied from.
    """
    __tablename__ = "findings_history"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    original_finding_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    client_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    compliance_check_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)

    control_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    control_title: Mapped[str] = mapped_column(String(500), nullable=False)
    control_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    framework: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    domain: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    scan_status: Mapped[str] = mapped_column(String(20), nullable=False)
    scan_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    scan_resources: Mapped[Optional[List[Dict[str, Any]]]] = mapped_column(JSONType, nullable=True)
    permission_error: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    error_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Remediation snapshot at archive time
    remediation_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    assigned_owner_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status_history: Mapped[Optional[List[Dict[str, Any]]]] = mapped_column(JSONType, nullable=True)

    ai_business_context: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ai_remediation_guidance: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    original_created_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    original_updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    archived_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True,
    )
    archived_by_scan_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)

    def __repr__(self) -> str:
        return (
            f"<FindingHistory(id={self.id}, control_id='{self.control_id}', "
            f"archived_by_scan_id={self.archived_by_scan_id})>"
        )
