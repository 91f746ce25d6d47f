"""Finding model for the latest result of one control for one tenant."""

import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base, JSONType
from app.models.enums import RemediationStatus

if TYPE_CHECKING:
    from app.models.compliance_check import ComplianceCheck


class Finding(Base):
    """SQLAlchemy model for findings.

    The full set of findings for a (client, framework) is archived and
    recreated on every scan. Remediation fields are carried across scans
    through ControlMetadata.
    """
    __tablename__ = "findings"
    __table_args__ = (
        UniqueConstraint(
            "compliance_check_id",
            "control_id",
            name="uq_findings_control_per_scan",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    client_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("clients.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    compliance_check_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("compliance_checks.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # Control metadata (from the benchmark engine)
    control_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    control_title: Mapped[str] = mapped_column(String(500), nullable=False)
    control_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    framework: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    domain: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Scan results
    scan_status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    scan_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    scan_resources: Mapped[Optional[List[Dict[str, Any]]]] = mapped_column(
        JSONType,
        nullable=True,
    )
    permission_error: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    error_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Remediation tracking
    remediation_status: Mapped[str] = mapped_column(
        String(20),
        default=RemediationStatus.OPEN.value,
        nullable=False,
        index=True,
    )
    assigned_owner_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status_history: Mapped[List[Dict[str, Any]]] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
    )

    # AI-authored content
    ai_business_context: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ai_remediation_guidance: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    # Relationships
    compliance_check: Mapped["ComplianceCheck"] = relationship(
        "ComplianceCheck",
        back_populates="findings",
    )

    def __repr__(self) -> str:
        return f"<Finding(id={self.id}, control_id='{self.control_id}', scan_status='{self.scan_status}')>"
