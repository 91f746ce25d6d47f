"""ControlMetadata model for remediation data that persists across scans."""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import DateTime, ForeignKey, String, Text, UniqueConstraint, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, JSONType
from app.models.enums import RemediationStatus


class ControlMetadata(Base):
    """SQLAlchemy model for persistent per-control remediation metadata.

    Keyed by (client, control id) and independent of any single scan, so
    owner assignments, notes and resolution tracking survive the
    archive-and-recreate cycle of findings.
    """
    __tablename__ = "control_metadata"
    __table_args__ = (
        UniqueConstraint("client_id", "control_id", name="uq_control_metadata_client_control"),
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
    control_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    remediation_status: Mapped[str] = mapped_column(
        String(20),
        default=RemediationStatus.OPEN.value,
        nullable=False,
    )
    assigned_owner_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status_history: Mapped[List[Dict[str, Any]]] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
    )

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

    def __repr__(self) -> str:
        return (
            f"<ControlMetadata(client_id={self.client_id}, control_id='{self.control_id}', "
            f"remediation_status='{self.remediation_status}')>"
        )
