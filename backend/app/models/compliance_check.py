"""ComplianceCheck model for storing scan runs and their aggregate results."""

import uuid
from datetime import datetime
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, Uuid, func, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base, JSONType
from app.models.enums import ScanStatus

if TYPE_CHECKING:
    from app.models.finding import Finding


class ComplianceCheck(Base):
    """SQLAlchemy model for a compliance scan.

    One row per orchestration run. Rows are never deleted; aggregate
    counts are only meaningful once the status is terminal.
    """
    __tablename__ = "compliance_checks"
    __table_args__ = (
        # At most one running scan per client
        Index(
            "uq_compliance_checks_running_per_client",
            "client_id",
            unique=True,
            postgresql_where=text("status = 'in_progress'"),
            sqlite_where=text("status = 'in_progress'"),
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
    frameworks: Mapped[List[str]] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
    )
    status: Mapped[str] = mapped_column(
        String(20),
        default=ScanStatus.IN_PROGRESS.value,
        nullable=False,
        index=True,
    )
    total_controls: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    passed_controls: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_controls: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_controls: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    skip_controls: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    verification_warnings: Mapped[List[str]] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
    )
    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
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
    findings: Mapped[List["Finding"]] = relationship(
        "Finding",
        back_populates="compliance_check",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def is_terminal(self) -> bool:
        return ScanStatus(self.status).is_terminal

    def __repr__(self) -> str:
        return f"<ComplianceCheck(id={self.id}, status='{self.status}', total_controls={self.total_controls})>"
