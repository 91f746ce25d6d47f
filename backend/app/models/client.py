"""Client model representing a tenant whose cloud accounts are scanned."""

import uuid
from datetime import datetime
from typing import List

from sqlalchemy import DateTime, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, JSONType


class Client(Base):
    """SQLAlchemy model for tenants.

    Tenant management lives outside the scan core; only the fields the
    scan core reads are mapped here.
    """
    __tablename__ = "clients"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    company_name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        String(20),
        default="active",
        nullable=False,
    )
    assigned_frameworks: Mapped[List[str]] = mapped_column(
        JSONType,
        default=list,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Client(id={self.id}, company_name='{self.company_name}')>"
