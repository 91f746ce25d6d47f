"""Read access to a tenant's active cloud credentials."""

import logging
import uuid
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.credential import Credential

logger = logging.getLogger(__name__)


class ActiveCredential(BaseModel):
    """A credential bundle ready to be handed to the benchmark runner."""
    model_config = ConfigDict(frozen=True)

    id: uuid.UUID
    provider: str
    bundle: dict[str, Any] = Field(default_factory=dict)
    region: Optional[str] = None
    account_id: Optional[str] = None


async def load_active_credentials(session: AsyncSession, client_id: uuid.UUID) -> list[ActiveCredential]:
    """Load the active credentials of a client, oldest first."""
    result = await session.execute(
        select(Credential)
        .where(Credential.client_id == client_id, Credential.is_active.is_(True))
        .order_by(Credential.created_at)
    )
    credentials = [
        ActiveCredential(
            id=row.id,
            provider=row.provider.lower(),
            bundle=dict(row.credentials or {}),
            region=row.region,
            account_id=row.account_id,
        )
        for row in result.scalars().all()
    ]
    logger.debug(f"Loaded {len(credentials)} active credential(s) for client {client_id}")
    return credentials
