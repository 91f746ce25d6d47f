"""Metadata Merger for carrying remediation data across scans.

Findings are regenerated on every scan, but a client's owner assignments,
notes, remediation progress and AI-authored content belong to the control,
not to one scan. They live in ``control_metadata`` and are merged into each
newly written finding.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.control_metadata import ControlMetadata
from app.models.enums import ControlStatus, RemediationStatus

logger = logging.getLogger(__name__)

# Fields that upsert_control_metadata accepts
METADATA_FIELDS = frozenset({
    "remediation_status",
    "assigned_owner_id",
    "notes",
    "status_history",
    "ai_business_context",
    "ai_remediation_guidance",
})


class MergedRemediation(BaseModel):
    """Remediation fields to write onto a new finding."""
    remediation_status: RemediationStatus = RemediationStatus.OPEN
    assigned_owner_id: Optional[uuid.UUID] = None
    notes: Optional[str] = None
    status_history: list[dict[str, Any]] = Field(default_factory=list)
    ai_business_context: Optional[str] = None
    ai_remediation_guidance: Optional[str] = None


def merge_control_metadata(
    scan_status: ControlStatus,
    metadata: Optional[ControlMetadata],
) -> MergedRemediation:
    """Merge persisted control metadata with a fresh control result.

    A passing control is always resolved. Otherwise the persisted
    remediation status is carried forward, defaulting to open.

    Args:
        scan_status: Status derived for the control in this scan.
        metadata: Persisted metadata for (client, control), if any.

    Returns:
        MergedRemediation for the new finding.
    """
    passed = ControlStatus(scan_status) is ControlStatus.PASS

    if metadata is None:
        return MergedRemediation(
            remediation_status=RemediationStatus.RESOLVED if passed else RemediationStatus.OPEN,
        )

    if passed:
        status = RemediationStatus.RESOLVED
    else:
        status = RemediationStatus(metadata.remediation_status or RemediationStatus.OPEN.value)

    return MergedRemediation(
        remediation_status=status,
        assigned_owner_id=metadata.assigned_owner_id,
        notes=metadata.notes,
        status_history=list(metadata.status_history or []),
        ai_business_context=metadata.ai_business_context,
        ai_remediation_guidance=metadata.ai_remediation_guidance,
    )


def append_status_change(
    history: Optional[list[dict[str, Any]]],
    status: RemediationStatus,
    changed_by: Optional[str] = None,
    changed_at: Optional[datetime] = None,
) -> list[dict[str, Any]]:
    """Return a new status history list with one change appended."""
    entry = {
        "status": RemediationStatus(status).value,
        "changed_by": changed_by,
        "changed_at": (changed_at or datetime.now(timezone.utc)).isoformat(),
    }
    return [*(history or []), entry]


async def load_control_metadata(
    session: AsyncSession,
    client_id: uuid.UUID,
    control_ids: Iterable[str],
) -> dict[str, ControlMetadata]:
    """Load persisted metadata for a batch of controls in a single query."""
    ids = list(dict.fromkeys(control_ids))
    if not ids:
        return {}
    result = await session.execute(
        select(ControlMetadata).where(
            ControlMetadata.client_id == client_id,
            ControlMetadata.control_id.in_(ids),
        )
    )
    return {row.control_id: row for row in result.scalars().all()}


async def upsert_control_metadata(
    session: AsyncSession,
    client_id: uuid.UUID,
    control_id: str,
    **fields: Any,
) -> ControlMetadata:
    """Create or update the metadata row for (client, control).

    Only the given fields are written. The row is flushed, not committed.

    Raises:
        ValueError: If an unknown field is passed.
    """
    unknown = set(fields) - METADATA_FIELDS
    if unknown:
        raise ValueError(f"Unknown control metadata field(s): {', '.join(sorted(unknown))}")

    if isinstance(fields.get("remediation_status"), RemediationStatus):
        fields["remediation_status"] = fields["remediation_status"].value

    result = await session.execute(
        select(ControlMetadata).where(
            ControlMetadata.client_id == client_id,
            ControlMetadata.control_id == control_id,
        )
    )
    metadata = result.scalar_one_or_none()

    if metadata is None:
        metadata = ControlMetadata(client_id=client_id, control_id=control_id, **fields)
        session.add(metadata)
        logger.info(f"Created control metadata for {control_id} (client {client_id})")
    else:
        for key, value in fields.items():
            setattr(metadata, key, value)
        logger.info(f"Updated control metadata for {control_id} (client {client_id}): {sorted(fields)}")

    await session.flush()
    return metadata
