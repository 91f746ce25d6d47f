"""History Archiver for findings replaced by a new scan.

Before a scan writes findings for a set of frameworks, every current
finding of the client in those frameworks is copied into
``findings_history`` and removed from ``findings``. Findings of other
frameworks are left untouched.
"""

import logging
import uuid
from typing import Iterable

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.finding import Finding
from app.models.finding_history import FindingHistory

logger = logging.getLogger(__name__)

# Columns copied verbatim from findings to findings_history
ARCHIVED_COLUMNS = (
    "client_id",
    "compliance_check_id",
    "control_id",
    "control_title",
    "control_description",
    "framework",
    "domain",
    "category",
    "scan_status",
    "scan_reason",
    "scan_resources",
    "permission_error",
    "error_type",
    "remediation_status",
    "assigned_owner_id",
    "notes",
    "status_history",
    "ai_business_context",
    "ai_remediation_guidance",
)


def snapshot_finding(finding: Finding, archived_by_scan_id: uuid.UUID) -> FindingHistory:
    """Build the history row for one finding."""
    values = {column: getattr(finding, column) for column in ARCHIVED_COLUMNS}
    return FindingHistory(
        original_finding_id=finding.id,
        original_created_at=finding.created_at,
        original_updated_at=finding.updated_at,
        archived_by_scan_id=archived_by_scan_id,
        **values,
    )


async def archive_findings(
    session: AsyncSession,
    client_id: uuid.UUID,
    frameworks: Iterable[str],
    archived_by_scan_id: uuid.UUID,
) -> int:
    """Move a client's current findings for the given frameworks into history.

    Both the copy and the delete run in the caller's transaction; the caller
    commits before writing any new finding, so either both take effect or
    neither does.

    Args:
        session: Database session.
        client_id: Client whose findings are archived.
        frameworks: Frameworks being rescanned.
        archived_by_scan_id: The scan that triggers the archive.

    Returns:
        Number of findings archived.
    """
    framework_list = list(dict.fromkeys(frameworks))
    if not framework_list:
        return 0

    result = await session.execute(
        select(Finding).where(
            Finding.client_id == client_id,
            Finding.framework.in_(framework_list),
        )
    )
    findings = list(result.scalars().all())
    if not findings:
        logger.info(f"No findings to archive for client {client_id} ({', '.join(framework_list)})")
        return 0

    session.add_all([snapshot_finding(f, archived_by_scan_id) for f in findings])
    await session.flush()

    await session.execute(
        delete(Finding)
        .where(
            Finding.client_id == client_id,
            Finding.framework.in_(framework_list),
        )
        .execution_options(synchronize_session="fetch")
    )

    logger.info(
        f"Archived {len(findings)} finding(s) for client {client_id} "
        f"({', '.join(framework_list)}) before scan {archived_by_scan_id}"
    )
    return len(findings)
