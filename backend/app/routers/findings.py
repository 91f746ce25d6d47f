"""Findings API routes.

This module provides FastAPI endpoints for working with scan findings:
- List the latest findings with filtering
- Get a single finding
- Update remediation status, owner and notes (persisted across scans)
- Generate AI business context and remediation guidance
- Query archived findings history
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.models.compliance_check import ComplianceCheck
from app.models.enums import ControlStatus, RemediationStatus, ScanStatus
from app.models.finding import Finding
from app.models.finding_history import FindingHistory
from app.services.llm_client import ControlContext, LLMClient, get_llm_client
from app.services.metadata_merger import append_status_change, upsert_control_metadata

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/findings", tags=["Findings"])

MAX_HISTORY_ROWS = 1000


# Pydantic Models

class FindingResponse(BaseModel):
    """Response model for a finding."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    client_id: UUID
    compliance_check_id: UUID
    control_id: str
    control_title: str
    control_description: Optional[str] = None
    framework: str
    domain: Optional[str] = None
    category: Optional[str] = None
    scan_status: str
    scan_reason: Optional[str] = None
    scan_resources: Optional[List[Any]] = None
    permission_error: bool = False
    error_type: Optional[str] = None
    remediation_status: str
    assigned_owner_id: Optional[UUID] = None
    notes: Optional[str] = None
    status_history: List[Dict[str, Any]] = Field(default_factory=list)
    ai_business_context: Optional[str] = None
    ai_remediation_guidance: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class FindingListResponse(BaseModel):
    """Response model for a paginated finding list."""

    items: List[FindingResponse]
    total: int
    skip: int
    limit: int


class FindingHistoryResponse(BaseModel):
    """Response model for an archived finding."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    original_finding_id: Optional[UUID] = None
    client_id: UUID
    compliance_check_id: UUID
    control_id: str
    control_title: str
    framework: str
    domain: Optional[str] = None
    scan_status: str
    scan_reason: Optional[str] = None
    permission_error: bool = False
    remediation_status: Optional[str] = None
    original_created_at: Optional[datetime] = None
    archived_at: datetime
    archived_by_scan_id: UUID


class FindingUpdateRequest(BaseModel):
    """Request model for updating remediation fields of a finding.

    Only fields present in the request are changed. The change is also
    written to the control's metadata so it survives later scans.
    """
    remediation_status: Optional[RemediationStatus] = Field(
        None,
        description="New remediation status",
    )
    assigned_owner_id: Optional[UUID] = Field(
        None,
        description="Owner responsible for remediation; null to unassign",
    )
    notes: Optional[str] = Field(
        None,
        max_length=5000,
        description="Free-form remediation notes",
    )
    changed_by: Optional[str] = Field(
        None,
        max_length=255,
        description="Who made the change, recorded in the status history",
    )


class ErrorResponse(BaseModel):
    """Response model for error messages."""

    detail: str


# Helpers

def get_ai_client() -> LLMClient:
    """Dependency returning the configured LLM client, or 503 when unconfigured."""
    try:
        return get_llm_client()
    except ValueError as e:
        logger.warning(f"LLM client unavailable: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(e),
        )


async def _get_finding_or_404(db: AsyncSession, finding_id: UUID) -> Finding:
    finding = await db.get(Finding, finding_id)
    if finding is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Finding with ID '{finding_id}' not found.",
        )
    return finding


# API Endpoints

@router.get(
    "",
    response_model=FindingListResponse,
    summary="List findings",
    description="List the latest findings. Findings are replaced by every scan, so only "
                "the most recent results per framework are returned. Findings of failed "
                "scans are hidden unless include_failed_scans is set.",
)
async def list_findings(
    db: AsyncSession = Depends(get_db),
    client_id: Optional[UUID] = Query(None, description="Filter by client"),
    framework: Optional[str] = Query(None, description="Filter by framework"),
    scan_status: Optional[ControlStatus] = Query(None, description="Filter by control result"),
    remediation_status: Optional[RemediationStatus] = Query(None, description="Filter by remediation status"),
    compliance_check_id: Optional[UUID] = Query(None, description="Filter by scan"),
    control_id_search: Optional[str] = Query(None, description="Substring match on control ID"),
    permission_error: Optional[bool] = Query(None, description="Filter by permission error flag"),
    include_failed_scans: bool = Query(False, description="Include findings written by failed scans"),
    skip: int = Query(0, ge=0, description="Number of records to skip for pagination"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum number of records to return"),
) -> FindingListResponse:
    """List findings with optional filtering and pagination."""
    conditions = []

    if client_id is not None:
        conditions.append(Finding.client_id == client_id)
    if framework is not None:
        conditions.append(Finding.framework == framework)
    if scan_status is not None:
        conditions.append(Finding.scan_status == scan_status.value)
    if remediation_status is not None:
        conditions.append(Finding.remediation_status == remediation_status.value)
    if compliance_check_id is not None:
        conditions.append(Finding.compliance_check_id == compliance_check_id)
    if control_id_search:
        conditions.append(Finding.control_id.ilike(f"%{control_id_search}%"))
    if permission_error is not None:
        conditions.append(Finding.permission_error == permission_error)
    if not include_failed_scans:
        conditions.append(ComplianceCheck.status != ScanStatus.FAILED.value)

    base_query = select(Finding).join(ComplianceCheck, Finding.compliance_check_id == ComplianceCheck.id)
    count_query = (
        select(func.count(Finding.id))
        .select_from(Finding)
        .join(ComplianceCheck, Finding.compliance_check_id == ComplianceCheck.id)
    )
    if conditions:
        base_query = base_query.where(and_(*conditions))
        count_query = count_query.where(and_(*conditions))

    total = (await db.execute(count_query)).scalar_one()

    result = await db.execute(
        base_query
        .order_by(Finding.framework, Finding.control_id)
        .offset(skip)
        .limit(limit)
    )
    findings = result.scalars().all()

    logger.info(f"Listed {len(findings)} findings (total: {total}, skip: {skip}, limit: {limit})")

    return FindingListResponse(
        items=[FindingResponse.model_validate(f) for f in findings],
        total=total,
        skip=skip,
        limit=limit,
    )


@router.get(
    "/history",
    response_model=List[FindingHistoryResponse],
    summary="Query archived findings",
    description="Query findings archived by later scans, newest first, for trend and audit views.",
)
async def list_findings_history(
    db: AsyncSession = Depends(get_db),
    client_id: Optional[UUID] = Query(None, description="Filter by client"),
    framework: Optional[str] = Query(None, description="Filter by framework"),
    control_id: Optional[str] = Query(None, description="Filter by exact control ID"),
    date_from: Optional[datetime] = Query(None, description="Archived on or after this time"),
    date_to: Optional[datetime] = Query(None, description="Archived on or before this time"),
    limit: int = Query(MAX_HISTORY_ROWS, ge=1, le=MAX_HISTORY_ROWS, description="Maximum rows"),
) -> List[FindingHistoryResponse]:
    """Query the findings history ledger."""
    conditions = []

    if client_id is not None:
        conditions.append(FindingHistory.client_id == client_id)
    if framework is not None:
        conditions.append(FindingHistory.framework == framework)
    if control_id is not None:
        conditions.append(FindingHistory.control_id == control_id)
    if date_from is not None:
        conditions.append(FindingHistory.archived_at >= date_from)
    if date_to is not None:
        conditions.append(FindingHistory.archived_at <= date_to)

    query = select(FindingHistory)
    if conditions:
        query = query.where(and_(*conditions))

    result = await db.execute(query.order_by(FindingHistory.archived_at.desc()).limit(limit))
    rows = result.scalars().all()

    logger.info(f"Retrieved {len(rows)} archived findings")
    return [FindingHistoryResponse.model_validate(row) for row in rows]


@router.get(
    "/{finding_id}",
    response_model=FindingResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Finding not found"},
    },
    summary="Get finding details",
)
async def get_finding(
    finding_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> FindingResponse:
    """Get a single finding."""
    finding = await _get_finding_or_404(db, finding_id)
    return FindingResponse.model_validate(finding)


@router.put(
    "/{finding_id}",
    response_model=FindingResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Finding not found"},
    },
    summary="Update remediation fields",
    description="Update remediation status, owner or notes of a finding. Status changes are "
                "appended to the status history. The same values are stored on the control's "
                "metadata and carried into future scans.",
)
async def update_finding(
    finding_id: UUID,
    update: FindingUpdateRequest,
    db: AsyncSession = Depends(get_db),
) -> FindingResponse:
    """Update the remediation fields of a finding and its control metadata.

    Args:
        finding_id: The UUID of the finding
        update: Fields to change
        db: Database session (injected)

    Returns:
        The updated finding

    Raises:
        HTTPException: 404 if finding not found
    """
    finding = await _get_finding_or_404(db, finding_id)
    provided = update.model_fields_set
    changes: Dict[str, Any] = {}

    if "remediation_status" in provided and update.remediation_status is not None:
        changes["remediation_status"] = update.remediation_status.value
        changes["status_history"] = append_status_change(
            finding.status_history,
            update.remediation_status,
            changed_by=update.changed_by,
        )
    if "assigned_owner_id" in provided:
        changes["assigned_owner_id"] = update.assigned_owner_id
    if "notes" in provided:
        changes["notes"] = update.notes

    if not changes:
        return FindingResponse.model_validate(finding)

    for key, value in changes.items():
        setattr(finding, key, value)

    await upsert_control_metadata(db, finding.client_id, finding.control_id, **changes)
    await db.flush()
    await db.refresh(finding)

    logger.info(f"Updated finding {finding_id} ({finding.control_id}): {sorted(changes)}")
    return FindingResponse.model_validate(finding)


@router.post(
    "/{finding_id}/ai-content",
    response_model=FindingResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Finding not found"},
        502: {"model": ErrorResponse, "description": "LLM provider error"},
        503: {"model": ErrorResponse, "description": "LLM provider not configured"},
    },
    summary="Generate AI business context and remediation guidance",
    description="Ask the configured LLM provider to explain the business impact of the "
                "finding and suggest remediation. The text is stored on the finding and on "
                "the control's metadata.",
)
async def generate_ai_content(
    finding_id: UUID,
    db: AsyncSession = Depends(get_db),
    llm_client: LLMClient = Depends(get_ai_client),
) -> FindingResponse:
    """Generate and store AI-authored content for a finding's control."""
    finding = await _get_finding_or_404(db, finding_id)

    control = ControlContext(
        control_id=finding.control_id,
        title=finding.control_title,
        description=finding.control_description,
        framework=finding.framework,
        scan_status=finding.scan_status,
        reason=finding.scan_reason,
        resources=finding.scan_resources or [],
    )

    try:
        content = await llm_client.generate_control_content(control)
    except Exception as e:
        logger.error(f"Error generating AI content for {finding.control_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Failed to generate AI content: {str(e)}",
        )

    changes = content.model_dump()
    for key, value in changes.items():
        setattr(finding, key, value)
    await upsert_control_metadata(db, finding.client_id, finding.control_id, **changes)
    await db.flush()
    await db.refresh(finding)

    logger.info(f"Stored AI content for finding {finding_id} ({finding.control_id})")
    return FindingResponse.model_validate(finding)
