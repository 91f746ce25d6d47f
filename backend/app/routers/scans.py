"""Scan API routes.

This module provides FastAPI endpoints for compliance scans:
- Submit a scan (runs in the background)
- List scans with filtering
- Get a scan with its findings
"""

import logging
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.models.compliance_check import ComplianceCheck
from app.models.enums import ScanStatus
from app.models.finding import Finding
from app.routers.findings import ErrorResponse, FindingResponse
from app.services.scan_orchestrator import (
    ClientNotFoundError,
    NoCredentialsError,
    NoFrameworksError,
    ScanAlreadyRunningError,
    expire_stale_scans,
    start_scan,
)
from app.services.scheduler import ScanScheduler, get_scan_scheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/scans", tags=["Scans"])


def get_scheduler() -> ScanScheduler:
    """Dependency to get the scan scheduler instance."""
    return get_scan_scheduler()


# Pydantic Models

class ScanCreateRequest(BaseModel):
    """Request model for submitting a scan."""
    client_id: UUID = Field(..., description="Client to scan")
    frameworks: Optional[List[str]] = Field(
        None,
        description="Frameworks to scan; defaults to the client's assigned frameworks",
    )


class ScanResponse(BaseModel):
    """Response model for a scan."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    client_id: UUID
    frameworks: List[str]
    status: str
    total_controls: int
    passed_controls: int
    failed_controls: int
    error_controls: int
    skip_controls: int
    verification_warnings: List[str] = Field(default_factory=list)
    error_message: Optional[str] = None
    started_at: datetime
    completed_at: Optional[datetime] = None


class ScanDetailResponse(ScanResponse):
    """Response model for a scan with its findings."""
    findings: List[FindingResponse] = Field(default_factory=list)


class ScanListResponse(BaseModel):
    """Response model for a paginated scan list."""
    items: List[ScanResponse]
    total: int
    skip: int
    limit: int


# API Endpoints

@router.post(
    "",
    response_model=ScanResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"model": ErrorResponse, "description": "No frameworks or no active credentials"},
        404: {"model": ErrorResponse, "description": "Client not found"},
        409: {"model": ErrorResponse, "description": "A scan is already running for the client"},
    },
    summary="Start a compliance scan",
    description="Create an in-progress scan and run it in the background. The scan runs every "
                "framework against every active credential of the client. Poll the scan to "
                "follow its progress.",
)
async def create_scan(
    request: ScanCreateRequest,
    db: AsyncSession = Depends(get_db),
    scheduler: ScanScheduler = Depends(get_scheduler),
) -> ScanResponse:
    """Submit a scan for background execution.

    Args:
        request: The client and optional framework list
        db: Database session (injected)
        scheduler: Scan scheduler (injected)

    Returns:
        The created scan in the in_progress state

    Raises:
        HTTPException: 404 if the client does not exist, 400 if there is
            nothing to scan, 409 if the client already has a running scan
    """
    try:
        scan = await start_scan(db, request.client_id, request.frameworks)
    except ClientNotFoundError as e:
        logger.warning(f"Scan rejected: {e}")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except (NoFrameworksError, NoCredentialsError) as e:
        logger.warning(f"Scan rejected for client {request.client_id}: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except ScanAlreadyRunningError as e:
        logger.warning(f"Scan rejected for client {request.client_id}: {e}")
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    # The background job reads the scan from its own session
    await db.commit()
    scheduler.submit_scan(scan.id)

    return ScanResponse.model_validate(scan)


@router.get(
    "",
    response_model=ScanListResponse,
    summary="List scans",
    description="List scans, newest first. In-progress scans that exceeded the maximum scan "
                "duration are marked failed before listing.",
)
async def list_scans(
    db: AsyncSession = Depends(get_db),
    client_id: Optional[UUID] = Query(None, description="Filter by client"),
    status_filter: Optional[ScanStatus] = Query(None, alias="status", description="Filter by scan status"),
    skip: int = Query(0, ge=0, description="Number of records to skip for pagination"),
    limit: int = Query(50, ge=1, le=100, description="Maximum number of records to return"),
) -> ScanListResponse:
    """List scans with optional filtering and pagination."""
    await expire_stale_scans(db)

    conditions = []
    if client_id is not None:
        conditions.append(ComplianceCheck.client_id == client_id)
    if status_filter is not None:
        conditions.append(ComplianceCheck.status == status_filter.value)

    query = select(ComplianceCheck)
    count_query = select(func.count(ComplianceCheck.id))
    if conditions:
        query = query.where(and_(*conditions))
        count_query = count_query.where(and_(*conditions))

    total = (await db.execute(count_query)).scalar_one()
    result = await db.execute(
        query.order_by(ComplianceCheck.started_at.desc()).offset(skip).limit(limit)
    )
    scans = result.scalars().all()

    logger.info(f"Listed {len(scans)} scans (total: {total}, skip: {skip}, limit: {limit})")

    return ScanListResponse(
        items=[ScanResponse.model_validate(s) for s in scans],
        total=total,
        skip=skip,
        limit=limit,
    )


@router.get(
    "/{scan_id}",
    response_model=ScanDetailResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Scan not found"},
    },
    summary="Get scan details",
    description="Get a scan with the findings it wrote that have not yet been archived.",
)
async def get_scan(
    scan_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> ScanDetailResponse:
    """Get a scan and its findings.

    Raises:
        HTTPException: 404 if scan not found
    """
    await expire_stale_scans(db)

    scan = await db.get(ComplianceCheck, scan_id)
    if scan is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Scan with ID '{scan_id}' not found.",
        )

    result = await db.execute(
        select(Finding)
        .where(Finding.compliance_check_id == scan_id)
        .order_by(Finding.framework, Finding.control_id)
    )
    findings = result.scalars().all()

    response = ScanResponse.model_validate(scan)
    return ScanDetailResponse(
        **response.model_dump(),
        findings=[FindingResponse.model_validate(f) for f in findings],
    )
