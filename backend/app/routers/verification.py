"""Verification API routes.

This module provides FastAPI endpoints that help judge whether scan results
can be trusted:
- Verification report for a scan (counts, warnings, permission errors,
  recommendations)
- Benchmarks installed in the engine
- Expected control-count ranges used by coverage verification
- Credential test run of a single benchmark
"""

import logging
from typing import Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.models.compliance_check import ComplianceCheck
from app.models.enums import ControlStatus, ScanStatus
from app.models.finding import Finding
from app.routers.findings import ErrorResponse
from app.services.benchmark_runner import (
    BenchmarkExecutionError,
    BenchmarkInfo,
    BenchmarkRunner,
    BenchmarkTimeoutError,
    EngineUnavailableError,
    get_benchmark_name,
    get_benchmark_runner,
)
from app.services.coverage_verifier import DEFAULT_EXPECTED_RANGES, CoverageVerdict, verify_coverage
from app.services.credential_store import load_active_credentials
from app.services.output_normalizer import BenchmarkOutputError, normalize_benchmark_output

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/verification", tags=["Verification"])

MAX_PERMISSION_ERROR_EXAMPLES = 20
HIGH_ERROR_RATE_PERCENT = 20
LOW_CONTROL_COUNT = 100


# Pydantic Models

class ControlCounts(BaseModel):
    """Control counts of the findings a scan wrote."""
    total: int = 0
    passed: int = 0
    failed: int = 0
    error: int = 0
    skipped: int = 0


class PermissionErrorExample(BaseModel):
    """A control that failed because the credential lacked access."""
    control_id: str
    title: str
    reason: Optional[str] = None


class PermissionErrorSummary(BaseModel):
    """Permission errors found in a scan."""
    count: int = 0
    examples: List[PermissionErrorExample] = Field(default_factory=list)


class ScanVerificationReport(BaseModel):
    """Response model for a scan verification report."""
    scan_id: UUID
    status: str
    frameworks: List[str]
    control_counts: ControlCounts
    warnings: List[str] = Field(default_factory=list)
    error_message: Optional[str] = None
    permission_errors: PermissionErrorSummary
    recommendations: List[str] = Field(default_factory=list)


class BenchmarkListResponse(BaseModel):
    """Response model for installed benchmarks."""
    provider: str
    total: int
    benchmarks: List[BenchmarkInfo]


class ExpectedRangeResponse(BaseModel):
    """Response model for one expected control-count range."""
    provider: str
    framework: str
    min: int
    max: int


class CredentialTestRequest(BaseModel):
    """Request model for testing a client's credential."""
    client_id: UUID = Field(..., description="Client owning the credential")
    provider: str = Field(..., description="Cloud provider: aws, azure or gcp")


class CredentialTestResponse(BaseModel):
    """Response model for a credential test run."""
    success: bool
    provider: str
    framework: str
    benchmark: str
    control_count: int
    permission_errors: int
    verification: CoverageVerdict


# Helpers

def build_recommendations(
    scan_status: str,
    counts: ControlCounts,
    permission_error_count: int,
) -> List[str]:
    """Suggest follow-up actions for a scan's results."""
    recommendations: List[str] = []

    error_rate = (counts.error / counts.total * 100) if counts.total > 0 else 0.0

    if permission_error_count > 0:
        recommendations.append(
            f"{permission_error_count} control(s) failed due to permission errors. "
            f"Review the cloud IAM permissions of the scanning credential to ensure full coverage."
        )

    if error_rate > HIGH_ERROR_RATE_PERCENT:
        recommendations.append(
            f"High error rate ({error_rate:.1f}%). This may indicate permission issues or "
            f"configuration problems."
        )

    if counts.total == 0 and scan_status == ScanStatus.COMPLETED.value:
        recommendations.append(
            "No controls found. This may indicate a benchmark configuration issue or permission problem."
        )
    elif counts.total < LOW_CONTROL_COUNT:
        recommendations.append(
            f"Low control count ({counts.total}). Verify benchmark coverage and check for missing controls."
        )

    return recommendations


# API Endpoints

@router.get(
    "/scan/{scan_id}",
    response_model=ScanVerificationReport,
    responses={
        404: {"model": ErrorResponse, "description": "Scan not found"},
    },
    summary="Get scan verification report",
    description="Summarize how trustworthy a scan's results are: control counts by result, "
                "coverage warnings recorded during the scan, permission errors and "
                "recommended follow-ups.",
)
async def get_scan_verification(
    scan_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> ScanVerificationReport:
    """Build the verification report for a scan.

    Raises:
        HTTPException: 404 if scan not found
    """
    scan = await db.get(ComplianceCheck, scan_id)
    if scan is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Scan with ID '{scan_id}' not found.",
        )

    def count_status(control_status: ControlStatus):
        return func.sum(case((Finding.scan_status == control_status.value, 1), else_=0))

    counts_row = (await db.execute(
        select(
            func.count(Finding.id),
            count_status(ControlStatus.PASS),
            count_status(ControlStatus.FAIL),
            count_status(ControlStatus.ERROR),
            count_status(ControlStatus.SKIP),
        ).where(Finding.compliance_check_id == scan_id)
    )).one()
    counts = ControlCounts(
        total=counts_row[0] or 0,
        passed=counts_row[1] or 0,
        failed=counts_row[2] or 0,
        error=counts_row[3] or 0,
        skipped=counts_row[4] or 0,
    )

    permission_filter = (
        Finding.compliance_check_id == scan_id,
        Finding.permission_error == True,  # noqa: E712
    )
    permission_count = (await db.execute(
        select(func.count(Finding.id)).where(*permission_filter)
    )).scalar_one()
    examples_result = await db.execute(
        select(Finding)
        .where(*permission_filter)
        .order_by(Finding.control_id)
        .limit(MAX_PERMISSION_ERROR_EXAMPLES)
    )
    examples = [
        PermissionErrorExample(control_id=f.control_id, title=f.control_title, reason=f.scan_reason)
        for f in examples_result.scalars().all()
    ]

    logger.info(f"Built verification report for scan {scan_id}")

    return ScanVerificationReport(
        scan_id=scan.id,
        status=scan.status,
        frameworks=list(scan.frameworks or []),
        control_counts=counts,
        warnings=list(scan.verification_warnings or []),
        error_message=scan.error_message,
        permission_errors=PermissionErrorSummary(count=permission_count, examples=examples),
        recommendations=build_recommendations(scan.status, counts, permission_count),
    )


@router.get(
    "/benchmarks",
    response_model=BenchmarkListResponse,
    responses={
        503: {"model": ErrorResponse, "description": "Benchmark engine unavailable"},
    },
    summary="List installed benchmarks",
    description="Ask the benchmark engine which benchmarks are installed, optionally for one provider.",
)
async def list_benchmarks(
    provider: Optional[str] = Query(None, description="Filter by provider: aws, azure or gcp"),
    runner: BenchmarkRunner = Depends(get_benchmark_runner),
) -> BenchmarkListResponse:
    """List benchmarks installed in the engine."""
    try:
        benchmarks = await runner.discover_benchmarks(provider)
    except BenchmarkExecutionError as e:
        logger.error(f"Benchmark discovery failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Failed to discover benchmarks: {str(e)}",
        )

    return BenchmarkListResponse(
        provider=provider or "all",
        total=len(benchmarks),
        benchmarks=benchmarks,
    )


@router.get(
    "/expected-ranges",
    response_model=List[ExpectedRangeResponse],
    summary="List expected control-count ranges",
    description="The control-count ranges coverage verification compares each benchmark run against.",
)
async def list_expected_ranges() -> List[ExpectedRangeResponse]:
    """List the expected control-count ranges."""
    return [
        ExpectedRangeResponse(provider=provider, framework=framework, min=r.min, max=r.max)
        for (provider, framework), r in DEFAULT_EXPECTED_RANGES.items()
    ]


# Frameworks used to exercise a credential, by provider
CREDENTIAL_TEST_FRAMEWORKS: Dict[str, str] = {"aws": "HIPAA"}
DEFAULT_CREDENTIAL_TEST_FRAMEWORK = "SOC2"


@router.post(
    "/test-credentials",
    response_model=CredentialTestResponse,
    responses={
        400: {"model": ErrorResponse, "description": "No benchmark available for provider"},
        404: {"model": ErrorResponse, "description": "No active credential found"},
        502: {"model": ErrorResponse, "description": "Benchmark run failed"},
        503: {"model": ErrorResponse, "description": "Benchmark engine unavailable"},
        504: {"model": ErrorResponse, "description": "Benchmark run timed out"},
    },
    summary="Test a client's credential",
    description="Run one benchmark with the client's active credential for a provider and "
                "report the control count, permission errors and coverage verdict.",
)
async def test_credentials(
    request: CredentialTestRequest,
    db: AsyncSession = Depends(get_db),
    runner: BenchmarkRunner = Depends(get_benchmark_runner),
) -> CredentialTestResponse:
    """Run a single benchmark to check a credential's permissions."""
    provider = request.provider.lower()
    credentials = [c for c in await load_active_credentials(db, request.client_id) if c.provider == provider]
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No active {provider} credentials found for client {request.client_id}.",
        )

    framework = CREDENTIAL_TEST_FRAMEWORKS.get(provider, DEFAULT_CREDENTIAL_TEST_FRAMEWORK)
    benchmark = get_benchmark_name(framework, provider)
    if not benchmark:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"No benchmark available for {framework} on {provider}.",
        )

    try:
        raw = await runner.run(benchmark, credentials[0])
        result = normalize_benchmark_output(raw, benchmark)
    except EngineUnavailableError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    except BenchmarkTimeoutError as e:
        raise HTTPException(status_code=status.HTTP_504_GATEWAY_TIMEOUT, detail=str(e))
    except (BenchmarkExecutionError, BenchmarkOutputError) as e:
        logger.error(f"Credential test failed for client {request.client_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Credential test failed: {str(e)}",
        )

    verdict = verify_coverage(result, framework, provider)
    logger.info(
        f"Credential test for client {request.client_id} ({provider}): "
        f"{result.summary.total} controls, {result.summary.permission_errors} permission errors"
    )

    return CredentialTestResponse(
        success=True,
        provider=provider,
        framework=framework,
        benchmark=benchmark,
        control_count=result.summary.total,
        permission_errors=result.summary.permission_errors,
        verification=verdict,
    )
