"""Scan Orchestrator for compliance benchmark scans.

This module owns the lifecycle of a scan:
- Submission: validating the request and creating the in-progress record
- Execution: archiving the previous findings, then running every
  (active credential, framework) pair sequentially through the benchmark
  engine, the output normalizer, the coverage verifier and the metadata
  merger before writing findings
- Finalization: aggregating counts and warnings into a terminal state
- Expiry: failing in-progress scans that outlived the duration budget

A scan is ``in_progress`` until it becomes ``completed`` or ``failed``;
both terminal states are final.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Mapping, Optional, Sequence

from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import Settings, get_settings
from app.models.client import Client
from app.models.compliance_check import ComplianceCheck
from app.models.control_metadata import ControlMetadata
from app.models.enums import ControlStatus, ScanStatus
from app.models.finding import Finding
from app.services.benchmark_runner import (
    FRAMEWORK_TO_BENCHMARK,
    BenchmarkExecutionError,
    BenchmarkRunner,
    get_benchmark_name,
)
from app.services.coverage_verifier import DEFAULT_EXPECTED_RANGES, ExpectedRange, verify_coverage
from app.services.credential_store import ActiveCredential, load_active_credentials
from app.services.history_archiver import archive_findings
from app.services.metadata_merger import load_control_metadata, merge_control_metadata
from app.services.output_normalizer import (
    DEFAULT_PERMISSION_VOCABULARY,
    BenchmarkOutputError,
    ControlResult,
    ControlSummary,
    PermissionVocabulary,
    normalize_benchmark_output,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# A control reported by several pairs keeps its most severe occurrence
STATUS_SEVERITY: dict[ControlStatus, int] = {
    ControlStatus.FAIL: 3,
    ControlStatus.ERROR: 2,
    ControlStatus.PASS: 1,
    ControlStatus.SKIP: 0,
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes read back from the database as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# Custom Exceptions for Scan Submission and State Errors

class ScanSubmissionError(Exception):
    """Base exception for rejected scan submissions."""
    pass


class ClientNotFoundError(ScanSubmissionError):
    """Raised when the client of a scan request does not exist."""
    def __init__(self, message: str = "Client not found"):
        super().__init__(message)


class NoFrameworksError(ScanSubmissionError):
    """Raised when neither the request nor the client names a framework."""
    def __init__(self, message: str = "No frameworks requested or assigned to client"):
        super().__init__(message)


class NoCredentialsError(ScanSubmissionError):
    """Raised when the client has no active credentials."""
    def __init__(self, message: str = "No active credentials found for client"):
        super().__init__(message)


class ScanAlreadyRunningError(ScanSubmissionError):
    """Raised when the client already has a scan in progress."""
    def __init__(self, scan_id: Optional[uuid.UUID] = None):
        if scan_id is not None:
            message = f"Scan {scan_id} is already in progress for this client"
        else:
            message = "A scan is already in progress for this client"
        super().__init__(message)
        self.scan_id = scan_id


class ScanStateError(Exception):
    """Raised on an attempted transition out of a terminal scan state."""
    pass


class ScanTimeoutError(Exception):
    """Raised when a scan exceeds its wall-clock budget."""
    def __init__(self, elapsed: timedelta, budget: timedelta):
        message = (
            f"Scan exceeded the maximum duration of {int(budget.total_seconds() // 60)} minutes "
            f"({int(elapsed.total_seconds())}s elapsed)"
        )
        super().__init__(message)
        self.elapsed = elapsed
        self.budget = budget


# Pydantic Models

class ScanRunSummary(BaseModel):
    """Outcome of one orchestration run.

    Attributes:
        scan_id: The scan that was run.
        status: Final scan status.
        total_controls: Controls written as findings.
        pairs_attempted: Pairs handed to the benchmark engine.
        pairs_succeeded: Pairs whose findings were written.
        pairs_failed: Pairs that failed and were skipped.
        pairs_skipped: Pairs without a benchmark mapping.
        archived_findings: Findings moved to history before the run.
        warnings: Verification warnings, prefixed with the benchmark name.
        errors: Per-pair errors, prefixed with the benchmark name.
        error_message: Reason for a failed scan.
    """
    scan_id: uuid.UUID
    status: ScanStatus
    total_controls: int = 0
    passed_controls: int = 0
    failed_controls: int = 0
    error_controls: int = 0
    skip_controls: int = 0
    pairs_attempted: int = 0
    pairs_succeeded: int = 0
    pairs_failed: int = 0
    pairs_skipped: int = 0
    archived_findings: int = 0
    warnings: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    error_message: Optional[str] = None


class PairResult(BaseModel):
    """Findings written or replaced by one (credential, framework) pair."""
    benchmark: str
    controls: list[ControlResult] = Field(default_factory=list)
    replaced: int = 0
    warnings: list[str] = Field(default_factory=list)



def outranks(candidate: ControlResult, existing: ControlResult) -> bool:
    """Whether a repeated control should replace the occurrence already written.

    An occurrence with resource evidence beats one without; otherwise the
    more severe status wins (fail, error, pass, skip). Ties keep the
    existing occurrence.
    """
    if candidate.has_evidence != existing.has_evidence:
        return candidate.has_evidence
    return STATUS_SEVERITY[candidate.status] > STATUS_SEVERITY[existing.status]


# State transitions

def transition_scan(
    scan: ComplianceCheck,
    status: ScanStatus,
    now: datetime,
    error_message: Optional[str] = None,
) -> None:
    """Move an in-progress scan to a terminal state.

    Raises:
        ScanStateError: If the scan is already terminal or the target is not.
    """
    current = ScanStatus(scan.status)
    if current.is_terminal:
        raise ScanStateError(f"Scan {scan.id} is already {current.value}")
    if not status.is_terminal:
        raise ScanStateError(f"Scan {scan.id} cannot move to {status.value}")
    scan.status = status.value
    scan.completed_at = now
    if error_message is not None:
        scan.error_message = error_message


async def expire_stale_scans(
    session: AsyncSession,
    now: Optional[datetime] = None,
    max_duration_minutes: Optional[int] = None,
    client_id: Optional[uuid.UUID] = None,
) -> list[uuid.UUID]:
    """Fail every in-progress scan older than the duration budget.

    Findings written by an expired scan are kept. The session is flushed,
    not committed.

    Returns:
        IDs of the scans that were expired.
    """
    now = now or utc_now()
    minutes = max_duration_minutes or get_settings().max_scan_duration_minutes
    budget = timedelta(minutes=minutes)

    query = select(ComplianceCheck).where(ComplianceCheck.status == ScanStatus.IN_PROGRESS.value)
    if client_id is not None:
        query = query.where(ComplianceCheck.client_id == client_id)
    result = await session.execute(query)

    expired: list[uuid.UUID] = []
    for scan in result.scalars().all():
        elapsed = now - as_utc(scan.started_at)
        if elapsed <= budget:
            continue
        transition_scan(
            scan,
            ScanStatus.FAILED,
            now,
            error_message=str(ScanTimeoutError(elapsed, budget)),
        )
        expired.append(scan.id)
        logger.warning(f"Scan {scan.id} exceeded {minutes} minutes and was marked failed")

    if expired:
        await session.flush()
    return expired


async def start_scan(
    session: AsyncSession,
    client_id: uuid.UUID,
    frameworks: Optional[Sequence[str]] = None,
    now: Optional[datetime] = None,
) -> ComplianceCheck:
    """Validate a scan request and create its in-progress record.

    Args:
        session: Database session. The new scan is flushed, not committed.
        client_id: Client to scan.
        frameworks: Frameworks to scan; defaults to the client's assigned
            frameworks.
        now: Submission time, recorded as the scan's start.

    Returns:
        The created ComplianceCheck.

    Raises:
        ClientNotFoundError: If the client does not exist.
        NoFrameworksError: If no framework is requested or assigned.
        NoCredentialsError: If the client has no active credentials.
        ScanAlreadyRunningError: If another scan for the client is in progress.
    """
    now = now or utc_now()

    client = await session.get(Client, client_id)
    if client is None:
        raise ClientNotFoundError(f"Client {client_id} not found")

    frameworks_to_scan = list(dict.fromkeys(frameworks or client.assigned_frameworks or []))
    if not frameworks_to_scan:
        raise NoFrameworksError()

    credentials = await load_active_credentials(session, client_id)
    if not credentials:
        raise NoCredentialsError()

    await expire_stale_scans(session, now, client_id=client_id)

    result = await session.execute(
        select(ComplianceCheck.id).where(
            ComplianceCheck.client_id == client_id,
            ComplianceCheck.status == ScanStatus.IN_PROGRESS.value,
        )
    )
    running_id = result.scalars().first()
    if running_id is not None:
        raise ScanAlreadyRunningError(running_id)

    scan = ComplianceCheck(
        client_id=client_id,
        frameworks=frameworks_to_scan,
        status=ScanStatus.IN_PROGRESS.value,
        started_at=now,
        completed_at=None,
        total_controls=0,
        passed_controls=0,
        failed_controls=0,
        error_controls=0,
        skip_controls=0,
        verification_warnings=[],
        error_message=None,
    )
    session.add(scan)
    try:
        await session.flush()
    except IntegrityError as e:
        await session.rollback()
        raise ScanAlreadyRunningError() from e

    logger.info(
        f"Created scan {scan.id} for client {client_id}: "
        f"{', '.join(frameworks_to_scan)} across {len(credentials)} credential(s)"
    )
    return scan


class ScanOrchestrator:
    """Runs a submitted scan to a terminal state.

    Collaborators are injected so tests can substitute the engine, the
    clock and the database.

    Usage:
        orchestrator = ScanOrchestrator()
        summary = await orchestrator.run(scan_id)
    """

    def __init__(
        self,
        runner: Optional[BenchmarkRunner] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utc_now,
        vocabulary: PermissionVocabulary = DEFAULT_PERMISSION_VOCABULARY,
        expected_ranges: Mapping[tuple[str, str], ExpectedRange] = DEFAULT_EXPECTED_RANGES,
        benchmark_mapping: Mapping[str, Mapping[str, str]] = FRAMEWORK_TO_BENCHMARK,
    ):
        """Initialize the ScanOrchestrator."""
        self._settings = settings or get_settings()
        self._runner = runner or BenchmarkRunner(self._settings)
        if session_factory is None:
            from app.database import async_session_maker
            session_factory = async_session_maker
        self._session_factory = session_factory
        self._clock = clock
        self._vocabulary = vocabulary
        self._expected_ranges = expected_ranges
        self._benchmark_mapping = benchmark_mapping

    @property
    def budget(self) -> timedelta:
        return timedelta(minutes=self._settings.max_scan_duration_minutes)

    async def run(self, scan_id: uuid.UUID) -> ScanRunSummary:
        """Execute a scan and move it to a terminal state.

        Per-pair failures never escape this method. Any unexpected error
        marks the scan failed.

        Raises:
            ScanStateError: If the scan does not exist or is already terminal.
        """
        async with self._session_factory() as session:
            scan = await session.get(ComplianceCheck, scan_id)
            if scan is None:
                raise ScanStateError(f"Scan {scan_id} does not exist")
            if scan.is_terminal:
                raise ScanStateError(f"Scan {scan_id} is already {scan.status}")

            summary = ScanRunSummary(scan_id=scan_id, status=ScanStatus.IN_PROGRESS)
            try:
                await self._execute(session, scan, summary)
            except ScanTimeoutError as e:
                logger.error(f"Scan {scan_id} timed out: {e}")
                await self._finalize(session, scan_id, summary, ScanStatus.FAILED, str(e))
            except Exception as e:
                logger.exception(f"Scan {scan_id} failed unexpectedly: {e}")
                await session.rollback()
                await self._finalize(
                    session, scan_id, summary, ScanStatus.FAILED, f"Scan failed unexpectedly: {e}"
                )
            return summary

    async def _execute(
        self,
        session: AsyncSession,
        scan: ComplianceCheck,
        summary: ScanRunSummary,
    ) -> None:
        # Plain values only from here on; a rollback expires ORM instances
        scan_id = scan.id
        client_id = scan.client_id
        frameworks = list(scan.frameworks or [])
        started_at = as_utc(scan.started_at)

        self._check_budget(started_at)

        logger.info(f"Starting scan {scan_id} for client {client_id}: {', '.join(frameworks)}")

        credentials = await load_active_credentials(session, client_id)

        summary.archived_findings = await archive_findings(session, client_id, frameworks, scan_id)
        await session.commit()

        written: dict[str, ControlResult] = {}

        for credential in credentials:
            for framework in frameworks:
                remaining = self._check_budget(started_at)

                benchmark = get_benchmark_name(framework, credential.provider, self._benchmark_mapping)
                if not benchmark:
                    logger.warning(f"No benchmark found for framework {framework} and provider {credential.provider}")
                    summary.pairs_skipped += 1
                    summary.warnings.append(
                        f"No benchmark available for {framework} on {credential.provider}; skipped"
                    )
                    continue

                summary.pairs_attempted += 1
                timeout = min(float(self._settings.benchmark_timeout_seconds), remaining.total_seconds())
                try:
                    pair = await self._run_pair(
                        session, scan_id, client_id, credential, framework, benchmark,
                        timeout, written,
                    )
                except (BenchmarkExecutionError, BenchmarkOutputError, SQLAlchemyError) as e:
                    await session.rollback()
                    summary.pairs_failed += 1
                    summary.errors.append(f"{benchmark}: {e}")
                    logger.error(f"Error running benchmark {benchmark} for scan {scan_id}: {e}")
                    continue

                summary.pairs_succeeded += 1
                written.update((c.control_id, c) for c in pair.controls)
                summary.warnings.extend(pair.warnings)
                self._tally(summary, written.values())

        if summary.pairs_succeeded == 0:
            if summary.pairs_attempted == 0:
                message = "No benchmarks were executed. Check framework/provider configuration."
            else:
                message = (
                    f"All {summary.pairs_attempted} benchmark(s) failed to execute. "
                    f"Errors: {'; '.join(summary.errors)}"
                )
            logger.error(f"Scan {scan_id} failed: {message}")
            await self._finalize(session, scan_id, summary, ScanStatus.FAILED, message)
            return

        await self._finalize(session, scan_id, summary, ScanStatus.COMPLETED)

    async def _run_pair(
        self,
        session: AsyncSession,
        scan_id: uuid.UUID,
        client_id: uuid.UUID,
        credential: ActiveCredential,
        framework: str,
        benchmark: str,
        timeout_seconds: float,
        written: Mapping[str, ControlResult],
    ) -> PairResult:
        """Run one pair and commit its findings.

        Controls already written by an earlier pair of this scan update that
        finding only when they outrank it. Returns the controls written or
        replaced.
        """
        logger.info(f"Running benchmark: {benchmark} for provider: {credential.provider}")

        raw = await self._runner.run(benchmark, credential, timeout_seconds=timeout_seconds)
        normalized = normalize_benchmark_output(raw, benchmark, self._vocabulary)

        verdict = verify_coverage(normalized, framework, credential.provider, self._expected_ranges)
        warnings = [f"{benchmark}: {warning}" for warning in verdict.warnings]

        fresh: list[ControlResult] = []
        replacements: dict[str, ControlResult] = {}
        for control in normalized.controls:
            existing = written.get(control.control_id)
            if existing is None:
                fresh.append(control)
            elif outranks(control, existing):
                replacements[control.control_id] = control

        kept = len(normalized.controls) - len(fresh) - len(replacements)
        if kept:
            logger.info(f"Keeping {kept} control(s) of {benchmark} already written by this scan")

        metadata = await load_control_metadata(
            session, client_id, [c.control_id for c in fresh] + list(replacements)
        )
        session.add_all([
            self._build_finding(scan_id, client_id, framework, control, metadata.get(control.control_id))
            for control in fresh
        ])

        if replacements:
            result = await session.execute(
                select(Finding).where(
                    Finding.compliance_check_id == scan_id,
                    Finding.control_id.in_(list(replacements)),
                )
            )
            for finding in result.scalars().all():
                control = replacements[finding.control_id]
                self._apply_control(finding, framework, control, metadata.get(control.control_id))
            logger.info(f"Replaced {len(replacements)} finding(s) with more severe results from {benchmark}")

        await session.commit()

        logger.info(
            f"Benchmark completed: {benchmark} - Total: {normalized.summary.total}, "
            f"Passed: {normalized.summary.passed}, Failed: {normalized.summary.failed}"
        )
        return PairResult(
            benchmark=benchmark,
            controls=fresh + list(replacements.values()),
            replaced=len(replacements),
            warnings=warnings,
        )

    @classmethod
    def _build_finding(
        cls,
        scan_id: uuid.UUID,
        client_id: uuid.UUID,
        framework: str,
        control: ControlResult,
        metadata: Optional[ControlMetadata],
    ) -> Finding:
        merged = merge_control_metadata(control.status, metadata)
        finding = Finding(
            client_id=client_id,
            compliance_check_id=scan_id,
            control_id=control.control_id,
            assigned_owner_id=merged.assigned_owner_id,
            notes=merged.notes,
            status_history=merged.status_history,
            ai_business_context=merged.ai_business_context,
            ai_remediation_guidance=merged.ai_remediation_guidance,
        )
        cls._apply_control(finding, framework, control, metadata)
        return finding

    @staticmethod
    def _apply_control(
        finding: Finding,
        framework: str,
        control: ControlResult,
        metadata: Optional[ControlMetadata],
    ) -> None:
        """Copy a control's scan result onto a finding."""
        finding.control_title = control.title[:500]
        finding.control_description = control.description or None
        finding.framework = framework
        finding.domain = control.domain
        finding.category = control.category
        finding.scan_status = control.status.value
        finding.scan_reason = control.reason
        finding.scan_resources = control.resources
        finding.permission_error = control.permission_error
        finding.error_type = control.error_type.value if control.error_type else None
        finding.remediation_status = merge_control_metadata(control.status, metadata).remediation_status.value

    def _check_budget(self, started_at: datetime) -> timedelta:
        """Return the remaining budget, raising once it is used up."""
        elapsed = self._clock() - started_at
        remaining = self.budget - elapsed
        if remaining.total_seconds() <= 0:
            raise ScanTimeoutError(elapsed, self.budget)
        return remaining

    @staticmethod
    def _tally(summary: ScanRunSummary, controls: Iterable[ControlResult]) -> None:
        counts = ControlSummary.from_controls(controls)
        summary.total_controls = counts.total
        summary.passed_controls = counts.passed
        summary.failed_controls = counts.failed
        summary.error_controls = counts.error
        summary.skip_controls = counts.skip

    async def _finalize(
        self,
        session: AsyncSession,
        scan_id: uuid.UUID,
        summary: ScanRunSummary,
        status: ScanStatus,
        error_message: Optional[str] = None,
    ) -> None:
        """Write the terminal state, counts and warnings in one commit."""
        scan = await session.get(ComplianceCheck, scan_id, populate_existing=True)
        if scan is None:
            raise ScanStateError(f"Scan {scan_id} does not exist")

        if scan.is_terminal:
            # Expired by the stale-scan sweep while running
            logger.warning(f"Scan {scan_id} was already {scan.status}; leaving it unchanged")
            summary.status = ScanStatus(scan.status)
            summary.error_message = scan.error_message
            return

        transition_scan(scan, status, self._clock(), error_message=error_message)
        scan.total_controls = summary.total_controls
        scan.passed_controls = summary.passed_controls
        scan.failed_controls = summary.failed_controls
        scan.error_controls = summary.error_controls
        scan.skip_controls = summary.skip_controls
        scan.verification_warnings = list(summary.warnings)
        await session.commit()

        summary.status = status
        summary.error_message = error_message

        if status is ScanStatus.COMPLETED and summary.warnings:
            logger.warning(f"Scan {scan_id} completed with {len(summary.warnings)} verification warning(s)")
        elif status is ScanStatus.COMPLETED:
            logger.info(f"Scan {scan_id} completed: {summary.total_controls} controls")
        else:
            logger.error(f"Scan {scan_id} marked failed: {error_message}")


def get_scan_orchestrator() -> ScanOrchestrator:
    """Get a ScanOrchestrator instance."""
    return ScanOrchestrator()
