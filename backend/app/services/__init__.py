"""Services package for business logic components."""

from app.services.benchmark_runner import (
    BenchmarkCommandError,
    BenchmarkExecutionError,
    BenchmarkRunner,
    BenchmarkTimeoutError,
    EngineUnavailableError,
    get_benchmark_name,
    get_benchmark_runner,
)
from app.services.coverage_verifier import CoverageVerdict, ExpectedRange, verify_coverage
from app.services.history_archiver import archive_findings
from app.services.llm_client import LLMClient, get_llm_client
from app.services.metadata_merger import (
    MergedRemediation,
    load_control_metadata,
    merge_control_metadata,
    upsert_control_metadata,
)
from app.services.output_normalizer import (
    BenchmarkOutputError,
    NormalizedBenchmark,
    PermissionVocabulary,
    normalize_benchmark_output,
)
from app.services.scan_orchestrator import (
    ClientNotFoundError,
    NoCredentialsError,
    NoFrameworksError,
    ScanAlreadyRunningError,
    ScanOrchestrator,
    ScanStateError,
    ScanSubmissionError,
    expire_stale_scans,
    start_scan,
)

__all__ = [
    "BenchmarkRunner",
    "get_benchmark_runner",
    "get_benchmark_name",
    "BenchmarkExecutionError",
    "BenchmarkCommandError",
    "BenchmarkTimeoutError",
    "EngineUnavailableError",
    "BenchmarkOutputError",
    "NormalizedBenchmark",
    "PermissionVocabulary",
    "normalize_benchmark_output",
    "CoverageVerdict",
    "ExpectedRange",
    "verify_coverage",
    "archive_findings",
    "MergedRemediation",
    "merge_control_metadata",
    "load_control_metadata",
    "upsert_control_metadata",
    "ScanOrchestrator",
    "start_scan",
    "expire_stale_scans",
    "ScanSubmissionError",
    "ScanAlreadyRunningError",
    "NoCredentialsError",
    "NoFrameworksError",
    "ClientNotFoundError",
    "ScanStateError",
    "LLMClient",
    "get_llm_client",
]
