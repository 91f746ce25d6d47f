"""Output Normalizer for raw benchmark engine results.

This module turns the nested JSON tree emitted by one ``powerpipe benchmark
run`` into a flat, deduplicated list of typed control results with derived
pass/fail/error/skip status and permission-error classification.

Everything here is pure: no I/O, no database access. The raw, untyped
engine structure never leaves this module.
"""

import json
import logging
from typing import Any, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from app.models.enums import ControlStatus, PermissionErrorType

logger = logging.getLogger(__name__)


# Access-denial phrases reported by AWS, Azure and GCP plugins (lower-case)
DEFAULT_PERMISSION_KEYWORDS: tuple[str, ...] = (
    "accessdenied",
    "access denied",
    "unauthorizedoperation",
    "unauthorized operation",
    "invaliduserid.notfound",
    "accessdeniedexception",
    "forbidden",
    "insufficient permissions",
    "permission denied",
    "user is not authorized",
    "not authorized to perform",
    "unauthorized: access is denied",
)

# Checked in order; the first type with a matching phrase wins
DEFAULT_ERROR_TYPE_RULES: tuple[tuple[PermissionErrorType, tuple[str, ...]], ...] = (
    (PermissionErrorType.ACCESS_DENIED, ("accessdenied", "access denied")),
    (PermissionErrorType.UNAUTHORIZED_OPERATION, ("unauthorized",)),
    (PermissionErrorType.FORBIDDEN, ("forbidden",)),
)

DOMAIN_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("Access Control", ("access", "312")),
    ("Encryption", ("encrypt",)),
    ("Audit & Logging", ("audit", "log")),
    ("Backup & Recovery", ("backup", "recovery")),
)

# Matches the findings.control_id column
MAX_CONTROL_ID_LENGTH = 255


# Exceptions

class BenchmarkOutputError(Exception):
    """Raised when benchmark engine output cannot be parsed or normalized."""

    def __init__(self, message: str, sample: Optional[str] = None):
        super().__init__(message)
        self.sample = sample


# Pydantic Models

class PermissionVocabulary(BaseModel):
    """Immutable vocabulary used to classify permission errors.

    Attributes:
        keywords: Lower-case phrases that mark a reason as an access denial.
        error_type_rules: Ordered (error type, phrases) pairs used to tag
            a permission error. Unmatched permission errors are tagged
            ``PermissionError``.
    """
    model_config = ConfigDict(frozen=True)

    keywords: tuple[str, ...] = Field(default=DEFAULT_PERMISSION_KEYWORDS)
    error_type_rules: tuple[tuple[PermissionErrorType, tuple[str, ...]], ...] = Field(
        default=DEFAULT_ERROR_TYPE_RULES
    )

    def classify(self, reason: Optional[str]) -> tuple[bool, Optional[PermissionErrorType]]:
        """Return (is_permission_error, error_type) for a reason text."""
        text = (reason or "").lower()
        if not text or not any(keyword in text for keyword in self.keywords):
            return False, None
        for error_type, phrases in self.error_type_rules:
            if any(phrase in text for phrase in phrases):
                return True, error_type
        return True, PermissionErrorType.PERMISSION_ERROR


DEFAULT_PERMISSION_VOCABULARY = PermissionVocabulary()


class ControlResult(BaseModel):
    """One normalized control from a benchmark run.

    Attributes:
        control_id: Opaque control identifier reported by the engine.
        title: Control title.
        description: Control description.
        status: Derived status (pass/fail/error/skip).
        reason: Raw reason text (first result's reason, else the run error).
        resources: Raw per-resource results, None when the engine sent none.
        permission_error: Whether the reason looks like an access denial.
        error_type: Permission error classification, if any.
        domain: Domain reported by the engine or derived from the control id.
        category: Category reported by the engine, if any.
    """
    control_id: str
    title: str = ""
    description: str = ""
    status: ControlStatus
    reason: Optional[str] = None
    resources: Optional[list[Any]] = None
    permission_error: bool = False
    error_type: Optional[PermissionErrorType] = None
    domain: Optional[str] = None
    category: Optional[str] = None

    @property
    def has_evidence(self) -> bool:
        return bool(self.resources)


class ControlSummary(BaseModel):
    """Aggregate counts over a list of normalized controls."""
    total: int = 0
    passed: int = 0
    failed: int = 0
    error: int = 0
    skip: int = 0
    permission_errors: int = 0

    @classmethod
    def from_controls(cls, controls: Iterable[ControlResult]) -> "ControlSummary":
        summary = cls()
        for control in controls:
            summary.total += 1
            if control.status is ControlStatus.PASS:
                summary.passed += 1
            elif control.status is ControlStatus.FAIL:
                summary.failed += 1
            elif control.status is ControlStatus.ERROR:
                summary.error += 1
            else:
                summary.skip += 1
            if control.permission_error:
                summary.permission_errors += 1
        return summary


class NormalizedBenchmark(BaseModel):
    """Normalized result of one benchmark invocation."""
    benchmark: str
    controls: list[ControlResult] = Field(default_factory=list)
    summary: ControlSummary = Field(default_factory=ControlSummary)


# Payload extraction

def extract_json_payload(output: str) -> Any:
    """Locate and parse the JSON document embedded in engine stdout.

    The engine may print version notices or upgrade banners before and
    after the JSON document. The document starts at the first ``{`` or
    ``[`` and ends at its matching closing bracket.

    Raises:
        BenchmarkOutputError: If no JSON document can be parsed.
    """
    if not output or not output.strip():
        raise BenchmarkOutputError("Benchmark output is empty")

    start = -1
    for index, char in enumerate(output):
        if char in "{[":
            start = index
            break
    if start == -1:
        raise BenchmarkOutputError("No JSON document found in benchmark output", sample=output[:500])

    depth = 0
    in_string = False
    escaped = False
    end = len(output)
    for index in range(start, len(output)):
        char = output[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in "{[":
            depth += 1
        elif char in "}]":
            depth -= 1
            if depth == 0:
                end = index + 1
                break

    payload = output[start:end]
    try:
        return json.loads(payload)
    except json.JSONDecodeError as e:
        raise BenchmarkOutputError(
            f"Benchmark output is not valid JSON: {e}",
            sample=payload[:1000],
        ) from e


# Normalization

def derive_status(summary: Any) -> ControlStatus:
    """Derive a control's status from the engine's per-control sub-counts.

    Any alarm fails the control, then any error, then any ok passes it.
    Controls with no counts are skipped.
    """
    if summary is None:
        return ControlStatus.SKIP
    if not isinstance(summary, dict):
        raise BenchmarkOutputError(f"Control summary must be an object, got {type(summary).__name__}")

    if _count(summary, "alarm") > 0:
        return ControlStatus.FAIL
    if _count(summary, "error") > 0:
        return ControlStatus.ERROR
    if _count(summary, "ok") > 0:
        return ControlStatus.PASS
    return ControlStatus.SKIP


def derive_domain(control_id: str) -> Optional[str]:
    """Guess a control's domain from keywords in its identifier."""
    lowered = control_id.lower()
    for domain, keywords in DOMAIN_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return domain
    return None


def normalize_benchmark_output(
    raw: Any,
    benchmark: str,
    vocabulary: PermissionVocabulary = DEFAULT_PERMISSION_VOCABULARY,
) -> NormalizedBenchmark:
    """Flatten a nested benchmark result tree into deduplicated controls.

    The engine groups controls hierarchically and may report the same
    control under several groups. Controls are collected depth-first into
    a map keyed by control id; a later occurrence replaces an earlier one
    only when it carries evidence and the earlier one does not.

    Args:
        raw: Parsed JSON document from one benchmark run.
        benchmark: Benchmark identifier the output belongs to.
        vocabulary: Permission-error vocabulary.

    Returns:
        NormalizedBenchmark with controls in first-seen order and summary.

    Raises:
        BenchmarkOutputError: If the structure is malformed or holds no controls.
    """
    if isinstance(raw, list):
        roots = raw
    elif isinstance(raw, dict):
        roots = [raw]
    else:
        raise BenchmarkOutputError(
            f"Benchmark output root must be an object or array, got {type(raw).__name__}"
        )

    controls: dict[str, ControlResult] = {}
    for root in roots:
        _collect_controls(root, controls, vocabulary)

    if not controls:
        raise BenchmarkOutputError(f"No controls found in output of benchmark '{benchmark}'")

    control_list = list(controls.values())
    summary = ControlSummary.from_controls(control_list)

    logger.info(
        f"Normalized benchmark '{benchmark}': {summary.total} controls "
        f"({summary.passed} pass, {summary.failed} fail, {summary.error} error, {summary.skip} skip)"
    )

    return NormalizedBenchmark(benchmark=benchmark, controls=control_list, summary=summary)


def _collect_controls(
    node: Any,
    controls: dict[str, ControlResult],
    vocabulary: PermissionVocabulary,
) -> None:
    if not isinstance(node, dict):
        raise BenchmarkOutputError(f"Benchmark group must be an object, got {type(node).__name__}")

    for raw_control in _as_list(node.get("controls"), "controls"):
        if not isinstance(raw_control, dict):
            raise BenchmarkOutputError(
                f"Control entry must be an object, got {type(raw_control).__name__}"
            )
        control_id = raw_control.get("control_id") or ""
        if not control_id:
            continue
        if not isinstance(control_id, (str, int)) or isinstance(control_id, bool):
            raise BenchmarkOutputError(
                f"Control id must be a string, got {type(control_id).__name__}"
            )
        control_id = str(control_id)
        if len(control_id) > MAX_CONTROL_ID_LENGTH:
            raise BenchmarkOutputError(
                f"Control id exceeds {MAX_CONTROL_ID_LENGTH} characters",
                sample=control_id[:200],
            )

        existing = controls.get(control_id)
        if existing is not None and (existing.has_evidence or not _as_list(raw_control.get("results"), "results")):
            continue

        controls[control_id] = _to_control_result(control_id, raw_control, vocabulary)

    for group in _as_list(node.get("groups"), "groups"):
        _collect_controls(group, controls, vocabulary)


def _to_control_result(
    control_id: str,
    raw_control: dict[str, Any],
    vocabulary: PermissionVocabulary,
) -> ControlResult:
    results = _as_list(raw_control.get("results"), "results")

    reason = None
    if results and isinstance(results[0], dict):
        reason = results[0].get("reason")
    reason = reason or raw_control.get("run_error") or None
    if reason is not None and not isinstance(reason, str):
        raise BenchmarkOutputError(
            f"Reason of control '{control_id}' must be a string, got {type(reason).__name__}"
        )

    permission_error, error_type = vocabulary.classify(reason)

    tags = raw_control.get("tags")
    if not isinstance(tags, dict):
        tags = {}

    try:
        return ControlResult(
            control_id=control_id,
            title=_text_field(raw_control, "title", control_id) or "",
            description=_text_field(raw_control, "description", control_id) or "",
            status=derive_status(raw_control.get("summary")),
            reason=reason,
            resources=results or None,
            permission_error=permission_error,
            error_type=error_type,
            domain=_text_field(raw_control, "domain", control_id) or derive_domain(control_id),
            category=_text_field(raw_control, "category", control_id) or _text_field(tags, "category", control_id),
        )
    except ValidationError as e:
        raise BenchmarkOutputError(f"Control '{control_id}' is malformed: {e}") from e


def _text_field(source: dict[str, Any], field_name: str, control_id: str) -> Optional[str]:
    value = source.get(field_name)
    if value is None or isinstance(value, str):
        return value or None
    raise BenchmarkOutputError(
        f"Field '{field_name}' of control '{control_id}' must be a string, got {type(value).__name__}"
    )


def _as_list(value: Any, field_name: str) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise BenchmarkOutputError(f"Field '{field_name}' must be an array, got {type(value).__name__}")
    return value


def _count(summary: dict[str, Any], key: str) -> int:
    value = summary.get(key)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise BenchmarkOutputError(f"Summary count '{key}' must be numeric, got {value!r}")
    return int(value)
