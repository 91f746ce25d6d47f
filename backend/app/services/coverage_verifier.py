"""Coverage Verifier for normalized benchmark results.

There is no authoritative control registry available to the scan core, so
coverage is checked heuristically: the control count of a run is compared
against an expected range for its (provider, framework), and the permission
and error counts are inspected for signs of partial visibility.
"""

import logging
from types import MappingProxyType
from typing import Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.services.output_normalizer import NormalizedBenchmark

logger = logging.getLogger(__name__)

SIGNIFICANT_SHORTFALL_RATIO = 0.8
SIGNIFICANT_EXCESS_RATIO = 1.2
HIGH_ERROR_RATE = 0.2


class ExpectedRange(BaseModel):
    """Expected number of controls for a framework on a provider."""
    model_config = ConfigDict(frozen=True)

    min: int = Field(..., ge=0)
    max: int = Field(..., ge=0)


# Estimates; actual counts drift with benchmark versions and grouping
DEFAULT_EXPECTED_RANGES: Mapping[tuple[str, str], ExpectedRange] = MappingProxyType({
    ("aws", "HIPAA"): ExpectedRange(min=130, max=350),
    ("aws", "SOC2"): ExpectedRange(min=150, max=250),
    ("aws", "ISO27001"): ExpectedRange(min=100, max=200),
    ("aws", "CIS"): ExpectedRange(min=100, max=200),
    ("aws", "NIST"): ExpectedRange(min=200, max=400),
    ("aws", "PCI-DSS"): ExpectedRange(min=100, max=200),
    ("aws", "GDPR"): ExpectedRange(min=80, max=150),
    ("aws", "FedRAMP"): ExpectedRange(min=200, max=400),
    ("azure", "HIPAA"): ExpectedRange(min=120, max=300),
    ("azure", "SOC2"): ExpectedRange(min=120, max=200),
    ("azure", "ISO27001"): ExpectedRange(min=80, max=150),
    ("azure", "CIS"): ExpectedRange(min=80, max=150),
    ("azure", "NIST"): ExpectedRange(min=150, max=300),
    ("azure", "PCI-DSS"): ExpectedRange(min=80, max=150),
    ("gcp", "HIPAA"): ExpectedRange(min=120, max=300),
    ("gcp", "SOC2"): ExpectedRange(min=120, max=200),
    ("gcp", "ISO27001"): ExpectedRange(min=80, max=150),
    ("gcp", "CIS"): ExpectedRange(min=80, max=150),
    ("gcp", "NIST"): ExpectedRange(min=150, max=300),
})


class CoverageVerdict(BaseModel):
    """Outcome of coverage verification for one benchmark run.

    Attributes:
        control_count_valid: False only when the control count is
            significantly below the expected minimum.
        expected_range: The range used, or None when none is known.
        permission_issues_detected: Whether any control hit a permission error.
        warnings: Advisory, human-readable warnings.
    """
    control_count_valid: bool = True
    expected_range: Optional[ExpectedRange] = None
    permission_issues_detected: bool = False
    warnings: list[str] = Field(default_factory=list)


def get_expected_range(
    provider: str,
    framework: str,
    ranges: Mapping[tuple[str, str], ExpectedRange] = DEFAULT_EXPECTED_RANGES,
) -> Optional[ExpectedRange]:
    """Look up the expected control-count range for a provider/framework."""
    return ranges.get((provider.lower(), framework))


def verify_coverage(
    result: NormalizedBenchmark,
    framework: str,
    provider: str,
    ranges: Mapping[tuple[str, str], ExpectedRange] = DEFAULT_EXPECTED_RANGES,
) -> CoverageVerdict:
    """Check that a normalized result plausibly covers its framework.

    Args:
        result: Normalized benchmark output.
        framework: Framework the benchmark was run for (e.g. "HIPAA").
        provider: Cloud provider of the credential (e.g. "aws").
        ranges: Expected control-count ranges keyed by (provider, framework).

    Returns:
        CoverageVerdict. Only a significant shortfall marks the count invalid;
        every other finding is a warning.
    """
    summary = result.summary
    total = summary.total
    verdict = CoverageVerdict(permission_issues_detected=summary.permission_errors > 0)

    expected = get_expected_range(provider, framework, ranges)
    if expected is not None:
        verdict.expected_range = expected
        if total < expected.min * SIGNIFICANT_SHORTFALL_RATIO:
            verdict.control_count_valid = False
            verdict.warnings.append(
                f"Control count ({total}) is significantly below expected range "
                f"({expected.min}-{expected.max}). This may indicate: missing controls due to "
                f"permissions, incomplete benchmark coverage, or benchmark version differences. "
                f"Verify benchmark exists and check for permission errors."
            )
        elif total < expected.min:
            verdict.warnings.append(
                f"Control count ({total}) is slightly below expected minimum ({expected.min}). "
                f"This may be normal for this benchmark version."
            )
        elif total > expected.max * SIGNIFICANT_EXCESS_RATIO:
            verdict.warnings.append(
                f"Control count ({total}) significantly exceeds expected maximum ({expected.max}). "
                f"This may indicate duplicate controls, benchmark version changes, or expanded "
                f"control definitions."
            )

    if summary.permission_errors > 0:
        verdict.warnings.append(
            f"{summary.permission_errors} control(s) failed due to permission errors. "
            f"Credentials may not have sufficient permissions for complete coverage."
        )

    if total > 0 and summary.error > total * HIGH_ERROR_RATE:
        verdict.warnings.append(
            f"High error rate ({summary.error}/{total} = {round(summary.error / total * 100)}%). "
            f"This may indicate permission issues or configuration problems."
        )

    if not verdict.control_count_valid:
        logger.error(
            f"Control count validation failed for {provider}/{framework}: {total} controls "
            f"(expected {expected.min}-{expected.max})"
        )
    elif verdict.warnings:
        logger.warning(f"Coverage warnings for {provider}/{framework}: {len(verdict.warnings)}")

    return verdict
