"""Unit tests for the Coverage Verifier."""

from app.models.enums import ControlStatus
from app.services.coverage_verifier import (
    DEFAULT_EXPECTED_RANGES,
    ExpectedRange,
    get_expected_range,
    verify_coverage,
)
from app.services.output_normalizer import ControlResult, ControlSummary, NormalizedBenchmark


def build_result(passed: int = 0, errors: int = 0, permission_errors: int = 0) -> NormalizedBenchmark:
    controls = [ControlResult(control_id=f"ok_{i}", status=ControlStatus.PASS) for i in range(passed)]
    controls += [
        ControlResult(
            control_id=f"err_{i}",
            status=ControlStatus.ERROR,
            permission_error=i < permission_errors,
        )
        for i in range(errors)
    ]
    return NormalizedBenchmark(
        benchmark="aws_compliance.benchmark.hipaa_security_rule_2003",
        controls=controls,
        summary=ControlSummary.from_controls(controls),
    )


RANGES = {("aws", "HIPAA"): ExpectedRange(min=200, max=350)}


class TestExpectedRanges:
    """Tests for expected range lookup."""

    def test_known_pair(self):
        assert get_expected_range("AWS", "HIPAA") == DEFAULT_EXPECTED_RANGES[("aws", "HIPAA")]

    def test_unknown_pair(self):
        assert get_expected_range("aws", "MADE-UP") is None


class TestVerifyCoverage:
    """Tests for control count and error heuristics."""

    def test_within_range_has_no_warnings(self):
        verdict = verify_coverage(build_result(passed=250), "HIPAA", "aws", RANGES)

        assert verdict.control_count_valid is True
        assert verdict.expected_range == ExpectedRange(min=200, max=350)
        assert verdict.warnings == []

    def test_significant_shortfall_is_invalid(self):
        verdict = verify_coverage(build_result(passed=130), "HIPAA", "aws", RANGES)

        assert verdict.control_count_valid is False
        assert len(verdict.warnings) == 1
        assert "significantly below expected range (200-350)" in verdict.warnings[0]

    def test_mild_shortfall_is_a_warning_only(self):
        verdict = verify_coverage(build_result(passed=170), "HIPAA", "aws", RANGES)

        assert verdict.control_count_valid is True
        assert len(verdict.warnings) == 1
        assert "slightly below expected minimum (200)" in verdict.warnings[0]

    def test_significant_excess_is_a_warning_only(self):
        verdict = verify_coverage(build_result(passed=500), "HIPAA", "aws", RANGES)

        assert verdict.control_count_valid is True
        assert "exceeds expected maximum (350)" in verdict.warnings[0]

    def test_unknown_pair_skips_range_check(self):
        verdict = verify_coverage(build_result(passed=3), "HIPAA", "gcp", RANGES)

        assert verdict.control_count_valid is True
        assert verdict.expected_range is None
        assert verdict.warnings == []

    def test_permission_errors_and_high_error_rate(self):
        verdict = verify_coverage(
            build_result(passed=200, errors=60, permission_errors=5),
            "HIPAA",
            "aws",
            RANGES,
        )

        assert verdict.control_count_valid is True
        assert verdict.permission_issues_detected is True
        assert any("5 control(s) failed due to permission errors" in w for w in verdict.warnings)
        assert any("High error rate (60/260 = 23%)" in w for w in verdict.warnings)

    def test_error_rate_at_threshold_is_not_flagged(self):
        verdict = verify_coverage(build_result(passed=200, errors=50), "HIPAA", "aws", RANGES)

        assert not any("High error rate" in w for w in verdict.warnings)
