"""교차 검증 테스트"""

import pytest

from critic_core.analysis import (
    Finding,
    Priority,
    Provenance,
    Recommendation,
    Severity,
    SpecializedAnalysis,
)
from critic_core.cross_validator import CrossValidator, lines_close


def finding(agent, type="sql-injection", severity=Severity.CRITICAL, file="db.ts", line=42, confidence=0.9):
    return Finding(
        id=f"{agent}-{type}-{line}",
        type=type,
        severity=severity,
        message=f"{type} found by {agent}",
        file=file,
        line=line,
        confidence=confidence,
        provenance=(Provenance(agent, "mock"),),
    )


def analysis(agent, findings=(), recommendations=(), chunk_id="chunk-001", is_fallback=False):
    return SpecializedAnalysis(
        dimension=agent,
        chunk_id=chunk_id,
        model="mock",
        findings=list(findings),
        recommendations=list(recommendations),
        confidence=0.8,
        is_fallback=is_fallback,
        agent=agent,
    )


def recommendation(agent, priority, category="security"):
    return Recommendation(
        id=f"{agent}-r",
        priority=priority,
        category=category,
        description="parameterize query",
        provenance=(Provenance(agent, "mock"),),
    )


class TestLinesClose:
    def test_window(self):
        assert lines_close(10, 13, 3)
        assert not lines_close(10, 14, 3)

    def test_none(self):
        assert lines_close(None, None, 3)
        assert not lines_close(None, 10, 3)
        assert not lines_close(10, None, 3)


class TestCompare:
    def test_identical_findings_full_agreement(self):
        validator = CrossValidator()
        a = analysis("security", [finding("security", confidence=0.9)])
        b = analysis("architecture", [finding("architecture", confidence=0.85)])

        record = validator.compare(a, b)

        assert record.agreement_score == 1.0
        assert record.matched == 1
        assert record.conflicts == []

    def test_one_side_empty(self):
        validator = CrossValidator()
        a = analysis("architecture")
        b = analysis("security", [finding("security", severity=Severity.HIGH, confidence=0.6)])

        assert validator.compare(a, b).agreement_score == 0.0

    def test_both_empty(self):
        assert CrossValidator().compare(analysis("a"), analysis("b")).agreement_score == 0.0

    def test_confidence_delta_breaks_match(self):
        validator = CrossValidator()
        a = analysis("security", [finding("security", confidence=0.9)])
        b = analysis("architecture", [finding("architecture", confidence=0.7)])
        assert validator.compare(a, b).matched == 0

    def test_each_finding_matched_once(self):
        validator = CrossValidator()
        a = analysis("security", [finding("security", line=10), finding("security", line=11)])
        b = analysis("architecture", [finding("architecture", line=10)])

        record = validator.compare(a, b)

        assert record.matched == 1
        assert record.agreement_score == 0.5

    def test_severity_conflict(self):
        validator = CrossValidator()
        a = analysis("security", [finding("security", severity=Severity.CRITICAL, confidence=0.9)])
        b = analysis("architecture", [finding("architecture", severity=Severity.LOW, line=44, confidence=0.5)])

        conflicts = validator.compare(a, b).conflicts

        assert len(conflicts) == 1
        conflict = conflicts[0]
        assert conflict.kind == "severity"
        assert conflict.subject == "sql-injection"
        assert conflict.location == "db.ts:42"
        assert conflict.sources == ("security", "architecture")

    def test_adjacent_severity_is_not_conflict(self):
        validator = CrossValidator()
        a = analysis("security", [finding("security", severity=Severity.HIGH)])
        b = analysis("architecture", [finding("architecture", severity=Severity.MEDIUM)])
        assert validator.compare(a, b).conflicts == []

    def test_priority_conflict(self):
        validator = CrossValidator()
        a = analysis("security", recommendations=[recommendation("security", Priority.MUST_FIX)])
        b = analysis("architecture", recommendations=[recommendation("architecture", Priority.CONSIDER)])

        conflicts = validator.compare(a, b).conflicts

        assert [c.kind for c in conflicts] == ["priority"]
        assert conflicts[0].location == "chunk-001"

    def test_should_fix_is_not_priority_conflict(self):
        validator = CrossValidator()
        a = analysis("security", recommendations=[recommendation("security", Priority.MUST_FIX)])
        b = analysis("architecture", recommendations=[recommendation("architecture", Priority.SHOULD_FIX)])
        assert validator.compare(a, b).conflicts == []


class TestValidate:
    def test_no_pairs_is_full_agreement(self):
        result = CrossValidator().validate({
            "chunk-001": {"security": analysis("security", [finding("security")])},
        })
        assert result.overall_agreement == 1.0
        assert result.unit_agreement == {"chunk-001": 1.0}
        assert result.records == []

    def test_overall_is_mean_of_pairs(self):
        result = CrossValidator().validate({
            "chunk-001": {
                "security": analysis("security", [finding("security", confidence=0.9)]),
                "architecture": analysis("architecture", [finding("architecture", confidence=0.85)]),
            },
            "chunk-002": {
                "security": analysis("security", chunk_id="chunk-002"),
                "architecture": analysis(
                    "architecture", [finding("architecture", file="auth.ts")], chunk_id="chunk-002"
                ),
            },
        })

        assert result.unit_agreement == {"chunk-001": 1.0, "chunk-002": 0.0}
        assert result.overall_agreement == pytest.approx(0.5)
        assert len(result.records) == 2

    def test_pair_order_is_stable(self):
        unit = {
            "testing": analysis("testing"),
            "architecture": analysis("architecture"),
            "security": analysis("security"),
        }
        records = CrossValidator().validate({"chunk-001": unit}).records
        assert [(r.left, r.right) for r in records] == [
            ("architecture", "security"),
            ("architecture", "testing"),
            ("security", "testing"),
        ]

    def test_fallback_analyses_still_compared(self):
        fallback = analysis("security", is_fallback=True)
        result = CrossValidator().validate({
            "chunk-001": {
                "security": fallback,
                "architecture": analysis("architecture", [finding("architecture")]),
            },
        })
        assert len(result.records) == 1
        assert result.overall_agreement == 0.0

    def test_confidence_buckets(self):
        result = CrossValidator().validate({
            "chunk-001": {
                "security": analysis("security", [
                    finding("security", line=1, confidence=0.95),
                    finding("security", line=20, confidence=0.6),
                    finding("security", line=40, confidence=0.3),
                ]),
            },
        })
        assert [f.line for f in result.high_confidence] == [1]
        assert [f.line for f in result.uncertain] == [40]
