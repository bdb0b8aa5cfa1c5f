"""분석 데이터 모델 테스트"""

import pytest
from dataclasses import FrozenInstanceError

from critic_core.analysis import (
    Conflict,
    ConsensusResult,
    ConsensusStrategy,
    Finding,
    Priority,
    Provenance,
    Recommendation,
    RefinementIteration,
    RiskLevel,
    SelfCritique,
    Severity,
    SpecializedAnalysis,
    clamp,
    merge_evidence,
    merge_provenance,
)


def make_finding(severity=Severity.MEDIUM, **kwargs):
    values = dict(
        id="f-1",
        type="sql-injection",
        severity=severity,
        message="raw query",
        file="db.py",
        line=42,
        confidence=0.8,
        provenance=(Provenance("security", "claude-sonnet"),),
    )
    values.update(kwargs)
    return Finding(**values)


class TestSeverity:
    def test_rank_order(self):
        assert Severity.LOW.rank < Severity.MEDIUM.rank < Severity.HIGH.rank < Severity.CRITICAL.rank

    def test_parse(self):
        assert Severity.parse("HIGH") == Severity.HIGH
        assert Severity.parse(" critical ") == Severity.CRITICAL

    def test_parse_unknown_defaults_to_medium(self):
        assert Severity.parse("blocker") == Severity.MEDIUM
        assert Severity.parse(None) == Severity.MEDIUM


class TestPriority:
    def test_parse_normalizes(self):
        assert Priority.parse("must_fix") == Priority.MUST_FIX
        assert Priority.parse("Should Fix") == Priority.SHOULD_FIX

    def test_parse_unknown_defaults_to_consider(self):
        assert Priority.parse("whenever") == Priority.CONSIDER


class TestRiskLevel:
    def test_from_findings(self):
        assert RiskLevel.from_findings([]) == RiskLevel.LOW
        assert RiskLevel.from_findings([make_finding(Severity.MEDIUM)]) == RiskLevel.MEDIUM
        assert RiskLevel.from_findings([
            make_finding(Severity.LOW),
            make_finding(Severity.CRITICAL),
        ]) == RiskLevel.CRITICAL


class TestFinding:
    def test_is_frozen(self):
        finding = make_finding()
        with pytest.raises(FrozenInstanceError):
            finding.confidence = 0.1

    def test_confidence_clamped(self):
        assert make_finding(confidence=1.7).confidence == 1.0
        assert make_finding(confidence=-0.2).confidence == 0.0

    def test_location(self):
        assert make_finding().location == "db.py:42"
        assert make_finding(line=None).location == "db.py"

    def test_round_trip(self):
        finding = make_finding(evidence=("cursor.execute(q)",))
        restored = Finding.from_dict(finding.to_dict())
        assert restored == finding


class TestSpecializedAnalysis:
    def test_risk_level_derived_from_findings(self):
        analysis = SpecializedAnalysis(
            dimension="security",
            chunk_id="chunk-001",
            model="claude-sonnet",
            findings=[make_finding(Severity.HIGH)],
        )
        assert analysis.risk_level == RiskLevel.HIGH

        analysis.findings = []
        assert analysis.risk_level == RiskLevel.LOW

    def test_source_prefers_agent_name(self):
        analysis = SpecializedAnalysis(dimension="security", chunk_id="c", model="m")
        assert analysis.source == "security"

        analysis.agent = "bandit"
        assert analysis.source == "bandit"

    def test_round_trip(self):
        analysis = SpecializedAnalysis(
            dimension="security",
            chunk_id="chunk-001",
            model="claude-sonnet",
            findings=[make_finding()],
            recommendations=[Recommendation(
                id="r-1",
                priority=Priority.MUST_FIX,
                category="security",
                description="use bound parameters",
            )],
            confidence=0.9,
            agent="security",
        )
        data = analysis.to_dict()
        assert data["risk_level"] == "MEDIUM"

        restored = SpecializedAnalysis.from_dict(data)
        assert restored.findings == analysis.findings
        assert restored.recommendations == analysis.recommendations
        assert restored.confidence == 0.9


class TestHelpers:
    def test_clamp_invalid(self):
        assert clamp("abc") == 0.0
        assert clamp(None) == 0.0

    def test_merge_provenance_keeps_order(self):
        a = Provenance("security", "m1")
        b = Provenance("architecture", "m2")
        assert merge_provenance((a,), (b, a)) == (a, b)

    def test_merge_evidence_drops_empty(self):
        assert merge_evidence(("x", ""), ("y", "x")) == ("x", "y")


class TestConflict:
    def test_key(self):
        conflict = Conflict(
            kind="severity",
            chunk_id="chunk-001",
            subject="sql-injection",
            location="db.py:42",
            sources=("architecture", "security"),
        )
        assert conflict.key == "severity:chunk-001:sql-injection:db.py:42"
        assert Conflict.from_dict(conflict.to_dict()) == conflict


class TestConsensusResult:
    def test_round_trip(self):
        consensus = ConsensusResult(
            findings=[make_finding()],
            overall_confidence=0.8,
            model_agreement=0.9,
            strategy=ConsensusStrategy.MAJORITY_VOTING,
        )
        restored = ConsensusResult.from_dict(consensus.to_dict())
        assert restored.strategy == ConsensusStrategy.MAJORITY_VOTING
        assert restored.findings == consensus.findings


class TestRefinementIteration:
    def test_round_trip(self):
        record = RefinementIteration(
            iteration=0,
            critique=SelfCritique(quality=0.6, completeness=1.0),
            convergence_score=0.5,
            new_findings=2,
        )
        restored = RefinementIteration.from_dict(record.to_dict())
        assert restored.iteration == 0
        assert restored.critique.quality == 0.6
        assert restored.new_findings == 2
