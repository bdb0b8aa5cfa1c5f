"""최종 판정 테스트"""

from critic_core.agents import FALLBACK_TYPE
from critic_core.analysis import (
    ConsensusResult,
    Finding,
    Priority,
    Provenance,
    Recommendation,
    RiskLevel,
    Severity,
)
from critic_core.synthesis import Decision, PipelineResult, decide, file_risks, synthesize


def finding(file, severity, type="issue"):
    return Finding(
        id=f"{file}-{severity.value}",
        type=type,
        severity=severity,
        message=f"{severity.value} issue",
        file=file,
        line=1,
        confidence=0.8,
        provenance=(Provenance("security", "mock"),),
    )


class TestFileRisks:
    def test_files_without_findings_are_low(self):
        consensus = ConsensusResult(findings=[finding("a.py", Severity.HIGH)])
        risks = file_risks(["a.py", "b.py"], consensus)
        assert risks == {"a.py": RiskLevel.HIGH, "b.py": RiskLevel.LOW}

    def test_fallback_findings_ignored(self):
        consensus = ConsensusResult(findings=[finding("a.py", Severity.CRITICAL, type=FALLBACK_TYPE)])
        assert file_risks(["a.py"], consensus) == {"a.py": RiskLevel.LOW}


class TestDecide:
    def test_approve(self):
        decision, _ = decide({"a.py": RiskLevel.LOW})
        assert decision == Decision.APPROVE

    def test_no_files_approves(self):
        assert decide({})[0] == Decision.APPROVE

    def test_medium_requests_changes(self):
        assert decide({"a.py": RiskLevel.MEDIUM, "b.py": RiskLevel.LOW})[0] == Decision.REQUEST_CHANGES

    def test_minority_high_requests_changes(self):
        risks = {"a.py": RiskLevel.HIGH, "b.py": RiskLevel.LOW, "c.py": RiskLevel.LOW}
        decision, reasoning = decide(risks)
        assert decision == Decision.REQUEST_CHANGES
        assert "1 files" in reasoning

    def test_half_is_not_majority(self):
        risks = {"a.py": RiskLevel.CRITICAL, "b.py": RiskLevel.LOW}
        assert decide(risks)[0] == Decision.REQUEST_CHANGES

    def test_majority_high_rejects(self):
        risks = {"a.py": RiskLevel.CRITICAL, "b.py": RiskLevel.HIGH, "c.py": RiskLevel.LOW}
        assert decide(risks)[0] == Decision.REJECT


class TestSynthesize:
    def test_summary_and_round_trip(self):
        consensus = ConsensusResult(
            findings=[finding("db.py", Severity.CRITICAL, type="sql-injection")],
            recommendations=[Recommendation(
                id="r-1",
                priority=Priority.MUST_FIX,
                category="security",
                description="use bound parameters",
                implementation="conn.execute(q, (name,))",
            )],
            overall_confidence=0.9,
            model_agreement=1.0,
        )

        result = synthesize("pr-42", "pr-42.diff", ["db.py"], consensus, [], {})

        assert result.decision == Decision.REJECT
        assert result.file_risks == {"db.py": "CRITICAL"}
        assert "# Review: pr-42.diff" in result.summary
        assert "`db.py:1`" in result.summary
        assert "conn.execute(q, (name,))" in result.summary

        restored = PipelineResult.from_dict(result.to_dict())
        assert restored.decision == Decision.REJECT
        assert restored.consensus.findings == consensus.findings
