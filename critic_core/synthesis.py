"""
Final Synthesis

정제된 합의 결과로 최종 판정(APPROVE / REQUEST_CHANGES / REJECT)과 요약을 만든다.

판정 규칙 (파일별 위험도 기준):
  - HIGH/CRITICAL 파일이 절반 초과 → REJECT
  - HIGH/CRITICAL 파일이 하나라도 있음 → REQUEST_CHANGES
  - MEDIUM 파일이 있음 → REQUEST_CHANGES
  - 그 외 → APPROVE
"""

from dataclasses import dataclass, field
from enum import Enum

from .agents import FALLBACK_TYPE
from .analysis import (
    ConsensusResult,
    RefinementIteration,
    RiskLevel,
    SpecializedAnalysis,
)


class Decision(Enum):
    """최종 판정"""
    APPROVE = "APPROVE"
    REQUEST_CHANGES = "REQUEST_CHANGES"
    REJECT = "REJECT"


@dataclass
class PipelineResult:
    """파이프라인 최종 결과"""
    task_id: str
    decision: Decision
    reasoning: str
    summary: str
    consensus: ConsensusResult
    refinement_history: list[RefinementIteration] = field(default_factory=list)
    analyses: dict[str, dict[str, SpecializedAnalysis]] = field(default_factory=dict)
    file_risks: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "decision": self.decision.value,
            "reasoning": self.reasoning,
            "summary": self.summary,
            "consensus": self.consensus.to_dict(),
            "refinement_history": [r.to_dict() for r in self.refinement_history],
            "analyses": {
                chunk_id: {name: a.to_dict() for name, a in unit.items()}
                for chunk_id, unit in self.analyses.items()
            },
            "file_risks": dict(self.file_risks),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PipelineResult":
        return cls(
            task_id=data["task_id"],
            decision=Decision(data["decision"]),
            reasoning=data.get("reasoning", ""),
            summary=data.get("summary", ""),
            consensus=ConsensusResult.from_dict(data.get("consensus", {})),
            refinement_history=[RefinementIteration.from_dict(r) for r in data.get("refinement_history", [])],
            analyses={
                chunk_id: {name: SpecializedAnalysis.from_dict(a) for name, a in unit.items()}
                for chunk_id, unit in data.get("analyses", {}).items()
            },
            file_risks=dict(data.get("file_risks", {})),
        )


def file_risks(files: list[str], consensus: ConsensusResult) -> dict[str, RiskLevel]:
    """파일별 위험도 (analysis-failure Finding은 제외)"""
    by_file: dict[str, list] = {path: [] for path in files}
    for finding in consensus.findings:
        if finding.type == FALLBACK_TYPE:
            continue
        by_file.setdefault(finding.file, []).append(finding)
    return {path: RiskLevel.from_findings(findings) for path, findings in by_file.items()}


def decide(risks: dict[str, RiskLevel]) -> tuple[Decision, str]:
    """파일별 위험도로 판정과 근거 문장 결정"""
    critical = [p for p, r in risks.items() if r in (RiskLevel.HIGH, RiskLevel.CRITICAL)]
    important = [p for p, r in risks.items() if r == RiskLevel.MEDIUM]

    if critical:
        decision = Decision.REJECT if len(critical) > len(risks) / 2 else Decision.REQUEST_CHANGES
        return decision, f"Found {len(critical)} files with critical/high risk issues."
    if important:
        return Decision.REQUEST_CHANGES, f"Found {len(important)} files that would benefit from improvements."
    return Decision.APPROVE, "No significant issues found."


def synthesize(
    task_id: str,
    title: str,
    files: list[str],
    consensus: ConsensusResult,
    refinement_history: list[RefinementIteration],
    analyses: dict[str, dict[str, SpecializedAnalysis]],
) -> PipelineResult:
    """
    최종 결과 생성

    Args:
        task_id: Task id
        title: 리뷰 제목 (보통 diff 파일 이름)
        files: 변경된 파일 목록
        consensus: 정제가 끝난 합의 결과
        refinement_history: 정제 회차 기록
        analyses: chunk id -> (에이전트 이름 -> 분석)
    """
    risks = file_risks(files, consensus)
    decision, reasoning = decide(risks)

    return PipelineResult(
        task_id=task_id,
        decision=decision,
        reasoning=reasoning,
        summary=render_summary(title, decision, reasoning, risks, consensus, refinement_history),
        consensus=consensus,
        refinement_history=list(refinement_history),
        analyses=analyses,
        file_risks={path: risk.value for path, risk in risks.items()},
    )


def render_summary(
    title: str,
    decision: Decision,
    reasoning: str,
    risks: dict[str, RiskLevel],
    consensus: ConsensusResult,
    refinement_history: list[RefinementIteration],
) -> str:
    """마크다운 요약"""
    parts = [f"# Review: {title}\n"]
    parts.append(f"**Decision:** {decision.value}\n")
    parts.append(f"{reasoning}\n")
    parts.append(
        f"Strategy `{consensus.strategy.value}`, model agreement {consensus.model_agreement:.2f}, "
        f"confidence {consensus.overall_confidence:.2f}, "
        f"{len(refinement_history)} refinement iterations.\n"
    )

    if risks:
        parts.append("## Files\n")
        for path, risk in risks.items():
            parts.append(f"- `{path}`: {risk.value}")
        parts.append("")

    if consensus.findings:
        parts.append("## Findings\n")
        for finding in consensus.findings:
            sources = ", ".join(p.label for p in finding.provenance)
            parts.append(
                f"- **[{finding.severity.value}]** `{finding.location}` {finding.message} "
                f"(confidence {finding.confidence:.2f}; {sources})"
            )
        parts.append("")

    if consensus.recommendations:
        parts.append("## Recommendations\n")
        for rec in consensus.recommendations:
            parts.append(f"- **[{rec.priority.value}]** {rec.category}: {rec.description}")
            if rec.implementation:
                parts.append(f"  - {rec.implementation}")
        parts.append("")

    return "\n".join(parts)
