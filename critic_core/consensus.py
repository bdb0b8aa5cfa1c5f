"""
Consensus Builder

교차 검증 결과의 전체 합의도로 전략을 고르고, 비슷한 Finding/Recommendation을
하나로 합쳐 출처가 추적되는 단일 결과를 만든다.

전략 (합의도 기준, 임계값은 설정 가능):
  > 0.8       majority-voting     최고 confidence 대표 + 지지 수 만큼 boost
  0.6 ~ 0.8   weighted-consensus  전문성 × confidence 가중 평균
  0.4 ~ 0.6   expert-arbitration  가장 전문성 높은 출처의 판정
  < 0.4       ensemble-fusion     평균 confidence, 근거 합집합

원본 Finding은 수정하지 않는다. 멤버가 하나뿐인 그룹은 원본 그대로 통과하고,
둘 이상이면 새 id와 provenance 합집합을 가진 파생 항목이 만들어진다.
"""

from dataclasses import replace
import logging

from .analysis import (
    ConsensusResult,
    ConsensusStrategy,
    CrossValidationResult,
    Finding,
    Provenance,
    Recommendation,
    SpecializedAnalysis,
    merge_evidence,
    merge_provenance,
    new_id,
)
from .config import PipelineConfig
from .cross_validator import lines_close
from .errors import ConsensusBuildFailure

logger = logging.getLogger(__name__)


class ExpertiseTable:
    """
    출처별 도메인 전문성 가중치

    조회 순서: provenance.model → provenance.agent.
    출처 테이블에 주제가 없으면 그 출처의 "default", 출처 자체를 모르면 unknown(0.5).
    """

    def __init__(self, table: dict[str, dict[str, float]] | None = None, unknown: float = 0.5):
        self.table = table or {}
        self.unknown = unknown

    def weight(self, source: Provenance, subject: str) -> float:
        for key in (source.model, source.agent):
            weights = self.table.get(key)
            if weights is not None:
                return weights.get(subject, weights.get("default", self.unknown))
        return self.unknown

    def best(self, provenance: tuple[Provenance, ...], subject: str) -> float:
        """여러 출처가 지지하는 항목은 가장 높은 전문성을 사용"""
        if not provenance:
            return self.unknown
        return max(self.weight(p, subject) for p in provenance)


class ConsensusBuilder:
    """
    합의 생성기

    Usage:
        builder = ConsensusBuilder.from_config(config)
        consensus = builder.build(validation, analyses_by_chunk)
    """

    def __init__(
        self,
        expertise: ExpertiseTable | None = None,
        line_window: int = 3,
        majority_threshold: float = 0.8,
        weighted_threshold: float = 0.6,
        arbitration_threshold: float = 0.4,
        boost_step: float = 0.1,
        boost_cap: float = 0.3,
    ):
        self.expertise = expertise or ExpertiseTable()
        self.line_window = line_window
        self.majority_threshold = majority_threshold
        self.weighted_threshold = weighted_threshold
        self.arbitration_threshold = arbitration_threshold
        self.boost_step = boost_step
        self.boost_cap = boost_cap

    @classmethod
    def from_config(cls, config: PipelineConfig) -> "ConsensusBuilder":
        return cls(
            expertise=ExpertiseTable(config.expertise),
            line_window=config.line_window,
            majority_threshold=config.majority_threshold,
            weighted_threshold=config.weighted_threshold,
            arbitration_threshold=config.arbitration_threshold,
            boost_step=config.majority_boost_step,
            boost_cap=config.majority_boost_cap,
        )

    def select_strategy(self, agreement: float) -> ConsensusStrategy:
        """합의도만으로 결정되는 전략 선택"""
        if agreement > self.majority_threshold:
            return ConsensusStrategy.MAJORITY_VOTING
        if agreement >= self.weighted_threshold:
            return ConsensusStrategy.WEIGHTED_CONSENSUS
        if agreement >= self.arbitration_threshold:
            return ConsensusStrategy.EXPERT_ARBITRATION
        return ConsensusStrategy.ENSEMBLE_FUSION

    def build(
        self,
        validation: CrossValidationResult,
        analyses_by_chunk: dict[str, dict[str, SpecializedAnalysis]],
    ) -> ConsensusResult:
        """
        합의 결과 생성

        Args:
            validation: 교차 검증 결과 (overall_agreement로 전략 선택)
            analyses_by_chunk: chunk id -> (에이전트 이름 -> 분석)

        Raises:
            ConsensusBuildFailure: 분석이 하나도 없거나 합의 계산 중 오류
        """
        analyses = [a for unit in analyses_by_chunk.values() for a in unit.values()]
        if not analyses:
            raise ConsensusBuildFailure("No analyses to build consensus from")

        try:
            return self._build(validation.overall_agreement, analyses)
        except ConsensusBuildFailure:
            raise
        except Exception as e:
            raise ConsensusBuildFailure(f"Consensus build failed: {e}") from e

    def _build(self, agreement: float, analyses: list[SpecializedAnalysis]) -> ConsensusResult:
        strategy = self.select_strategy(agreement)

        findings = [f for a in analyses for f in a.findings]
        recommendations = [r for a in analyses for r in a.recommendations]

        merged_findings = [
            self._merge(group, strategy, group[0].type)
            for group in self.group_findings(findings)
        ]
        merged_recommendations = [
            self._merge(group, strategy, group[0].category)
            for group in self.group_recommendations(recommendations)
        ]

        merged_findings.sort(key=lambda f: (-f.severity.rank, -f.confidence))
        merged_recommendations.sort(key=lambda r: (-r.priority.rank, -r.confidence))

        scores = [i.confidence for i in merged_findings] + [i.confidence for i in merged_recommendations]
        overall = sum(scores) / len(scores) if scores else 0.0

        logger.info(
            "Consensus (%s): %d -> %d findings, %d -> %d recommendations",
            strategy.value, len(findings), len(merged_findings),
            len(recommendations), len(merged_recommendations),
        )
        return ConsensusResult(
            findings=merged_findings,
            recommendations=merged_recommendations,
            overall_confidence=overall,
            model_agreement=agreement,
            strategy=strategy,
        )

    def group_findings(self, findings: list[Finding]) -> list[list[Finding]]:
        """
        (type, file)로 묶은 뒤 라인 근접도로 클러스터링

        클러스터 첫 라인에서 line_window 이내인 Finding만 같은 그룹.
        라인 없는 Finding끼리는 한 그룹.
        """
        buckets: dict[tuple[str, str], list[Finding]] = {}
        for finding in findings:
            buckets.setdefault((finding.type, finding.file), []).append(finding)

        groups: list[list[Finding]] = []
        for bucket in buckets.values():
            unlined = [f for f in bucket if f.line is None]
            lined = sorted((f for f in bucket if f.line is not None), key=lambda f: f.line)

            if unlined:
                groups.append(unlined)

            current: list[Finding] = []
            for finding in lined:
                if current and not lines_close(current[0].line, finding.line, self.line_window):
                    groups.append(current)
                    current = []
                current.append(finding)
            if current:
                groups.append(current)

        return groups

    def group_recommendations(self, recommendations: list[Recommendation]) -> list[list[Recommendation]]:
        """(category, priority)로 묶기"""
        buckets: dict[tuple[str, str], list[Recommendation]] = {}
        for rec in recommendations:
            buckets.setdefault((rec.category, rec.priority.value), []).append(rec)
        return list(buckets.values())

    def _merge(self, group: list, strategy: ConsensusStrategy, subject: str):
        if len(group) == 1:
            return group[0]

        if strategy == ConsensusStrategy.MAJORITY_VOTING:
            return self._majority_voting(group)
        if strategy == ConsensusStrategy.WEIGHTED_CONSENSUS:
            return self._weighted_consensus(group, subject)
        if strategy == ConsensusStrategy.EXPERT_ARBITRATION:
            return self._expert_arbitration(group, subject)
        return self._ensemble_fusion(group)

    def _majority_voting(self, group: list):
        representative = max(group, key=lambda i: i.confidence)
        support_count = len(group) - 1
        boost = min(self.boost_step * support_count, self.boost_cap)
        return _derive(representative, group, min(representative.confidence + boost, 1.0))

    def _weighted_consensus(self, group: list, subject: str):
        weights = [self.expertise.best(i.provenance, subject) * i.confidence for i in group]
        total = sum(weights)
        representative = group[weights.index(max(weights))]
        if total <= 0:
            return _derive(representative, group, representative.confidence)

        confidence = sum(w * i.confidence for w, i in zip(weights, group)) / total
        return _derive(representative, group, confidence)

    def _expert_arbitration(self, group: list, subject: str):
        representative = max(
            group,
            key=lambda i: (self.expertise.best(i.provenance, subject), i.confidence),
        )
        return _derive(representative, group, representative.confidence)

    def _ensemble_fusion(self, group: list):
        representative = max(group, key=lambda i: i.confidence)
        confidence = sum(i.confidence for i in group) / len(group)
        return _derive(representative, group, confidence)


def _derive(representative, group: list, confidence: float):
    """대표 항목에서 새 id, 합쳐진 provenance(와 evidence)를 가진 파생 항목 생성"""
    provenance = merge_provenance(*(i.provenance for i in [representative, *group]))

    if isinstance(representative, Finding):
        return replace(
            representative,
            id=new_id("consensus-f"),
            confidence=confidence,
            provenance=provenance,
            evidence=merge_evidence(*(i.evidence for i in [representative, *group])),
        )
    return replace(
        representative,
        id=new_id("consensus-r"),
        confidence=confidence,
        provenance=provenance,
    )
