"""
Cross Validator

같은 분석 단위에 대한 에이전트 결과를 쌍으로 비교해 합의도와 충돌을 계산.

매칭 규칙 (a의 Finding f와 b의 Finding g):
  - type과 file이 같고
  - line 차이가 line_window 이내 (둘 다 None이면 같은 위치로 봄)
  - confidence 차이가 confidence_delta 미만
  - b의 Finding은 한 번만 매칭됨

합의 점수 = 매칭 수 / max(|a|, |b|, 1)
"""

from itertools import combinations
import logging

from .analysis import (
    AgreementRecord,
    Conflict,
    CrossValidationResult,
    Finding,
    Priority,
    SpecializedAnalysis,
)

logger = logging.getLogger(__name__)


def lines_close(a: int | None, b: int | None, window: int) -> bool:
    """두 라인이 같은 위치로 볼 만큼 가까운지"""
    if a is None or b is None:
        return a is None and b is None
    return abs(a - b) <= window


class CrossValidator:
    """
    에이전트 간 교차 검증

    Usage:
        validator = CrossValidator(line_window=3)
        result = validator.validate({"chunk-001": {"security": a, "architecture": b}})
        print(result.overall_agreement, len(result.conflicts))
    """

    def __init__(
        self,
        line_window: int = 3,
        confidence_delta: float = 0.1,
        high_confidence: float = 0.8,
        uncertain_confidence: float = 0.5,
    ):
        self.line_window = line_window
        self.confidence_delta = confidence_delta
        self.high_confidence = high_confidence
        self.uncertain_confidence = uncertain_confidence

    def findings_match(self, f: Finding, g: Finding) -> bool:
        return (
            f.type == g.type
            and f.file == g.file
            and lines_close(f.line, g.line, self.line_window)
            and abs(f.confidence - g.confidence) < self.confidence_delta
        )

    def compare(self, a: SpecializedAnalysis, b: SpecializedAnalysis) -> AgreementRecord:
        """두 분석 비교"""
        used: set[int] = set()
        matched = 0
        for f in a.findings:
            for index, g in enumerate(b.findings):
                if index in used:
                    continue
                if self.findings_match(f, g):
                    used.add(index)
                    matched += 1
                    break

        denominator = max(len(a.findings), len(b.findings), 1)
        return AgreementRecord(
            chunk_id=a.chunk_id,
            left=a.source,
            right=b.source,
            agreement_score=matched / denominator,
            matched=matched,
            conflicts=self._find_conflicts(a, b),
        )

    def _find_conflicts(self, a: SpecializedAnalysis, b: SpecializedAnalysis) -> list[Conflict]:
        conflicts: dict[str, Conflict] = {}
        sources = (a.source, b.source)

        for f in a.findings:
            for g in b.findings:
                if f.type != g.type or f.file != g.file:
                    continue
                if not lines_close(f.line, g.line, self.line_window):
                    continue
                if abs(f.severity.rank - g.severity.rank) < 2:
                    continue
                conflict = Conflict(
                    kind="severity",
                    chunk_id=a.chunk_id,
                    subject=f.type,
                    location=f.location,
                    sources=sources,
                    detail=f"{sources[0]} says {f.severity.value}, {sources[1]} says {g.severity.value}",
                )
                conflicts.setdefault(conflict.key, conflict)

        extremes = {Priority.MUST_FIX, Priority.CONSIDER}
        for r in a.recommendations:
            for s in b.recommendations:
                if r.category != s.category:
                    continue
                if {r.priority, s.priority} != extremes:
                    continue
                conflict = Conflict(
                    kind="priority",
                    chunk_id=a.chunk_id,
                    subject=r.category,
                    location=a.chunk_id,
                    sources=sources,
                    detail=f"{sources[0]} says {r.priority.value}, {sources[1]} says {s.priority.value}",
                )
                conflicts.setdefault(conflict.key, conflict)

        return list(conflicts.values())

    def validate_unit(self, analyses: list[SpecializedAnalysis]) -> list[AgreementRecord]:
        """한 분석 단위 내 모든 쌍 비교"""
        ordered = sorted(analyses, key=lambda a: a.source)
        return [self.compare(a, b) for a, b in combinations(ordered, 2)]

    def validate(self, analyses_by_chunk: dict[str, dict[str, SpecializedAnalysis]]) -> CrossValidationResult:
        """
        전체 분석 단위 교차 검증

        Args:
            analyses_by_chunk: chunk id -> (에이전트 이름 -> 분석)

        Returns:
            CrossValidationResult (쌍이 하나도 없으면 overall_agreement 1.0)
        """
        records: list[AgreementRecord] = []
        unit_agreement: dict[str, float] = {}
        high_confidence: list[Finding] = []
        uncertain: list[Finding] = []

        for chunk_id in sorted(analyses_by_chunk):
            analyses = list(analyses_by_chunk[chunk_id].values())
            unit_records = self.validate_unit(analyses)
            records.extend(unit_records)

            scores = [r.agreement_score for r in unit_records]
            unit_agreement[chunk_id] = sum(scores) / len(scores) if scores else 1.0

            for analysis in analyses:
                for finding in analysis.findings:
                    if finding.confidence > self.high_confidence:
                        high_confidence.append(finding)
                    elif finding.confidence < self.uncertain_confidence:
                        uncertain.append(finding)

        scores = [r.agreement_score for r in records]
        overall = sum(scores) / len(scores) if scores else 1.0

        result = CrossValidationResult(
            records=records,
            overall_agreement=overall,
            unit_agreement=unit_agreement,
            high_confidence=high_confidence,
            uncertain=uncertain,
        )
        logger.info(
            "Cross validation: %d pairs, agreement %.2f, %d conflicts",
            len(records), overall, len(result.conflicts),
        )
        return result
