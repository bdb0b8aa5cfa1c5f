"""
Refinement Controller

합의 결과를 자기 비평 → 집중 재분석(deep dive) → 재통합 하는 제한된 반복 루프.

한 회차:
  1. critique: 품질(평균 confidence), 완전성(정상 분석이 있는 차원 비율), 일관성(미해결 충돌)
  2. high 우선순위 영역을 deep dive 대상으로 변환 (최대 max_deep_dive_areas 개, 없으면 수렴)
  3. 해당 차원 에이전트로 좁힌 chunk + focus 지시 재분석
  4. 통합: 새 Finding 추가, 매칭되는 Finding은 근거 추가 + confidence 상향 (하향 없음)
  5. 수렴도: 이번 회차 Finding 중 직전 회차 Finding과 매칭되는 비율

수렴도가 convergence_threshold를 넘거나 deep dive 대상이 없으면 종료.
회차 기록(history)은 append-only이고 max_iterations를 넘지 않는다.
"""

from dataclasses import dataclass, field, replace
import logging
import threading
from typing import Callable

from .analysis import (
    Conflict,
    ConsensusResult,
    DeepDiveArea,
    Finding,
    ImprovementArea,
    RefinementIteration,
    SelfCritique,
    SpecializedAnalysis,
    merge_evidence,
    merge_provenance,
)
from .config import PipelineConfig
from .context import Chunk
from .cross_validator import lines_close
from .errors import TaskCancelled
from .fanout import AnalysisJob, Analyzer, run_fanout

logger = logging.getLogger(__name__)


@dataclass
class RefinementState:
    """정제 루프 진행 상태 (체크포인트에 그대로 저장됨)"""
    consensus: ConsensusResult
    history: list[RefinementIteration] = field(default_factory=list)
    resolved_conflict_keys: set[str] = field(default_factory=set)
    done: bool = False


def findings_quality(findings: list[Finding]) -> float:
    """평균 confidence (Finding이 없으면 개선할 것이 없으므로 1.0)"""
    if not findings:
        return 1.0
    return sum(f.confidence for f in findings) / len(findings)


def convergence_score(current: list[Finding], previous: list[Finding], confidence_delta: float = 0.1) -> float:
    """
    current 중 previous와 매칭되는 비율 (type, file 동일 + confidence 차이 < delta)

    둘 다 비었으면 1.0, current만 비었으면 0.0.
    """
    if not current:
        return 1.0 if not previous else 0.0

    used: set[int] = set()
    matched = 0
    for f in current:
        for index, g in enumerate(previous):
            if index in used:
                continue
            if f.type == g.type and f.file == g.file and abs(f.confidence - g.confidence) < confidence_delta:
                used.add(index)
                matched += 1
                break
    return matched / len(current)


class RefinementController:
    """
    정제 루프

    Usage:
        controller = RefinementController.from_config(config, agents)
        state = RefinementState(consensus=consensus)
        controller.run(state, analyses_by_chunk, conflicts, chunks, on_iteration=save)
    """

    def __init__(
        self,
        agents: list[Analyzer],
        max_iterations: int = 3,
        convergence_threshold: float = 0.85,
        quality_threshold: float = 0.8,
        max_deep_dive_areas: int = 4,
        confidence_delta: float = 0.1,
        line_window: int = 3,
        max_workers: int = 4,
    ):
        self.agents = agents
        self.max_iterations = max_iterations
        self.convergence_threshold = convergence_threshold
        self.quality_threshold = quality_threshold
        self.max_deep_dive_areas = max_deep_dive_areas
        self.confidence_delta = confidence_delta
        self.line_window = line_window
        self.max_workers = max_workers

        self._dimension_of = {agent.name: agent.dimension for agent in agents}

    @classmethod
    def from_config(cls, config: PipelineConfig, agents: list[Analyzer]) -> "RefinementController":
        return cls(
            agents,
            max_iterations=config.max_iterations,
            convergence_threshold=config.convergence_threshold,
            quality_threshold=config.quality_threshold,
            max_deep_dive_areas=config.max_deep_dive_areas,
            confidence_delta=config.confidence_delta,
            line_window=config.line_window,
            max_workers=config.max_concurrent_analyses,
        )

    @property
    def dimensions(self) -> list[str]:
        seen: list[str] = []
        for agent in self.agents:
            if agent.dimension not in seen:
                seen.append(agent.dimension)
        return seen

    def run(
        self,
        state: RefinementState,
        analyses_by_chunk: dict[str, dict[str, SpecializedAnalysis]],
        conflicts: list[Conflict],
        chunks: list[Chunk],
        on_iteration: Callable[[RefinementState], None] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> RefinementState:
        """
        남은 회차 실행 (history 길이부터 재개)

        Args:
            on_iteration: 회차가 끝날 때마다 호출 (체크포인트 저장용)

        Raises:
            TaskCancelled: deep dive 도중 취소된 경우 (끝난 회차는 보존)
        """
        while not state.done:
            if len(state.history) >= self.max_iterations:
                state.done = True
                break

            if cancel_event is not None and cancel_event.is_set():
                raise TaskCancelled("Cancelled during refinement")

            record = self.step(state, analyses_by_chunk, conflicts, chunks, cancel_event)
            state.history.append(record)

            if not record.deep_dive_areas or record.convergence_score > self.convergence_threshold:
                state.done = True
            elif len(state.history) >= self.max_iterations:
                state.done = True

            logger.info(
                "Refinement iteration %d: %d areas, convergence %.2f",
                record.iteration, len(record.deep_dive_areas), record.convergence_score,
            )
            if on_iteration:
                on_iteration(state)

        return state

    def step(
        self,
        state: RefinementState,
        analyses_by_chunk: dict[str, dict[str, SpecializedAnalysis]],
        conflicts: list[Conflict],
        chunks: list[Chunk],
        cancel_event: threading.Event | None = None,
    ) -> RefinementIteration:
        """한 회차 실행. state.consensus와 resolved_conflict_keys를 갱신한다."""
        iteration = len(state.history)
        critique = self.critique(state.consensus, analyses_by_chunk, conflicts, state.resolved_conflict_keys, chunks)
        areas = self.plan_deep_dives(critique)

        if not areas:
            return RefinementIteration(
                iteration=iteration,
                critique=critique,
                deep_dive_areas=[],
                convergence_score=1.0,
                quality_delta=0.0,
                new_findings=0,
            )

        deep_analyses = self.deep_dive(areas, chunks, cancel_event)
        previous = list(state.consensus.findings)
        state.consensus, new_count = self.integrate(state.consensus, deep_analyses)

        for area in areas:
            state.resolved_conflict_keys.update(area.conflict_keys)

        return RefinementIteration(
            iteration=iteration,
            critique=critique,
            deep_dive_areas=areas,
            convergence_score=convergence_score(state.consensus.findings, previous, self.confidence_delta),
            quality_delta=findings_quality(state.consensus.findings) - critique.quality,
            new_findings=new_count,
        )

    def critique(
        self,
        consensus: ConsensusResult,
        analyses_by_chunk: dict[str, dict[str, SpecializedAnalysis]],
        conflicts: list[Conflict],
        resolved_conflict_keys: set[str],
        chunks: list[Chunk],
    ) -> SelfCritique:
        """현재 합의 결과 자기 비평"""
        areas: list[ImprovementArea] = []

        # 품질
        quality = findings_quality(consensus.findings)
        if consensus.findings and quality < self.quality_threshold:
            weak: dict[str, list[Finding]] = {}
            for finding in consensus.findings:
                if finding.confidence >= self.quality_threshold:
                    continue
                for dimension in self._dimensions_for(finding):
                    weak.setdefault(dimension, []).append(finding)

            for dimension, findings in weak.items():
                areas.append(ImprovementArea(
                    area="quality",
                    description=f"{len(findings)} low-confidence {dimension} findings",
                    priority="high",
                    dimensions=[dimension],
                    files=sorted({f.file for f in findings}),
                    finding_ids=[f.id for f in findings],
                    suggested_action="Gather more evidence for these findings",
                ))

        # 완전성
        expected = self.dimensions
        covered = {
            a.dimension
            for unit in analyses_by_chunk.values()
            for a in unit.values()
            if not a.is_fallback
        }
        missing = [d for d in expected if d not in covered]
        completeness = (len(expected) - len(missing)) / len(expected) if expected else 1.0
        if missing:
            areas.append(ImprovementArea(
                area="completeness",
                description=f"No successful analysis for: {', '.join(missing)}",
                priority="medium",
                dimensions=missing,
                suggested_action="Re-run the missing dimensions when their endpoints recover",
            ))

        # 일관성
        files_by_chunk = {c.id: c.file_path for c in chunks}
        unresolved = [c for c in conflicts if c.key not in resolved_conflict_keys]
        for conflict in unresolved:
            dimensions = []
            for source in conflict.sources:
                dimension = self._dimension_of.get(source)
                if dimension and dimension not in dimensions:
                    dimensions.append(dimension)
            file_path = files_by_chunk.get(conflict.chunk_id)
            areas.append(ImprovementArea(
                area="consistency",
                description=f"Conflicting {conflict.kind} on {conflict.subject}: {conflict.detail}",
                priority="high",
                dimensions=dimensions,
                files=[file_path] if file_path else [],
                conflict_keys=[conflict.key],
                suggested_action="Re-examine the location and settle on one verdict",
            ))

        return SelfCritique(
            quality=quality,
            completeness=completeness,
            missing_dimensions=missing,
            unresolved_conflicts=len(unresolved),
            improvement_areas=areas,
        )

    def plan_deep_dives(self, critique: SelfCritique) -> list[DeepDiveArea]:
        """high 우선순위 영역을 차원별 deep dive 대상으로 (최대 max_deep_dive_areas)"""
        planned: list[DeepDiveArea] = []
        for area in critique.improvement_areas:
            if area.priority != "high":
                continue
            for dimension in area.dimensions:
                if len(planned) >= self.max_deep_dive_areas:
                    return planned
                planned.append(DeepDiveArea(
                    area=area.area,
                    description=area.description,
                    dimension=dimension,
                    files=list(area.files),
                    finding_ids=list(area.finding_ids),
                    conflict_keys=list(area.conflict_keys),
                    expected_outcome=area.suggested_action,
                ))
        return planned

    def deep_dive(
        self,
        areas: list[DeepDiveArea],
        chunks: list[Chunk],
        cancel_event: threading.Event | None = None,
    ) -> list[SpecializedAnalysis]:
        """deep dive 대상별로 해당 차원 에이전트에게 좁힌 chunk만 재분석 요청"""
        jobs: list[AnalysisJob] = []
        for area in areas:
            targets = [c for c in chunks if not area.files or c.file_path in area.files]
            focus = self._focus_text(area)
            for agent in self.agents:
                if agent.dimension != area.dimension:
                    continue
                jobs.extend(AnalysisJob(chunk=c, agent=agent, focus=focus) for c in targets)

        results = run_fanout(jobs, max_workers=self.max_workers, cancel_event=cancel_event)
        return [analysis for _, analysis in results if not analysis.is_fallback]

    def integrate(
        self,
        consensus: ConsensusResult,
        deep_analyses: list[SpecializedAnalysis],
    ) -> tuple[ConsensusResult, int]:
        """
        deep dive 결과를 합의 결과에 통합

        Returns:
            (새 ConsensusResult, 새로 추가된 Finding 수)
        """
        findings = list(consensus.findings)
        recommendations = list(consensus.recommendations)
        added = 0

        for analysis in deep_analyses:
            for deep in analysis.findings:
                index = self._find_match(findings, deep)
                if index is None:
                    findings.append(deep)
                    added += 1
                    continue
                existing = findings[index]
                findings[index] = replace(
                    existing,
                    evidence=merge_evidence(existing.evidence, deep.evidence),
                    confidence=max(existing.confidence, deep.confidence),
                    provenance=merge_provenance(existing.provenance, deep.provenance),
                )

            known = {(r.category, r.description) for r in recommendations}
            for rec in analysis.recommendations:
                if (rec.category, rec.description) not in known:
                    recommendations.append(rec)
                    known.add((rec.category, rec.description))

        findings.sort(key=lambda f: (-f.severity.rank, -f.confidence))
        recommendations.sort(key=lambda r: (-r.priority.rank, -r.confidence))

        scores = [f.confidence for f in findings] + [r.confidence for r in recommendations]
        return replace(
            consensus,
            findings=findings,
            recommendations=recommendations,
            overall_confidence=sum(scores) / len(scores) if scores else 0.0,
        ), added

    def _find_match(self, findings: list[Finding], deep: Finding) -> int | None:
        for index, finding in enumerate(findings):
            if (
                finding.type == deep.type
                and finding.file == deep.file
                and lines_close(finding.line, deep.line, self.line_window)
            ):
                return index
        return None

    def _dimensions_for(self, finding: Finding) -> list[str]:
        dimensions = []
        for source in finding.provenance:
            dimension = self._dimension_of.get(source.agent)
            if dimension and dimension not in dimensions:
                dimensions.append(dimension)
        return dimensions

    def _focus_text(self, area: DeepDiveArea) -> str:
        lines = [f"{area.area}: {area.description}"]
        if area.expected_outcome:
            lines.append(f"목표: {area.expected_outcome}")
        return "\n".join(lines)
