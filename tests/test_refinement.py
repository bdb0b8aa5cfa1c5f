"""정제 루프 테스트"""

import threading

import pytest

from critic_core.agents import fallback_analysis
from critic_core.analysis import (
    Conflict,
    ConsensusResult,
    Finding,
    Provenance,
    Recommendation,
    Priority,
    Severity,
    SpecializedAnalysis,
)
from critic_core.context import Chunk
from critic_core.errors import TaskCancelled
from critic_core.refinement import (
    RefinementController,
    RefinementState,
    convergence_score,
    findings_quality,
)


CHUNKS = [
    Chunk(id="chunk-001", file_path="db.py", start_line=40, end_line=45, content="+q = f'{name}'"),
    Chunk(id="chunk-002", file_path="api.py", start_line=1, end_line=3, content="+import db"),
]


def finding(agent, type="sql-injection", file="db.py", line=42, confidence=0.4, evidence=()):
    return Finding(
        id=f"{agent}-{type}-{line}-{confidence}",
        type=type,
        severity=Severity.HIGH,
        message=f"{type} by {agent}",
        file=file,
        line=line,
        evidence=evidence,
        confidence=confidence,
        provenance=(Provenance(agent, "mock"),),
    )


class ScriptedAgent:
    """respond(chunk, focus, call_no) 결과를 돌려주는 에이전트"""

    model = "mock"

    def __init__(self, name, respond=None):
        self.name = name
        self.dimension = name
        self.respond = respond or (lambda chunk, focus, n: [])
        self.calls: list[tuple[str, str | None]] = []
        self._lock = threading.Lock()

    def analyze(self, chunk, focus=None):
        with self._lock:
            self.calls.append((chunk.id, focus))
            n = len(self.calls)
        return SpecializedAnalysis(
            dimension=self.dimension,
            chunk_id=chunk.id,
            model=self.model,
            findings=self.respond(chunk, focus, n),
            confidence=0.8,
            agent=self.name,
        )


def covered(*names):
    """모든 차원이 정상 분석을 낸 상태"""
    return {
        "chunk-001": {
            name: SpecializedAnalysis(dimension=name, chunk_id="chunk-001", model="mock", agent=name)
            for name in names
        },
    }


class TestHelpers:
    def test_quality(self):
        assert findings_quality([]) == 1.0
        assert findings_quality([finding("a", confidence=0.2), finding("a", confidence=0.6)]) == pytest.approx(0.4)

    def test_convergence_identity(self):
        findings = [finding("a", type="x"), finding("a", type="y", confidence=0.9)]
        assert convergence_score(findings, list(findings)) == 1.0

    def test_convergence_edges(self):
        assert convergence_score([], []) == 1.0
        assert convergence_score([], [finding("a")]) == 0.0
        assert convergence_score([finding("a")], []) == 0.0

    def test_convergence_partial(self):
        previous = [finding("a", type="x")]
        current = [finding("a", type="x"), finding("a", type="y")]
        assert convergence_score(current, previous) == 0.5


class TestCritique:
    def test_low_quality_area_per_dimension(self):
        controller = RefinementController([ScriptedAgent("security"), ScriptedAgent("testing")])
        consensus = ConsensusResult(findings=[
            finding("security", confidence=0.4),
            finding("testing", type="missing-test", confidence=0.95),
        ])

        critique = controller.critique(consensus, covered("security", "testing"), [], set(), CHUNKS)

        assert critique.quality == pytest.approx(0.675)
        assert critique.completeness == 1.0
        assert [(a.area, a.dimensions) for a in critique.improvement_areas] == [("quality", ["security"])]
        assert critique.improvement_areas[0].priority == "high"
        assert critique.improvement_areas[0].files == ["db.py"]

    def test_missing_dimension_is_medium(self):
        controller = RefinementController([ScriptedAgent("security"), ScriptedAgent("testing")])
        analyses = covered("security")
        analyses["chunk-001"]["testing"] = fallback_analysis("testing", "testing", "mock", CHUNKS[0], "timeout")

        critique = controller.critique(ConsensusResult(), analyses, [], set(), CHUNKS)

        assert critique.missing_dimensions == ["testing"]
        assert critique.completeness == 0.5
        assert critique.improvement_areas[0].priority == "medium"
        assert controller.plan_deep_dives(critique) == []

    def test_unresolved_conflicts(self):
        controller = RefinementController([ScriptedAgent("security"), ScriptedAgent("architecture")])
        conflict = Conflict(
            kind="severity",
            chunk_id="chunk-001",
            subject="sql-injection",
            location="db.py:42",
            sources=("architecture", "security"),
        )

        critique = controller.critique(
            ConsensusResult(), covered("security", "architecture"), [conflict], set(), CHUNKS
        )
        area = critique.improvement_areas[0]
        assert critique.unresolved_conflicts == 1
        assert area.area == "consistency"
        assert area.dimensions == ["architecture", "security"]
        assert area.files == ["db.py"]
        assert area.conflict_keys == [conflict.key]

        resolved = controller.critique(
            ConsensusResult(), covered("security", "architecture"), [conflict], {conflict.key}, CHUNKS
        )
        assert resolved.unresolved_conflicts == 0
        assert resolved.improvement_areas == []

    def test_deep_dive_areas_capped(self):
        agents = [ScriptedAgent(name) for name in ("a", "b", "c")]
        controller = RefinementController(agents, max_deep_dive_areas=2)
        consensus = ConsensusResult(findings=[finding(name, type=name) for name in ("a", "b", "c")])

        critique = controller.critique(consensus, covered("a", "b", "c"), [], set(), CHUNKS)

        assert len(controller.plan_deep_dives(critique)) == 2


class TestIntegrate:
    def test_never_lowers_confidence(self):
        controller = RefinementController([])
        existing = finding("security", confidence=0.6, evidence=("old",))
        deep = SpecializedAnalysis(
            dimension="security",
            chunk_id="chunk-001",
            model="mock",
            findings=[finding("security", line=43, confidence=0.2, evidence=("new",))],
        )

        consensus, added = controller.integrate(ConsensusResult(findings=[existing]), [deep])

        assert added == 0
        merged = consensus.findings[0]
        assert merged.id == existing.id
        assert merged.confidence == 0.6
        assert merged.evidence == ("old", "new")

    def test_raises_confidence_and_appends_new(self):
        controller = RefinementController([])
        existing = finding("security", confidence=0.4)
        deep = SpecializedAnalysis(
            dimension="architecture",
            chunk_id="chunk-001",
            model="mock",
            findings=[
                finding("architecture", confidence=0.9),
                finding("architecture", type="coupling", file="api.py", line=2, confidence=0.7),
            ],
            recommendations=[Recommendation(
                id="r-1", priority=Priority.SHOULD_FIX, category="architecture", description="split module",
            )],
        )

        consensus, added = controller.integrate(ConsensusResult(findings=[existing]), [deep])

        assert added == 1
        assert len(consensus.findings) == 2
        merged = next(f for f in consensus.findings if f.type == "sql-injection")
        assert merged.confidence == 0.9
        assert {p.agent for p in merged.provenance} == {"security", "architecture"}
        assert len(consensus.recommendations) == 1

        # 같은 권고는 중복 추가하지 않음
        again, _ = controller.integrate(consensus, [deep])
        assert len(again.recommendations) == 1


class TestRun:
    def test_iteration_bound(self):
        def always_new(chunk, focus, n):
            return [finding("security", type=f"new-{n}", file=chunk.file_path, confidence=0.3)]

        agent = ScriptedAgent("security", always_new)
        controller = RefinementController([agent], max_iterations=2, max_workers=1)
        state = RefinementState(consensus=ConsensusResult(findings=[finding("security")]))

        controller.run(state, covered("security"), [], CHUNKS)

        assert len(state.history) == 2
        assert state.done
        assert all(r.convergence_score <= 0.85 for r in state.history)

    def test_converges_when_nothing_changes(self):
        def same(chunk, focus, n):
            return [finding("security", confidence=0.4)] if chunk.file_path == "db.py" else []

        agent = ScriptedAgent("security", same)
        controller = RefinementController([agent], max_iterations=3)
        state = RefinementState(consensus=ConsensusResult(findings=[finding("security", confidence=0.4)]))

        controller.run(state, covered("security"), [], CHUNKS)

        assert len(state.history) == 1
        assert state.history[0].convergence_score == 1.0
        assert state.history[0].new_findings == 0

    def test_deep_dive_narrowed_to_area_files(self):
        agent = ScriptedAgent("security")
        controller = RefinementController([agent], max_iterations=1)
        state = RefinementState(consensus=ConsensusResult(findings=[finding("security", file="db.py")]))

        controller.run(state, covered("security"), [], CHUNKS)

        assert [chunk_id for chunk_id, _ in agent.calls] == ["chunk-001"]
        focus = agent.calls[0][1]
        assert focus.startswith("quality:")

    def test_no_areas_stops_without_calls(self):
        agent = ScriptedAgent("security")
        controller = RefinementController([agent], max_iterations=3)
        state = RefinementState(consensus=ConsensusResult(findings=[finding("security", confidence=0.95)]))

        controller.run(state, covered("security"), [], CHUNKS)

        assert len(state.history) == 1
        assert state.history[0].deep_dive_areas == []
        assert state.history[0].convergence_score == 1.0
        assert agent.calls == []

    def test_conflicts_marked_resolved(self):
        agent = ScriptedAgent("security")
        controller = RefinementController([agent], max_iterations=3)
        conflict = Conflict(
            kind="priority", chunk_id="chunk-002", subject="security", location="chunk-002",
            sources=("security", "security"),
        )
        state = RefinementState(consensus=ConsensusResult())

        controller.run(state, covered("security"), [conflict], CHUNKS)

        assert conflict.key in state.resolved_conflict_keys
        assert agent.calls[0][0] == "chunk-002"
        assert state.history[0].critique.unresolved_conflicts == 1

        critique = controller.critique(
            state.consensus, covered("security"), [conflict], state.resolved_conflict_keys, CHUNKS
        )
        assert critique.unresolved_conflicts == 0

    def test_fallback_deep_dive_discarded(self):
        class BrokenAgent(ScriptedAgent):
            def analyze(self, chunk, focus=None):
                self.calls.append((chunk.id, focus))
                return fallback_analysis(self.name, self.dimension, self.model, chunk, "timeout")

        agent = BrokenAgent("security")
        controller = RefinementController([agent], max_iterations=1)
        original = finding("security")
        state = RefinementState(consensus=ConsensusResult(findings=[original]))

        controller.run(state, covered("security"), [], CHUNKS)

        assert state.consensus.findings == [original]

    def test_resume_from_history(self):
        def always_new(chunk, focus, n):
            return [finding("security", type=f"new-{n}", file=chunk.file_path, confidence=0.3)]

        agent = ScriptedAgent("security", always_new)
        controller = RefinementController([agent], max_iterations=3)
        state = RefinementState(consensus=ConsensusResult(findings=[finding("security")]))
        saved = []

        controller.run(state, covered("security"), [], CHUNKS, on_iteration=lambda s: saved.append(len(s.history)))
        assert saved == [1, 2, 3]

        # 이미 끝난 상태는 다시 돌지 않음
        controller.run(state, covered("security"), [], CHUNKS)
        assert len(state.history) == 3

    def test_cancelled(self):
        controller = RefinementController([ScriptedAgent("security")])
        state = RefinementState(consensus=ConsensusResult(findings=[finding("security")]))
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(TaskCancelled):
            controller.run(state, covered("security"), [], CHUNKS, cancel_event=cancel)

        assert state.history == []
