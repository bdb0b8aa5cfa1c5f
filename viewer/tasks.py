"""
Task Viewer Component

저장된 리뷰 Task 목록과 결과(합의 Finding, 정제 히스토리)를 Streamlit으로 표시.

표 형태 변환 함수(*_rows)는 Streamlit 없이도 테스트할 수 있도록 분리되어 있다.
"""

from datetime import datetime

import streamlit as st

from critic_core.analysis import Finding, Recommendation, RefinementIteration
from critic_core.checkpoints import Checkpoint, CheckpointStore, PipelineState, ReviewTask
from critic_core.errors import CriticError


STATE_BADGES = {
    PipelineState.COMPLETED: ":green[Completed]",
    PipelineState.FAILED: ":red[Failed]",
    PipelineState.CANCELLED: ":orange[Cancelled]",
}

SEVERITY_ICONS = {
    "critical": "🔴",
    "high": "🟠",
    "medium": "🟡",
    "low": "⚪",
}


def format_time(timestamp: str) -> str:
    """ISO 타임스탬프를 'YYYY-MM-DD HH:MM'으로"""
    try:
        return datetime.fromisoformat(timestamp).strftime("%Y-%m-%d %H:%M")
    except ValueError:
        return timestamp[:16]


def state_badge(state: PipelineState) -> str:
    """진행 중 상태는 회색 배지"""
    return STATE_BADGES.get(state, f":gray[{state.value}]")


def task_rows(tasks: list[ReviewTask]) -> list[dict]:
    """Task 목록 표 (최근 것이 위)"""
    rows = []
    for task in sorted(tasks, key=lambda t: t.updated_at, reverse=True):
        rows.append({
            "task": task.id,
            "state": task.state.value,
            "input": task.input_ref,
            "passes": f"{task.completed_passes}/{task.total_passes}",
            "failed_stage": task.failed_stage.value if task.failed_stage else "",
            "updated": format_time(task.updated_at),
        })
    return rows


def finding_rows(findings: list[Finding]) -> list[dict]:
    rows = []
    for finding in findings:
        rows.append({
            "severity": f"{SEVERITY_ICONS.get(finding.severity.value, '')} {finding.severity.value}",
            "type": finding.type,
            "location": finding.location,
            "message": finding.message,
            "confidence": round(finding.confidence, 2),
            "sources": ", ".join(p.label for p in finding.provenance),
        })
    return rows


def recommendation_rows(recommendations: list[Recommendation]) -> list[dict]:
    return [
        {
            "priority": rec.priority.value,
            "category": rec.category,
            "description": rec.description,
            "confidence": round(rec.confidence, 2),
            "sources": ", ".join(p.label for p in rec.provenance),
        }
        for rec in recommendations
    ]


def iteration_rows(history: list[RefinementIteration]) -> list[dict]:
    return [
        {
            "iteration": record.iteration,
            "quality": round(record.critique.quality, 2),
            "completeness": round(record.critique.completeness, 2),
            "conflicts": record.critique.unresolved_conflicts,
            "deep_dives": len(record.deep_dive_areas),
            "new_findings": record.new_findings,
            "convergence": round(record.convergence_score, 2),
        }
        for record in history
    ]


class TaskViewer:
    """
    Task 뷰어 (Streamlit 컴포넌트)

    Usage:
        viewer = TaskViewer(store)
        viewer.render()
    """

    def __init__(self, store: CheckpointStore):
        self.store = store

    def render(self) -> None:
        """Task 목록 + 선택한 Task 상세"""
        st.header("Review Tasks")

        tasks = self.store.list_tasks()
        if not tasks:
            st.info("No tasks found.")
            return

        st.dataframe(task_rows(tasks), use_container_width=True, hide_index=True)

        task_ids = [row["task"] for row in task_rows(tasks)]
        selected = st.selectbox("Task", options=task_ids)
        if selected:
            self.render_task(selected)

    def render_task(self, task_id: str) -> None:
        try:
            checkpoint = self.store.load(task_id)
        except CriticError as e:
            st.error(f"Failed to load task: {e}")
            return

        task = checkpoint.task
        st.subheader(f"{task.id} {state_badge(task.state)}")

        col1, col2, col3 = st.columns(3)
        with col1:
            st.markdown(f"**Input:** `{task.input_ref}`")
            st.markdown(f"**Created:** {format_time(task.created_at)}")
        with col2:
            st.markdown(f"**Chunks:** {task.completed_chunks}/{task.total_chunks}")
            st.markdown(f"**Passes:** {task.completed_passes}/{task.total_passes}")
        with col3:
            if checkpoint.result:
                st.markdown(f"**Decision:** `{checkpoint.result.decision.value}`")
            if task.error:
                st.error(f"{task.failed_stage.value if task.failed_stage else ''}: {task.error}")

        self._render_consensus(checkpoint)
        self._render_refinement(checkpoint)

        if checkpoint.result:
            with st.expander("Summary", expanded=False):
                st.markdown(checkpoint.result.summary)

    def _render_consensus(self, checkpoint: Checkpoint) -> None:
        consensus = checkpoint.consensus
        if consensus is None:
            st.info("Consensus not built yet.")
            return

        st.markdown(
            f"**Strategy:** `{consensus.strategy.value}` | "
            f"**Agreement:** {consensus.model_agreement:.2f} | "
            f"**Confidence:** {consensus.overall_confidence:.2f}"
        )
        tab_findings, tab_recs = st.tabs(["Findings", "Recommendations"])
        with tab_findings:
            st.dataframe(finding_rows(consensus.findings), use_container_width=True, hide_index=True)
        with tab_recs:
            st.dataframe(recommendation_rows(consensus.recommendations), use_container_width=True, hide_index=True)

    def _render_refinement(self, checkpoint: Checkpoint) -> None:
        if not checkpoint.refinement_history:
            return
        st.markdown("### Refinement")
        st.dataframe(iteration_rows(checkpoint.refinement_history), use_container_width=True, hide_index=True)
