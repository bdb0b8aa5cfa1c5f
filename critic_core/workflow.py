"""
Workflow Engine

체크포인트 기반 리뷰 파이프라인 실행 엔진.

INIT → FETCHING_CONTEXT → CHUNKING → ANALYZING_CHUNKS → CROSS_VALIDATING
     → BUILDING_CONSENSUS → REFINING → SYNTHESIZING → COMPLETED
(FAILED, CANCELLED는 종료 상태이지만 resume 가능)

각 stage가 끝날 때마다 전체 스냅샷을 저장한다. resume은 스냅샷에서
아직 채워지지 않은 첫 stage부터 다시 시작하므로 끝난 분석은 다시 호출하지 않는다.
"""

import logging
import threading
from typing import Callable
import uuid

from .agents import build_agents
from .checkpoints import (
    Checkpoint,
    CheckpointStore,
    PipelineState,
    ReviewTask,
    build_store,
    now,
    validate_task_id,
)
from .config import PipelineConfig
from .consensus import ConsensusBuilder
from .context import ContextProvider, DiffContextProvider
from .cross_validator import CrossValidator
from .errors import TaskCancelled, TaskConflict
from .fanout import AnalysisJob, Analyzer, run_fanout
from .refinement import RefinementController, RefinementState
from .synthesis import synthesize

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """
    리뷰 파이프라인 엔진

    Usage:
        engine = WorkflowEngine.from_config(load_config())
        checkpoint = engine.start("changes.diff")
        if checkpoint.task.state == PipelineState.COMPLETED:
            print(checkpoint.result.summary)

        # 중단된 Task 재개
        checkpoint = engine.resume("review-1a2b3c4d")
    """

    # 프로세스 내 실행 중인 Task (저장소 락과 별개로 같은 프로세스 안의 중복 실행 차단)
    _running: set[str] = set()
    _running_lock = threading.Lock()

    def __init__(
        self,
        store: CheckpointStore,
        agents: list[Analyzer],
        context_provider: ContextProvider,
        config: PipelineConfig | None = None,
        cross_validator: CrossValidator | None = None,
        consensus_builder: ConsensusBuilder | None = None,
        refinement: RefinementController | None = None,
        cancel_event: threading.Event | None = None,
        on_progress: Callable[[ReviewTask, str], None] | None = None,
    ):
        self.config = config or PipelineConfig()
        self.store = store
        self.agents = agents
        self.context_provider = context_provider
        self.cross_validator = cross_validator or CrossValidator(
            line_window=self.config.line_window,
            confidence_delta=self.config.confidence_delta,
            high_confidence=self.config.high_confidence,
            uncertain_confidence=self.config.uncertain_confidence,
        )
        self.consensus_builder = consensus_builder or ConsensusBuilder.from_config(self.config)
        self.refinement = refinement or RefinementController.from_config(self.config, agents)
        self.cancel_event = cancel_event or threading.Event()
        self.on_progress = on_progress

    @classmethod
    def from_config(
        cls,
        config: PipelineConfig,
        agents: list[Analyzer] | None = None,
        store: CheckpointStore | None = None,
        **kwargs,
    ) -> "WorkflowEngine":
        """설정으로 기본 구성 요소를 만들어 엔진 생성"""
        return cls(
            store=store or build_store(config.store, config.store_dir),
            agents=agents if agents is not None else build_agents(config),
            context_provider=DiffContextProvider(config.max_chunk_lines),
            config=config,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # 공개 API
    # ------------------------------------------------------------------

    def start(self, input_ref: str, task_id: str | None = None) -> Checkpoint:
        """
        새 Task 시작

        Args:
            input_ref: 리뷰 대상 (diff 파일 경로)
            task_id: Task id (없으면 생성)

        Returns:
            마지막 Checkpoint (COMPLETED, FAILED 또는 CANCELLED)

        Raises:
            TaskConflict: 같은 id의 Task가 이미 있거나 실행 중
            CheckpointWriteFailure: 초기 또는 실패 스냅샷조차 저장할 수 없을 때
        """
        task_id = validate_task_id(task_id or f"review-{uuid.uuid4().hex[:8]}")

        self._claim(task_id)
        try:
            if self.store.exists(task_id):
                raise TaskConflict(task_id, f"Task {task_id} already exists; use resume")

            checkpoint = Checkpoint(task=ReviewTask(id=task_id, input_ref=input_ref))
            self.store.save(task_id, checkpoint)
            self._progress(checkpoint.task, "created")
            return self._run(checkpoint)
        finally:
            self._release(task_id)

    def resume(self, task_id: str) -> Checkpoint:
        """
        저장된 Task 재개

        COMPLETED Task는 에이전트 호출 없이 저장된 결과를 그대로 반환한다.

        Raises:
            TaskNotFound: 스냅샷 없음
            TaskConflict: 이미 실행 중
        """
        checkpoint = self.store.load(task_id)
        if checkpoint.task.state == PipelineState.COMPLETED and checkpoint.result is not None:
            return checkpoint

        self._claim(task_id)
        try:
            # 락을 잡은 뒤의 최신 스냅샷 기준
            checkpoint = self.store.load(task_id)
            task = checkpoint.task
            if task.state in (PipelineState.FAILED, PipelineState.CANCELLED):
                logger.info("Resuming %s task %s", task.state.value, task_id)
            task.error = None
            task.failed_stage = None
            self._progress(task, f"resuming at {self.next_stage(checkpoint).value}")
            return self._run(checkpoint)
        finally:
            self._release(task_id)

    def cancel(self) -> None:
        """실행 중인 Task 취소 요청 (stage 경계 또는 다음 에이전트 호출 전에 반영)"""
        self.cancel_event.set()

    def next_stage(self, checkpoint: Checkpoint) -> PipelineState:
        """스냅샷에서 아직 끝나지 않은 첫 stage"""
        if checkpoint.change is None:
            return PipelineState.FETCHING_CONTEXT
        if checkpoint.chunks is None:
            return PipelineState.CHUNKING
        if self.pending_jobs(checkpoint):
            return PipelineState.ANALYZING_CHUNKS
        if checkpoint.cross_validation is None:
            return PipelineState.CROSS_VALIDATING
        if checkpoint.consensus is None:
            return PipelineState.BUILDING_CONSENSUS
        if not checkpoint.refinement_done:
            return PipelineState.REFINING
        if checkpoint.result is None:
            return PipelineState.SYNTHESIZING
        return PipelineState.COMPLETED

    def pending_jobs(self, checkpoint: Checkpoint) -> list[AnalysisJob]:
        """아직 결과가 없는 (chunk, agent) 작업"""
        return [
            AnalysisJob(chunk=chunk, agent=agent)
            for chunk in checkpoint.chunks or []
            for agent in self.agents
            if agent.name not in chunk.completed
        ]

    # ------------------------------------------------------------------
    # 실행
    # ------------------------------------------------------------------

    def _run(self, checkpoint: Checkpoint) -> Checkpoint:
        task = checkpoint.task
        stages = {
            PipelineState.FETCHING_CONTEXT: self._fetch_context,
            PipelineState.CHUNKING: self._chunk,
            PipelineState.ANALYZING_CHUNKS: self._analyze,
            PipelineState.CROSS_VALIDATING: self._cross_validate,
            PipelineState.BUILDING_CONSENSUS: self._build_consensus,
            PipelineState.REFINING: self._refine,
            PipelineState.SYNTHESIZING: self._synthesize,
        }

        while True:
            stage = self.next_stage(checkpoint)

            if stage == PipelineState.COMPLETED:
                self._transition(checkpoint, PipelineState.COMPLETED)
                self._save(checkpoint)
                self._progress(task, "completed")
                return checkpoint

            try:
                if self.cancel_event.is_set():
                    raise TaskCancelled(f"Cancelled before {stage.value}")
                self._transition(checkpoint, stage)
                self._save(checkpoint)
                self._progress(task, stage.value)
                stages[stage](checkpoint)
            except (TaskCancelled, KeyboardInterrupt) as e:
                # Ctrl-C도 취소로 기록 (진행 중이던 호출 결과는 resume 시 다시 분석)
                self.cancel_event.set()
                self._transition(checkpoint, PipelineState.CANCELLED)
                self._save(checkpoint)
                self._progress(task, f"cancelled: {e or 'interrupted'}")
                return checkpoint
            except Exception as e:
                logger.exception("Task %s failed in %s", task.id, stage.value)
                task.state = PipelineState.FAILED
                task.failed_stage = stage
                task.error = f"{type(e).__name__}: {e}"
                task.updated_at = now()
                # 여기서도 저장에 실패하면 CheckpointWriteFailure가 호출자에게 전파됨
                self._save(checkpoint)
                self._progress(task, f"failed: {task.error}")
                return checkpoint

    def _fetch_context(self, checkpoint: Checkpoint) -> None:
        checkpoint.change = self.context_provider.fetch(checkpoint.task.input_ref)
        self._save(checkpoint)

    def _chunk(self, checkpoint: Checkpoint) -> None:
        chunks = self.context_provider.chunk(checkpoint.change)
        checkpoint.chunks = chunks
        checkpoint.task.total_chunks = len(chunks)
        checkpoint.task.total_passes = len(chunks) * len(self.agents)
        self._save(checkpoint)

    def _analyze(self, checkpoint: Checkpoint) -> None:
        task = checkpoint.task
        jobs = self.pending_jobs(checkpoint)
        task.total_passes = len(checkpoint.chunks) * len(self.agents)
        logger.info("Task %s: %d analyses pending", task.id, len(jobs))

        def on_result(job: AnalysisJob, analysis) -> None:
            checkpoint.analyses.setdefault(job.chunk.id, {})[job.agent.name] = analysis
            job.chunk.completed.add(job.agent.name)
            self._update_counters(checkpoint)
            self._save(checkpoint)
            self._progress(task, f"{job.chunk.id} {job.agent.name} done ({task.completed_passes}/{task.total_passes})")

        run_fanout(
            jobs,
            max_workers=self.config.max_concurrent_analyses,
            on_result=on_result,
            cancel_event=self.cancel_event,
        )

    def _cross_validate(self, checkpoint: Checkpoint) -> None:
        checkpoint.cross_validation = self.cross_validator.validate(checkpoint.analyses)
        self._save(checkpoint)

    def _build_consensus(self, checkpoint: Checkpoint) -> None:
        checkpoint.consensus = self.consensus_builder.build(checkpoint.cross_validation, checkpoint.analyses)
        self._save(checkpoint)

    def _refine(self, checkpoint: Checkpoint) -> None:
        state = RefinementState(
            consensus=checkpoint.consensus,
            history=checkpoint.refinement_history,
            resolved_conflict_keys=checkpoint.resolved_conflict_keys,
            done=checkpoint.refinement_done,
        )

        def on_iteration(current: RefinementState) -> None:
            checkpoint.consensus = current.consensus
            checkpoint.refinement_history = current.history
            checkpoint.resolved_conflict_keys = current.resolved_conflict_keys
            checkpoint.refinement_done = current.done
            checkpoint.task.updated_at = now()
            self._save(checkpoint)

        self.refinement.run(
            state,
            checkpoint.analyses,
            checkpoint.cross_validation.conflicts,
            checkpoint.chunks,
            on_iteration=on_iteration,
            cancel_event=self.cancel_event,
        )
        state.done = True
        on_iteration(state)

    def _synthesize(self, checkpoint: Checkpoint) -> None:
        change = checkpoint.change
        checkpoint.result = synthesize(
            task_id=checkpoint.task.id,
            title=change.title,
            files=change.files,
            consensus=checkpoint.consensus,
            refinement_history=checkpoint.refinement_history,
            analyses=checkpoint.analyses,
        )
        self._save(checkpoint)

    # ------------------------------------------------------------------
    # 내부 유틸
    # ------------------------------------------------------------------

    def _save(self, checkpoint: Checkpoint) -> None:
        self.store.save(checkpoint.task.id, checkpoint)

    def _transition(self, checkpoint: Checkpoint, state: PipelineState) -> None:
        checkpoint.task.state = state
        checkpoint.task.updated_at = now()

    def _update_counters(self, checkpoint: Checkpoint) -> None:
        task = checkpoint.task
        names = {agent.name for agent in self.agents}
        task.completed_passes = sum(len(chunk.completed & names) for chunk in checkpoint.chunks)
        task.completed_chunks = sum(1 for chunk in checkpoint.chunks if names <= chunk.completed)
        task.updated_at = now()

    def _claim(self, task_id: str) -> None:
        with self._running_lock:
            if task_id in self._running:
                raise TaskConflict(task_id)
            self._running.add(task_id)
        try:
            self.store.acquire(task_id)
        except BaseException:
            with self._running_lock:
                self._running.discard(task_id)
            raise

    def _release(self, task_id: str) -> None:
        try:
            self.store.release(task_id)
        finally:
            with self._running_lock:
                self._running.discard(task_id)

    def _progress(self, task: ReviewTask, message: str) -> None:
        logger.info("Task %s: %s", task.id, message)
        if self.on_progress:
            self.on_progress(task, message)
