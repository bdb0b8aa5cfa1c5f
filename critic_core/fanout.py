"""
Analysis Fan-out

(chunk, agent) 작업을 스레드 풀로 동시에 실행.

- 동시 실행 수는 max_workers로 제한
- 결과 콜백은 호출한 스레드(엔진 스레드)에서만 실행되므로 체크포인트 저장이 직렬화됨
- 취소 토큰은 각 작업이 에이전트를 호출하기 직전에 확인
"""

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
import logging
import threading
from typing import Callable, Protocol

from .agents import fallback_analysis
from .analysis import SpecializedAnalysis
from .context import Chunk
from .errors import TaskCancelled

logger = logging.getLogger(__name__)


class Analyzer(Protocol):
    """fan-out에 참여할 수 있는 에이전트"""
    name: str
    dimension: str
    model: str

    def analyze(self, chunk: Chunk, focus: str | None = None) -> SpecializedAnalysis: ...


@dataclass
class AnalysisJob:
    """분석 작업 하나"""
    chunk: Chunk
    agent: Analyzer
    focus: str | None = None


def run_fanout(
    jobs: list[AnalysisJob],
    max_workers: int = 4,
    on_result: Callable[[AnalysisJob, SpecializedAnalysis], None] | None = None,
    cancel_event: threading.Event | None = None,
) -> list[tuple[AnalysisJob, SpecializedAnalysis]]:
    """
    작업 병렬 실행

    Args:
        jobs: 실행할 작업
        max_workers: 최대 동시 실행 수
        on_result: 결과 하나가 나올 때마다 호출 (완료 순서)
        cancel_event: 설정되면 아직 시작 안 한 작업은 건너뜀

    Returns:
        (job, analysis) 리스트 (완료 순서)

    Raises:
        TaskCancelled: 취소 토큰이 설정된 경우 (이미 끝난 결과는 on_result로 전달된 뒤)
    """
    if not jobs:
        return []

    def run(job: AnalysisJob) -> SpecializedAnalysis | None:
        if cancel_event is not None and cancel_event.is_set():
            return None
        return job.agent.analyze(job.chunk, job.focus)

    results: list[tuple[AnalysisJob, SpecializedAnalysis]] = []

    executor = ThreadPoolExecutor(max_workers=max(1, max_workers))
    try:
        futures = {executor.submit(run, job): job for job in jobs}

        for future in as_completed(futures):
            job = futures[future]
            try:
                analysis = future.result()
            except Exception as e:
                logger.warning("%s raised on %s: %s", job.agent.name, job.chunk.id, e)
                analysis = fallback_analysis(
                    job.agent.name, job.agent.dimension, job.agent.model, job.chunk, f"unexpected error: {e}"
                )

            if analysis is None:
                continue

            results.append((job, analysis))
            if on_result:
                on_result(job, analysis)
    finally:
        # 콜백 실패나 KeyboardInterrupt 시 대기 중인 작업은 시작하지 않음
        executor.shutdown(wait=True, cancel_futures=True)

    if cancel_event is not None and cancel_event.is_set():
        raise TaskCancelled(f"Cancelled with {len(jobs) - len(results)} analyses pending")

    return results
