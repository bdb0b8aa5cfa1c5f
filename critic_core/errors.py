"""
Pipeline Errors

리뷰 파이프라인 에러 분류.

AgentFailure만 에이전트 내부에서 흡수(fallback 분석으로 변환)되고,
나머지는 모두 Task의 FAILED 상태로 전파된다.
"""


class CriticError(Exception):
    """파이프라인 에러 베이스"""
    pass


class AgentFailure(CriticError):
    """분석 에이전트 실패 (fallback 분석으로 변환됨, 치명적이지 않음)"""

    def __init__(self, dimension: str, message: str):
        super().__init__(f"{dimension} agent failed: {message}")
        self.dimension = dimension
        self.reason = message


class CheckpointWriteFailure(CriticError):
    """체크포인트 저장 실패 (현재 stage에 치명적, 호출자가 재시도해야 함)"""
    pass


class ConsensusBuildFailure(CriticError):
    """합의 생성 실패 (의미 있는 부분 합의가 없음)"""
    pass


class TaskConflict(CriticError):
    """같은 Task에 대한 동시 start/resume 거부"""

    def __init__(self, task_id: str, message: str | None = None):
        super().__init__(message or f"Task {task_id} is already running")
        self.task_id = task_id


class TaskNotFound(CriticError):
    """체크포인트가 없는 Task resume"""

    def __init__(self, task_id: str):
        super().__init__(f"No checkpoint found for task {task_id}")
        self.task_id = task_id


class TaskCancelled(CriticError):
    """취소 토큰이 설정됨 (stage 경계 또는 에이전트 호출 직전에 감지)"""
    pass
