"""
Checkpoints

Task 상태 스냅샷(Checkpoint)과 저장소.

스냅샷은 stage가 끝날 때마다(분석 단계에서는 결과 하나마다, 정제 단계에서는
회차마다) 통째로 저장된다. 저장은 원자적이어서 중간에 죽어도 직전 스냅샷이 남는다.

저장소:
  - FileCheckpointStore: Task당 JSON 파일 하나 (임시 파일 + os.replace)
  - SQLiteCheckpointStore: Task당 row 하나 (트랜잭션)
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
import json
import logging
import os
from pathlib import Path
import re
import sqlite3
import tempfile
import threading
import uuid

from .analysis import ConsensusResult, CrossValidationResult, RefinementIteration, SpecializedAnalysis
from .context import ChangeContext, Chunk
from .errors import CheckpointWriteFailure, CriticError, TaskConflict, TaskNotFound
from .synthesis import PipelineResult

logger = logging.getLogger(__name__)

TASK_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class PipelineState(Enum):
    """Task 상태"""
    INIT = "init"
    FETCHING_CONTEXT = "fetching_context"
    CHUNKING = "chunking"
    ANALYZING_CHUNKS = "analyzing_chunks"
    CROSS_VALIDATING = "cross_validating"
    BUILDING_CONSENSUS = "building_consensus"
    REFINING = "refining"
    SYNTHESIZING = "synthesizing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineState.COMPLETED, PipelineState.FAILED, PipelineState.CANCELLED)


def now() -> str:
    return datetime.now().isoformat()


@dataclass
class ReviewTask:
    """리뷰 작업 (엔진만 수정함)"""
    id: str
    input_ref: str
    state: PipelineState = PipelineState.INIT
    error: str | None = None
    failed_stage: PipelineState | None = None
    created_at: str = ""
    updated_at: str = ""

    # 진행 상황
    total_chunks: int = 0
    completed_chunks: int = 0
    total_passes: int = 0
    completed_passes: int = 0

    def __post_init__(self):
        if not self.created_at:
            self.created_at = now()
        if not self.updated_at:
            self.updated_at = self.created_at

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "input_ref": self.input_ref,
            "state": self.state.value,
            "error": self.error,
            "failed_stage": self.failed_stage.value if self.failed_stage else None,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "total_chunks": self.total_chunks,
            "completed_chunks": self.completed_chunks,
            "total_passes": self.total_passes,
            "completed_passes": self.completed_passes,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ReviewTask":
        failed_stage = data.get("failed_stage")
        return cls(
            id=data["id"],
            input_ref=data.get("input_ref", ""),
            state=PipelineState(data.get("state", PipelineState.INIT.value)),
            error=data.get("error"),
            failed_stage=PipelineState(failed_stage) if failed_stage else None,
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
            total_chunks=data.get("total_chunks", 0),
            completed_chunks=data.get("completed_chunks", 0),
            total_passes=data.get("total_passes", 0),
            completed_passes=data.get("completed_passes", 0),
        )


@dataclass
class Checkpoint:
    """
    Task 전체 스냅샷

    None인 필드는 해당 stage가 아직 끝나지 않았다는 뜻이다.
    재개 지점은 이 필드들로부터 계산된다.
    """
    task: ReviewTask
    change: ChangeContext | None = None
    chunks: list[Chunk] | None = None
    analyses: dict[str, dict[str, SpecializedAnalysis]] = field(default_factory=dict)
    cross_validation: CrossValidationResult | None = None
    consensus: ConsensusResult | None = None
    refinement_history: list[RefinementIteration] = field(default_factory=list)
    refinement_done: bool = False
    resolved_conflict_keys: set[str] = field(default_factory=set)
    result: PipelineResult | None = None

    def to_dict(self) -> dict:
        return {
            "task": self.task.to_dict(),
            "change": self.change.to_dict() if self.change else None,
            "chunks": [c.to_dict() for c in self.chunks] if self.chunks is not None else None,
            "analyses": {
                chunk_id: {name: a.to_dict() for name, a in unit.items()}
                for chunk_id, unit in self.analyses.items()
            },
            "cross_validation": self.cross_validation.to_dict() if self.cross_validation else None,
            "consensus": self.consensus.to_dict() if self.consensus else None,
            "refinement_history": [r.to_dict() for r in self.refinement_history],
            "refinement_done": self.refinement_done,
            "resolved_conflict_keys": sorted(self.resolved_conflict_keys),
            "result": self.result.to_dict() if self.result else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Checkpoint":
        change = data.get("change")
        chunks = data.get("chunks")
        validation = data.get("cross_validation")
        consensus = data.get("consensus")
        result = data.get("result")
        return cls(
            task=ReviewTask.from_dict(data["task"]),
            change=ChangeContext.from_dict(change) if change else None,
            chunks=[Chunk.from_dict(c) for c in chunks] if chunks is not None else None,
            analyses={
                chunk_id: {name: SpecializedAnalysis.from_dict(a) for name, a in unit.items()}
                for chunk_id, unit in data.get("analyses", {}).items()
            },
            cross_validation=CrossValidationResult.from_dict(validation) if validation else None,
            consensus=ConsensusResult.from_dict(consensus) if consensus else None,
            refinement_history=[RefinementIteration.from_dict(r) for r in data.get("refinement_history", [])],
            refinement_done=data.get("refinement_done", False),
            resolved_conflict_keys=set(data.get("resolved_conflict_keys", [])),
            result=PipelineResult.from_dict(result) if result else None,
        )


def validate_task_id(task_id: str) -> str:
    """파일 이름으로 쓸 수 있는 id인지 확인"""
    if not task_id or not TASK_ID_PATTERN.match(task_id):
        raise ValueError(f"Invalid task id: {task_id!r}")
    return task_id


def pid_alive(pid: int) -> bool:
    """프로세스 생존 여부 (신호 0 전송)"""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # 다른 사용자 소유 프로세스가 살아 있음
        return True
    return True


class CheckpointStore(ABC):
    """체크포인트 저장소 추상 클래스"""

    @abstractmethod
    def save(self, task_id: str, checkpoint: Checkpoint) -> None:
        """
        원자적 저장

        Raises:
            CheckpointWriteFailure: 저장 실패 (이전 스냅샷은 유지됨)
        """

    @abstractmethod
    def load(self, task_id: str) -> Checkpoint:
        """
        Raises:
            TaskNotFound: 스냅샷 없음
        """

    @abstractmethod
    def exists(self, task_id: str) -> bool:
        pass

    @abstractmethod
    def list_tasks(self) -> list[ReviewTask]:
        """저장된 Task 목록 (생성 시각 순)"""

    @abstractmethod
    def acquire(self, task_id: str) -> None:
        """
        Task 실행권 획득 (프로세스 간 배타)

        Raises:
            TaskConflict: 살아 있는 다른 실행이 잡고 있을 때
        """

    @abstractmethod
    def release(self, task_id: str) -> None:
        pass


class FileCheckpointStore(CheckpointStore):
    """
    JSON 파일 저장소

    <root>/tasks/<task_id>.json    스냅샷
    <root>/locks/<task_id>.lock    실행 중인 프로세스 pid

    Usage:
        store = FileCheckpointStore(".critic")
        store.save(task.id, checkpoint)
        checkpoint = store.load(task.id)
    """

    def __init__(self, root: str | Path = ".critic"):
        self.root = Path(root)
        self.tasks_dir = self.root / "tasks"
        self.locks_dir = self.root / "locks"

    def _task_path(self, task_id: str) -> Path:
        return self.tasks_dir / f"{validate_task_id(task_id)}.json"

    def _lock_path(self, task_id: str) -> Path:
        return self.locks_dir / f"{validate_task_id(task_id)}.lock"

    def save(self, task_id: str, checkpoint: Checkpoint) -> None:
        path = self._task_path(task_id)
        tmp_path = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            content = json.dumps(checkpoint.to_dict(), indent=2, ensure_ascii=False)
            with tempfile.NamedTemporaryFile(
                mode="w", dir=path.parent, prefix=f".{task_id}.", suffix=".tmp", delete=False
            ) as f:
                tmp_path = f.name
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
            tmp_path = None
        except (OSError, TypeError, ValueError) as e:
            raise CheckpointWriteFailure(f"Failed to write checkpoint {path}: {e}") from e
        finally:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)

        logger.debug("Saved checkpoint %s (%s)", task_id, checkpoint.task.state.value)

    def load(self, task_id: str) -> Checkpoint:
        path = self._task_path(task_id)
        if not path.exists():
            raise TaskNotFound(task_id)
        try:
            return Checkpoint.from_dict(json.loads(path.read_text()))
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            raise CriticError(f"Corrupt checkpoint {path}: {e}") from e

    def exists(self, task_id: str) -> bool:
        return self._task_path(task_id).exists()

    def list_tasks(self) -> list[ReviewTask]:
        if not self.tasks_dir.exists():
            return []

        tasks = []
        for path in self.tasks_dir.glob("*.json"):
            try:
                data = json.loads(path.read_text())
                tasks.append(ReviewTask.from_dict(data["task"]))
            except (json.JSONDecodeError, KeyError, ValueError) as e:
                logger.warning("Skipping unreadable checkpoint %s: %s", path, e)
        return sorted(tasks, key=lambda t: t.created_at)

    def acquire(self, task_id: str) -> None:
        path = self._lock_path(task_id)
        path.parent.mkdir(parents=True, exist_ok=True)

        for _ in range(3):
            if self._create_lock(path):
                return

            owner = self._lock_owner(path)
            if owner is not None and pid_alive(owner):
                raise TaskConflict(task_id, f"Task {task_id} is already running (pid {owner})")
            if not self._reclaim(path, owner):
                raise TaskConflict(task_id, f"Task {task_id} was claimed by another process")
            logger.warning("Reclaimed stale lock for task %s (pid %s)", task_id, owner)

        raise TaskConflict(task_id)

    def release(self, task_id: str) -> None:
        path = self._lock_path(task_id)
        if self._lock_owner(path) == os.getpid():
            path.unlink(missing_ok=True)

    def _create_lock(self, path: Path) -> bool:
        """pid를 쓴 임시 파일을 hard link로 게시 (pid 없는 락 파일이 보이는 순간이 없음)"""
        fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(str(os.getpid()))
            try:
                os.link(tmp_path, path)
            except FileExistsError:
                return False
            return True
        finally:
            os.unlink(tmp_path)

    def _reclaim(self, path: Path, stale_owner: int | None) -> bool:
        """
        죽은 프로세스의 락 제거

        rename으로 락을 먼저 옮긴 뒤 내용을 다시 확인한다. 그 사이 다른 프로세스가
        새 락을 잡았다면 되돌려 놓고 False.
        """
        moved = path.with_name(f"{path.name}.{os.getpid()}.{uuid.uuid4().hex[:8]}.stale")
        try:
            os.rename(path, moved)
        except FileNotFoundError:
            # 다른 프로세스가 이미 치움
            return True

        try:
            if self._lock_owner(moved) == stale_owner:
                return True
            try:
                os.link(moved, path)
            except FileExistsError:
                pass
            return False
        finally:
            moved.unlink(missing_ok=True)

    def _lock_owner(self, path: Path) -> int | None:
        try:
            return int(path.read_text().strip())
        except (OSError, ValueError):
            return None


_SCHEMA = """
CREATE TABLE IF NOT EXISTS checkpoints (
    task_id     TEXT PRIMARY KEY,
    state       TEXT NOT NULL,
    input_ref   TEXT,
    created_at  TEXT,
    updated_at  TEXT,
    data        TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS locks (
    task_id     TEXT PRIMARY KEY,
    pid         INTEGER NOT NULL,
    acquired_at TEXT
);
"""


class SQLiteCheckpointStore(CheckpointStore):
    """
    SQLite 저장소

    Task당 row 하나. 저장은 트랜잭션 하나로 끝나므로 원자적이다.

    Usage:
        store = SQLiteCheckpointStore(".critic/checkpoints.db")
    """

    def __init__(self, db_path: str | Path = ".critic/checkpoints.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(_SCHEMA)
        self._conn.commit()

    def save(self, task_id: str, checkpoint: Checkpoint) -> None:
        validate_task_id(task_id)
        task = checkpoint.task
        try:
            data = json.dumps(checkpoint.to_dict(), ensure_ascii=False)
            with self._lock, self._conn:
                self._conn.execute(
                    """
                    INSERT INTO checkpoints (task_id, state, input_ref, created_at, updated_at, data)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(task_id) DO UPDATE SET
                      state=excluded.state,
                      updated_at=excluded.updated_at,
                      data=excluded.data
                    """,
                    (task_id, task.state.value, task.input_ref, task.created_at, task.updated_at, data),
                )
        except (sqlite3.Error, TypeError, ValueError) as e:
            raise CheckpointWriteFailure(f"Failed to write checkpoint {task_id}: {e}") from e

        logger.debug("Saved checkpoint %s (%s)", task_id, task.state.value)

    def load(self, task_id: str) -> Checkpoint:
        with self._lock:
            row = self._conn.execute(
                "SELECT data FROM checkpoints WHERE task_id=?", (task_id,)
            ).fetchone()
        if row is None:
            raise TaskNotFound(task_id)
        try:
            return Checkpoint.from_dict(json.loads(row["data"]))
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            raise CriticError(f"Corrupt checkpoint {task_id}: {e}") from e

    def exists(self, task_id: str) -> bool:
        with self._lock:
            row = self._conn.execute(
                "SELECT 1 FROM checkpoints WHERE task_id=?", (task_id,)
            ).fetchone()
        return row is not None

    def list_tasks(self) -> list[ReviewTask]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT data FROM checkpoints ORDER BY created_at"
            ).fetchall()
        return [ReviewTask.from_dict(json.loads(r["data"])["task"]) for r in rows]

    def acquire(self, task_id: str) -> None:
        validate_task_id(task_id)
        try:
            with self._lock, self._conn:
                row = self._conn.execute("SELECT pid FROM locks WHERE task_id=?", (task_id,)).fetchone()
                if row is not None:
                    if pid_alive(row["pid"]):
                        raise TaskConflict(task_id, f"Task {task_id} is already running (pid {row['pid']})")
                    logger.warning("Reclaiming stale lock for task %s (pid %s)", task_id, row["pid"])
                    # 같은 죽은 pid의 row만 지움: 그 사이 다른 프로세스가 잡은 락은 남는다
                    self._conn.execute("DELETE FROM locks WHERE task_id=? AND pid=?", (task_id, row["pid"]))
                self._conn.execute(
                    "INSERT INTO locks (task_id, pid, acquired_at) VALUES (?, ?, ?)",
                    (task_id, os.getpid(), now()),
                )
        except sqlite3.IntegrityError as e:
            raise TaskConflict(task_id, f"Task {task_id} was claimed by another process") from e

    def release(self, task_id: str) -> None:
        with self._lock, self._conn:
            self._conn.execute("DELETE FROM locks WHERE task_id=? AND pid=?", (task_id, os.getpid()))

    def close(self) -> None:
        self._conn.close()


def build_store(kind: str = "file", store_dir: str | Path = ".critic") -> CheckpointStore:
    """
    설정으로부터 저장소 생성

    Raises:
        ValueError: 알 수 없는 저장소 종류
    """
    if kind == "file":
        return FileCheckpointStore(store_dir)
    if kind == "sqlite":
        return SQLiteCheckpointStore(Path(store_dir) / "checkpoints.db")
    raise ValueError(f"Unknown checkpoint store: {kind!r}. Choose 'file' or 'sqlite'.")
