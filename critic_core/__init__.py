"""
Critic Consensus Core Module

재개 가능한 다차원 코드 리뷰 파이프라인 핵심 엔진.
"""

from .models import ModelClient, ClaudeClient, CodexClient, OpenAIClient, CompletionOptions, build_client
from .config import PipelineConfig, AgentSettings, load_config
from .context import Chunk, ChangeContext, ContextProvider, DiffContextProvider
from .analysis import (
    Finding,
    Recommendation,
    Provenance,
    Severity,
    Priority,
    SpecializedAnalysis,
    ConsensusResult,
    ConsensusStrategy,
)
from .agents import AnalysisAgent, FindingSource, SourceAgent, build_agents
from .cross_validator import CrossValidator
from .consensus import ConsensusBuilder, ExpertiseTable
from .refinement import RefinementController
from .checkpoints import (
    Checkpoint,
    CheckpointStore,
    FileCheckpointStore,
    SQLiteCheckpointStore,
    PipelineState,
    ReviewTask,
)
from .synthesis import Decision, PipelineResult
from .workflow import WorkflowEngine
from .errors import (
    CriticError,
    AgentFailure,
    CheckpointWriteFailure,
    ConsensusBuildFailure,
    TaskConflict,
    TaskNotFound,
    TaskCancelled,
)

__all__ = [
    "ModelClient",
    "ClaudeClient",
    "CodexClient",
    "OpenAIClient",
    "CompletionOptions",
    "build_client",
    "PipelineConfig",
    "AgentSettings",
    "load_config",
    "Chunk",
    "ChangeContext",
    "ContextProvider",
    "DiffContextProvider",
    # Analysis
    "Finding",
    "Recommendation",
    "Provenance",
    "Severity",
    "Priority",
    "SpecializedAnalysis",
    "ConsensusResult",
    "ConsensusStrategy",
    "AnalysisAgent",
    "FindingSource",
    "SourceAgent",
    "build_agents",
    "CrossValidator",
    "ConsensusBuilder",
    "ExpertiseTable",
    "RefinementController",
    # Workflow
    "Checkpoint",
    "CheckpointStore",
    "FileCheckpointStore",
    "SQLiteCheckpointStore",
    "PipelineState",
    "ReviewTask",
    "Decision",
    "PipelineResult",
    "WorkflowEngine",
    # Errors
    "CriticError",
    "AgentFailure",
    "CheckpointWriteFailure",
    "ConsensusBuildFailure",
    "TaskConflict",
    "TaskNotFound",
    "TaskCancelled",
]
