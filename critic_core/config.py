"""
Pipeline Configuration

파이프라인 설정. 우선순위(낮음 → 높음):
  1. 내장 기본값
  2. 프로젝트의 .critic.yml
  3. CLI 인자 (None이 아닌 값만)

합의/정제 단계의 휴리스틱 상수(0.8/0.6/0.4 임계값, ±0.1 confidence 차이,
±3 라인 윈도우 등)는 모두 여기서 조정 가능한 값으로 둔다.
"""

from dataclasses import dataclass, field, fields
import os
from pathlib import Path

import yaml


DEFAULT_DIMENSIONS = ["architecture", "security", "performance", "testing"]

# 에이전트(출처)별 도메인 전문성 가중치. 모르는 출처는 0.5.
DEFAULT_EXPERTISE: dict[str, dict[str, float]] = {
    "architecture": {
        "architecture": 0.9,
        "design-pattern": 0.95,
        "coupling": 0.85,
        "default": 0.8,
    },
    "security": {
        "security": 0.95,
        "vulnerability": 0.9,
        "sql-injection": 0.95,
        "authentication": 0.85,
        "default": 0.7,
    },
    "performance": {
        "performance": 0.9,
        "optimization": 0.85,
        "scalability": 0.8,
        "default": 0.75,
    },
    "testing": {
        "testing": 0.9,
        "coverage": 0.85,
        "quality-assurance": 0.8,
        "default": 0.7,
    },
}


@dataclass
class AgentSettings:
    """차원별 모델 엔드포인트 설정"""
    provider: str = "claude"  # "claude" | "codex" | "openai"
    model: str = "sonnet"
    max_tokens: int = 4096
    temperature: float = 0.1
    max_retries: int = 2
    base_url: str | None = None

    @classmethod
    def from_dict(cls, data: dict | None) -> "AgentSettings":
        data = data or {}
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class PipelineConfig:
    """파이프라인 전체 설정"""
    dimensions: list[str] = field(default_factory=lambda: list(DEFAULT_DIMENSIONS))
    agents: dict[str, AgentSettings] = field(default_factory=dict)

    # fan-out
    max_concurrent_analyses: int = 4
    call_timeout: int = 300
    max_chunk_lines: int = 200

    # 교차 검증
    line_window: int = 3
    confidence_delta: float = 0.1
    high_confidence: float = 0.8
    uncertain_confidence: float = 0.5

    # 합의 전략 선택
    majority_threshold: float = 0.8
    weighted_threshold: float = 0.6
    arbitration_threshold: float = 0.4
    majority_boost_step: float = 0.1
    majority_boost_cap: float = 0.3
    expertise: dict[str, dict[str, float]] = field(
        default_factory=lambda: {k: dict(v) for k, v in DEFAULT_EXPERTISE.items()}
    )

    # 정제 루프
    max_iterations: int = 3
    convergence_threshold: float = 0.85
    quality_threshold: float = 0.8
    max_deep_dive_areas: int = 4

    # 에이전트 fallback
    fallback_confidence: float = 0.3

    # 저장소
    store: str = "file"  # "file" | "sqlite"
    store_dir: str = ".critic"

    # 환경변수에서 채워짐
    openai_api_key: str | None = None
    openai_base_url: str | None = None

    def agent_settings(self, dimension: str) -> AgentSettings:
        """차원 설정이 없으면 기본값"""
        return self.agents.get(dimension) or AgentSettings()

    @classmethod
    def from_dict(cls, data: dict) -> "PipelineConfig":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}

        if "agents" in values:
            values["agents"] = {
                name: AgentSettings.from_dict(settings)
                for name, settings in (values["agents"] or {}).items()
            }
        if "expertise" in values:
            # 파일에 일부 출처만 있으면 기본 테이블 위에 덮어씀
            expertise = {k: dict(v) for k, v in DEFAULT_EXPERTISE.items()}
            for source, weights in (values["expertise"] or {}).items():
                expertise.setdefault(source, {}).update(weights or {})
            values["expertise"] = expertise

        return cls(**values)


def load_config(config_path: str | Path = ".critic.yml", cli_overrides: dict | None = None) -> PipelineConfig:
    """
    설정 로드

    Args:
        config_path: YAML 설정 파일 경로 (없으면 무시)
        cli_overrides: CLI 인자 (None 값은 무시)

    Returns:
        PipelineConfig
    """
    data: dict = {}

    path = Path(config_path)
    if path.exists():
        with open(path) as f:
            data.update(yaml.safe_load(f) or {})

    if cli_overrides:
        for key, value in cli_overrides.items():
            if value is not None:
                data[key] = value

    config = PipelineConfig.from_dict(data)

    # 자격 증명은 환경변수에서만
    config.openai_api_key = os.environ.get("OPENAI_API_KEY")
    config.openai_base_url = os.environ.get("OPENAI_BASE_URL") or config.openai_base_url

    return config
