"""
Analysis Data Model

분석 결과 데이터 모델. 에이전트, 교차 검증, 합의, 정제 단계가 공유한다.

Finding/Recommendation은 생성 후 불변(frozen)이다.
합의 단계는 원본을 수정하지 않고 새로운 파생 Finding을 만든다.
"""

from dataclasses import dataclass, field
from enum import Enum
import uuid


class Severity(Enum):
    """Finding 심각도 (low < medium < high < critical)"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return list(Severity).index(self)

    @classmethod
    def parse(cls, value: str | None, default: "Severity | None" = None) -> "Severity":
        """문자열을 Severity로 변환 (모르는 값은 default, 없으면 MEDIUM)"""
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return default or cls.MEDIUM


class Priority(Enum):
    """Recommendation 우선순위 (consider < should-fix < must-fix)"""
    CONSIDER = "consider"
    SHOULD_FIX = "should-fix"
    MUST_FIX = "must-fix"

    @property
    def rank(self) -> int:
        return list(Priority).index(self)

    @classmethod
    def parse(cls, value: str | None, default: "Priority | None" = None) -> "Priority":
        normalized = str(value).strip().lower().replace("_", "-").replace(" ", "-")
        try:
            return cls(normalized)
        except ValueError:
            return default or cls.CONSIDER


class RiskLevel(Enum):
    """분석 단위의 위험도"""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @classmethod
    def from_findings(cls, findings: list["Finding"]) -> "RiskLevel":
        """Finding 심각도로부터 결정적으로 계산"""
        severities = {f.severity for f in findings}
        if Severity.CRITICAL in severities:
            return cls.CRITICAL
        if Severity.HIGH in severities:
            return cls.HIGH
        if Severity.MEDIUM in severities:
            return cls.MEDIUM
        return cls.LOW


class ConsensusStrategy(Enum):
    """합의 전략"""
    MAJORITY_VOTING = "majority-voting"
    WEIGHTED_CONSENSUS = "weighted-consensus"
    EXPERT_ARBITRATION = "expert-arbitration"
    ENSEMBLE_FUSION = "ensemble-fusion"


def clamp(value: float) -> float:
    """confidence를 [0, 1] 범위로 제한"""
    try:
        value = float(value)
    except (TypeError, ValueError):
        return 0.0
    return max(0.0, min(1.0, value))


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True)
class Provenance:
    """Finding/Recommendation을 만든 출처 (에이전트 + 모델)"""
    agent: str
    model: str

    @property
    def label(self) -> str:
        return f"{self.agent}@{self.model}"

    def to_dict(self) -> dict:
        return {"agent": self.agent, "model": self.model}

    @classmethod
    def from_dict(cls, data: dict) -> "Provenance":
        return cls(agent=data.get("agent", ""), model=data.get("model", ""))


def merge_provenance(*groups) -> tuple[Provenance, ...]:
    """순서를 유지하며 중복 제거된 provenance 합집합"""
    merged: list[Provenance] = []
    for group in groups:
        for source in group:
            if source not in merged:
                merged.append(source)
    return tuple(merged)


def merge_evidence(*groups) -> tuple[str, ...]:
    """순서를 유지하며 중복 제거된 evidence 합집합"""
    merged: list[str] = []
    for group in groups:
        for item in group:
            if item and item not in merged:
                merged.append(item)
    return tuple(merged)


@dataclass(frozen=True)
class Finding:
    """특정 이슈"""
    id: str
    type: str
    severity: Severity
    message: str
    file: str
    line: int | None = None
    evidence: tuple[str, ...] = ()
    confidence: float = 0.5
    provenance: tuple[Provenance, ...] = ()

    def __post_init__(self):
        # frozen이므로 object.__setattr__로 정규화
        object.__setattr__(self, "confidence", clamp(self.confidence))
        object.__setattr__(self, "evidence", tuple(self.evidence))
        object.__setattr__(self, "provenance", tuple(self.provenance))

    @property
    def location(self) -> str:
        return f"{self.file}:{self.line}" if self.line is not None else self.file

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "severity": self.severity.value,
            "message": self.message,
            "file": self.file,
            "line": self.line,
            "evidence": list(self.evidence),
            "confidence": self.confidence,
            "provenance": [p.to_dict() for p in self.provenance],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Finding":
        return cls(
            id=data["id"],
            type=data.get("type", "general"),
            severity=Severity.parse(data.get("severity")),
            message=data.get("message", ""),
            file=data.get("file", ""),
            line=data.get("line"),
            evidence=tuple(data.get("evidence", [])),
            confidence=data.get("confidence", 0.5),
            provenance=tuple(Provenance.from_dict(p) for p in data.get("provenance", [])),
        )


@dataclass(frozen=True)
class Recommendation:
    """개선 권고"""
    id: str
    priority: Priority
    category: str
    description: str
    rationale: str = ""
    implementation: str = ""
    confidence: float = 0.5
    provenance: tuple[Provenance, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "confidence", clamp(self.confidence))
        object.__setattr__(self, "provenance", tuple(self.provenance))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "priority": self.priority.value,
            "category": self.category,
            "description": self.description,
            "rationale": self.rationale,
            "implementation": self.implementation,
            "confidence": self.confidence,
            "provenance": [p.to_dict() for p in self.provenance],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Recommendation":
        return cls(
            id=data["id"],
            priority=Priority.parse(data.get("priority")),
            category=data.get("category", "general"),
            description=data.get("description", ""),
            rationale=data.get("rationale", ""),
            implementation=data.get("implementation", ""),
            confidence=data.get("confidence", 0.5),
            provenance=tuple(Provenance.from_dict(p) for p in data.get("provenance", [])),
        )


@dataclass
class SpecializedAnalysis:
    """
    한 에이전트가 한 분석 단위(chunk)에 대해 낸 결과

    risk_level은 저장하지 않고 findings로부터 항상 다시 계산한다.
    """
    dimension: str
    chunk_id: str
    model: str
    findings: list[Finding] = field(default_factory=list)
    recommendations: list[Recommendation] = field(default_factory=list)
    confidence: float = 0.0
    is_fallback: bool = False
    validation_score: float = 1.0
    error: str | None = None
    agent: str = ""

    def __post_init__(self):
        self.confidence = clamp(self.confidence)

    @property
    def risk_level(self) -> RiskLevel:
        return RiskLevel.from_findings(self.findings)

    @property
    def source(self) -> str:
        """결과를 낸 에이전트 이름 (없으면 차원)"""
        return self.agent or self.dimension

    def to_dict(self) -> dict:
        return {
            "dimension": self.dimension,
            "chunk_id": self.chunk_id,
            "model": self.model,
            "findings": [f.to_dict() for f in self.findings],
            "recommendations": [r.to_dict() for r in self.recommendations],
            "confidence": self.confidence,
            "risk_level": self.risk_level.value,
            "is_fallback": self.is_fallback,
            "validation_score": self.validation_score,
            "error": self.error,
            "agent": self.agent,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SpecializedAnalysis":
        return cls(
            dimension=data["dimension"],
            chunk_id=data["chunk_id"],
            model=data.get("model", ""),
            findings=[Finding.from_dict(f) for f in data.get("findings", [])],
            recommendations=[Recommendation.from_dict(r) for r in data.get("recommendations", [])],
            confidence=data.get("confidence", 0.0),
            is_fallback=data.get("is_fallback", False),
            validation_score=data.get("validation_score", 1.0),
            error=data.get("error"),
            agent=data.get("agent", ""),
        )


@dataclass
class ValidationResult:
    """에이전트 결과 자체 검증 (권고용, 파이프라인을 막지 않음)"""
    is_valid: bool
    score: float
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass
class Conflict:
    """같은 위치에 대한 양립 불가능한 판정"""
    kind: str  # "severity" or "priority"
    chunk_id: str
    subject: str  # finding type 또는 recommendation category
    location: str
    sources: tuple[str, str]
    detail: str = ""

    @property
    def key(self) -> str:
        """해결 여부 추적용 안정 키"""
        return f"{self.kind}:{self.chunk_id}:{self.subject}:{self.location}"

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "chunk_id": self.chunk_id,
            "subject": self.subject,
            "location": self.location,
            "sources": list(self.sources),
            "detail": self.detail,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Conflict":
        sources = data.get("sources", ["", ""])
        return cls(
            kind=data["kind"],
            chunk_id=data.get("chunk_id", ""),
            subject=data.get("subject", ""),
            location=data.get("location", ""),
            sources=(sources[0], sources[1]),
            detail=data.get("detail", ""),
        )


@dataclass
class AgreementRecord:
    """두 SpecializedAnalysis 간 비교 결과"""
    chunk_id: str
    left: str
    right: str
    agreement_score: float
    matched: int = 0
    conflicts: list[Conflict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "chunk_id": self.chunk_id,
            "left": self.left,
            "right": self.right,
            "agreement_score": self.agreement_score,
            "matched": self.matched,
            "conflicts": [c.to_dict() for c in self.conflicts],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AgreementRecord":
        return cls(
            chunk_id=data["chunk_id"],
            left=data["left"],
            right=data["right"],
            agreement_score=data.get("agreement_score", 0.0),
            matched=data.get("matched", 0),
            conflicts=[Conflict.from_dict(c) for c in data.get("conflicts", [])],
        )


@dataclass
class CrossValidationResult:
    """전체 교차 검증 결과"""
    records: list[AgreementRecord] = field(default_factory=list)
    overall_agreement: float = 1.0
    unit_agreement: dict[str, float] = field(default_factory=dict)
    high_confidence: list[Finding] = field(default_factory=list)
    uncertain: list[Finding] = field(default_factory=list)

    @property
    def conflicts(self) -> list[Conflict]:
        return [c for r in self.records for c in r.conflicts]

    def to_dict(self) -> dict:
        return {
            "records": [r.to_dict() for r in self.records],
            "overall_agreement": self.overall_agreement,
            "unit_agreement": dict(self.unit_agreement),
            "high_confidence": [f.to_dict() for f in self.high_confidence],
            "uncertain": [f.to_dict() for f in self.uncertain],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CrossValidationResult":
        return cls(
            records=[AgreementRecord.from_dict(r) for r in data.get("records", [])],
            overall_agreement=data.get("overall_agreement", 1.0),
            unit_agreement=dict(data.get("unit_agreement", {})),
            high_confidence=[Finding.from_dict(f) for f in data.get("high_confidence", [])],
            uncertain=[Finding.from_dict(f) for f in data.get("uncertain", [])],
        )


@dataclass
class ConsensusResult:
    """조정된 단일 결과"""
    findings: list[Finding] = field(default_factory=list)
    recommendations: list[Recommendation] = field(default_factory=list)
    overall_confidence: float = 0.0
    model_agreement: float = 0.0
    strategy: ConsensusStrategy = ConsensusStrategy.ENSEMBLE_FUSION

    def to_dict(self) -> dict:
        return {
            "findings": [f.to_dict() for f in self.findings],
            "recommendations": [r.to_dict() for r in self.recommendations],
            "overall_confidence": self.overall_confidence,
            "model_agreement": self.model_agreement,
            "strategy": self.strategy.value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ConsensusResult":
        return cls(
            findings=[Finding.from_dict(f) for f in data.get("findings", [])],
            recommendations=[Recommendation.from_dict(r) for r in data.get("recommendations", [])],
            overall_confidence=data.get("overall_confidence", 0.0),
            model_agreement=data.get("model_agreement", 0.0),
            strategy=ConsensusStrategy(data.get("strategy", ConsensusStrategy.ENSEMBLE_FUSION.value)),
        )


@dataclass
class ImprovementArea:
    """자기 비평이 찾은 개선 영역"""
    area: str  # "quality" | "completeness" | "consistency"
    description: str
    priority: str  # "high" | "medium" | "low"
    dimensions: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)
    finding_ids: list[str] = field(default_factory=list)
    conflict_keys: list[str] = field(default_factory=list)
    suggested_action: str = ""

    def to_dict(self) -> dict:
        return {
            "area": self.area,
            "description": self.description,
            "priority": self.priority,
            "dimensions": list(self.dimensions),
            "files": list(self.files),
            "finding_ids": list(self.finding_ids),
            "conflict_keys": list(self.conflict_keys),
            "suggested_action": self.suggested_action,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ImprovementArea":
        return cls(
            area=data["area"],
            description=data.get("description", ""),
            priority=data.get("priority", "low"),
            dimensions=list(data.get("dimensions", [])),
            files=list(data.get("files", [])),
            finding_ids=list(data.get("finding_ids", [])),
            conflict_keys=list(data.get("conflict_keys", [])),
            suggested_action=data.get("suggested_action", ""),
        )


@dataclass
class SelfCritique:
    """현재 합의 결과에 대한 자기 비평"""
    quality: float
    completeness: float
    missing_dimensions: list[str] = field(default_factory=list)
    unresolved_conflicts: int = 0
    improvement_areas: list[ImprovementArea] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "quality": self.quality,
            "completeness": self.completeness,
            "missing_dimensions": list(self.missing_dimensions),
            "unresolved_conflicts": self.unresolved_conflicts,
            "improvement_areas": [a.to_dict() for a in self.improvement_areas],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SelfCritique":
        return cls(
            quality=data.get("quality", 0.0),
            completeness=data.get("completeness", 0.0),
            missing_dimensions=list(data.get("missing_dimensions", [])),
            unresolved_conflicts=data.get("unresolved_conflicts", 0),
            improvement_areas=[ImprovementArea.from_dict(a) for a in data.get("improvement_areas", [])],
        )


@dataclass
class DeepDiveArea:
    """집중 재분석 대상"""
    area: str
    description: str
    dimension: str
    files: list[str] = field(default_factory=list)
    finding_ids: list[str] = field(default_factory=list)
    conflict_keys: list[str] = field(default_factory=list)
    expected_outcome: str = ""

    def to_dict(self) -> dict:
        return {
            "area": self.area,
            "description": self.description,
            "dimension": self.dimension,
            "files": list(self.files),
            "finding_ids": list(self.finding_ids),
            "conflict_keys": list(self.conflict_keys),
            "expected_outcome": self.expected_outcome,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DeepDiveArea":
        return cls(
            area=data["area"],
            description=data.get("description", ""),
            dimension=data["dimension"],
            files=list(data.get("files", [])),
            finding_ids=list(data.get("finding_ids", [])),
            conflict_keys=list(data.get("conflict_keys", [])),
            expected_outcome=data.get("expected_outcome", ""),
        )


@dataclass
class RefinementIteration:
    """정제 루프 한 회차 기록 (append-only)"""
    iteration: int
    critique: SelfCritique
    deep_dive_areas: list[DeepDiveArea] = field(default_factory=list)
    convergence_score: float = 0.0
    quality_delta: float = 0.0
    new_findings: int = 0

    def to_dict(self) -> dict:
        return {
            "iteration": self.iteration,
            "critique": self.critique.to_dict(),
            "deep_dive_areas": [a.to_dict() for a in self.deep_dive_areas],
            "convergence_score": self.convergence_score,
            "quality_delta": self.quality_delta,
            "new_findings": self.new_findings,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RefinementIteration":
        return cls(
            iteration=data["iteration"],
            critique=SelfCritique.from_dict(data.get("critique", {})),
            deep_dive_areas=[DeepDiveArea.from_dict(a) for a in data.get("deep_dive_areas", [])],
            convergence_score=data.get("convergence_score", 0.0),
            quality_delta=data.get("quality_delta", 0.0),
            new_findings=data.get("new_findings", 0),
        )
