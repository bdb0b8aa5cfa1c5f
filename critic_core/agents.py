"""
Analysis Agents

차원(dimension)별 분석 에이전트.

에이전트 하나는 모델 엔드포인트 하나를 특정 관점(아키텍처, 보안, 성능, 테스트)으로
특화한 것이다. 엔드포인트 실패/타임아웃/파싱 실패는 예외 대신 fallback 분석으로
바뀌므로 fan-out 단계는 항상 모든 결과를 모을 수 있다.

Usage:
    agents = build_agents(config)
    analysis = agents[0].analyze(chunk)
"""

from abc import ABC, abstractmethod
import json
import logging
import re
from typing import Callable

from .analysis import (
    Finding,
    Priority,
    Provenance,
    Recommendation,
    Severity,
    SpecializedAnalysis,
    ValidationResult,
    clamp,
    new_id,
)
from .config import AgentSettings, PipelineConfig
from .context import Chunk
from .errors import AgentFailure
from .models import CompletionOptions, ModelClient, build_client

logger = logging.getLogger(__name__)

FALLBACK_TYPE = "analysis-failure"


class AnalysisAgent:
    """
    LLM 기반 분석 에이전트

    FOCUS 체크리스트만 바꿔서 차원별 에이전트를 만든다.
    알 수 없는 차원은 이 클래스를 그대로 사용한다.

    Usage:
        agent = SecurityAgent(ClaudeClient())
        analysis = agent.analyze(chunk, focus="SQL 쿼리 조립 부분 재확인")
    """

    DIMENSION = "general"
    FOCUS: list[str] = [
        "정확성 문제",
        "에러 처리 누락",
        "유지보수성",
    ]

    def __init__(
        self,
        client: ModelClient,
        dimension: str | None = None,
        options: CompletionOptions | None = None,
        fallback_confidence: float = 0.3,
    ):
        self.client = client
        self.dimension = dimension or self.DIMENSION
        self.options = options or CompletionOptions()
        self.fallback_confidence = clamp(fallback_confidence)

    @property
    def name(self) -> str:
        """분석 결과 키 (LLM 에이전트는 차원 이름과 같음)"""
        return self.dimension

    @property
    def model(self) -> str:
        return self.client.name

    def analyze(self, chunk: Chunk, focus: str | None = None) -> SpecializedAnalysis:
        """
        chunk 분석

        Args:
            chunk: 분석 단위
            focus: 정제 단계의 집중 분석 지시 (없으면 일반 분석)

        Returns:
            SpecializedAnalysis (실패 시 fallback 분석, 예외를 던지지 않음)
        """
        prompt = self.build_prompt(chunk, focus)

        try:
            response = self.client.complete(prompt, self.options)
            payload = self._parse(response.content)
            analysis = self._to_analysis(payload, chunk)
        except AgentFailure as e:
            logger.warning("%s: %s", chunk.id, e)
            return self.fallback(chunk, e.reason)
        except Exception as e:
            logger.warning("%s agent failed on %s: %s", self.dimension, chunk.id, e)
            return self.fallback(chunk, str(e))

        result = self.validate(analysis)
        analysis.validation_score = result.score
        if result.errors:
            logger.debug("%s validation errors on %s: %s", self.dimension, chunk.id, result.errors)
        return analysis

    def validate(self, analysis: SpecializedAnalysis) -> ValidationResult:
        """
        결과 자체 검증 (권고용)

        근거 없는 Finding, 구현 가이드 없는 Recommendation 등은 경고,
        위치 없는 Finding은 에러. 점수 = 1 - 0.3*에러 - 0.1*경고 (하한 0).
        """
        errors: list[str] = []
        warnings: list[str] = []

        if not analysis.findings:
            warnings.append("No findings generated - analysis may be incomplete")
        if not analysis.recommendations:
            warnings.append("No recommendations generated - analysis may lack actionable insights")
        if analysis.confidence < 0.5:
            warnings.append("Low confidence score - analysis may need refinement")

        for finding in analysis.findings:
            if not finding.evidence:
                warnings.append(f'Finding "{finding.message}" lacks supporting evidence')
            if not finding.file:
                errors.append(f'Finding "{finding.message}" missing file location')

        for rec in analysis.recommendations:
            if not rec.rationale:
                warnings.append(f'Recommendation "{rec.description}" lacks rationale')
            if not rec.implementation:
                warnings.append(f'Recommendation "{rec.description}" lacks implementation guidance')

        score = max(0.0, 1.0 - 0.3 * len(errors) - 0.1 * len(warnings))
        return ValidationResult(
            is_valid=not errors,
            score=round(score, 4),
            warnings=warnings,
            errors=errors,
        )

    def fallback(self, chunk: Chunk, reason: str) -> SpecializedAnalysis:
        """엔드포인트 실패를 나타내는 저신뢰 분석"""
        return fallback_analysis(self.name, self.dimension, self.model, chunk, reason, self.fallback_confidence)

    def build_prompt(self, chunk: Chunk, focus: str | None = None) -> str:
        """분석 프롬프트"""
        checklist = "\n".join(f"- {item}" for item in self.FOCUS)
        focus_section = f"\n## 집중 분석\n{focus}\n" if focus else ""

        return f"""{chunk.to_prompt_context()}

## 리뷰 요청

너는 {self.dimension} 관점의 코드 리뷰어야.
아래 체크리스트 기준으로 위 변경사항만 분석해줘.

{checklist}
{focus_section}
## 응답 형식

JSON 객체 하나만 출력해줘. 다른 텍스트는 쓰지 마.

{{
  "findings": [
    {{
      "type": "<kebab-case 이슈 종류, 예: sql-injection>",
      "severity": "low | medium | high | critical",
      "message": "<무엇이 문제인지>",
      "file": "{chunk.file_path}",
      "line": <새 파일 기준 라인 번호 또는 null>,
      "evidence": ["<근거가 되는 코드 조각>"],
      "confidence": <0.0 ~ 1.0>
    }}
  ],
  "recommendations": [
    {{
      "priority": "must-fix | should-fix | consider",
      "category": "<{self.dimension} 등 분류>",
      "description": "<무엇을 바꿀지>",
      "rationale": "<왜>",
      "implementation": "<어떻게, 코드 예시 포함>",
      "confidence": <0.0 ~ 1.0>
    }}
  ],
  "confidence": <분석 전체 신뢰도 0.0 ~ 1.0>
}}

이슈가 없으면 빈 배열을 반환해줘."""

    def _parse(self, raw: str) -> dict:
        """
        모델 응답에서 JSON 객체 추출

        Raises:
            AgentFailure: JSON 객체를 찾을 수 없을 때
        """
        cleaned = re.sub(r"^```(?:json)?\s*", "", raw.strip())
        cleaned = re.sub(r"\s*```$", "", cleaned.strip())
        try:
            payload = json.loads(cleaned)
        except json.JSONDecodeError:
            # 앞뒤에 설명 문장이 붙은 경우
            start, end = cleaned.find("{"), cleaned.rfind("}")
            if start == -1 or end <= start:
                raise AgentFailure(self.dimension, "response is not JSON")
            try:
                payload = json.loads(cleaned[start:end + 1])
            except json.JSONDecodeError as e:
                raise AgentFailure(self.dimension, f"unparseable JSON: {e}")

        if not isinstance(payload, dict):
            raise AgentFailure(self.dimension, "response JSON is not an object")
        return payload

    def _to_analysis(self, payload: dict, chunk: Chunk) -> SpecializedAnalysis:
        provenance = (Provenance(self.name, self.model),)

        findings = []
        for item in payload.get("findings") or []:
            if not isinstance(item, dict) or not item.get("message"):
                continue
            findings.append(Finding(
                id=new_id(f"{self.dimension}-f"),
                type=str(item.get("type") or self.dimension).strip().lower(),
                severity=Severity.parse(item.get("severity")),
                message=str(item["message"]),
                file=item.get("file") or chunk.file_path,
                line=_to_line(item.get("line")),
                evidence=tuple(str(e) for e in item.get("evidence") or []),
                confidence=item.get("confidence", 0.5),
                provenance=provenance,
            ))

        recommendations = []
        for item in payload.get("recommendations") or []:
            if not isinstance(item, dict) or not item.get("description"):
                continue
            recommendations.append(Recommendation(
                id=new_id(f"{self.dimension}-r"),
                priority=Priority.parse(item.get("priority")),
                category=str(item.get("category") or self.dimension),
                description=str(item["description"]),
                rationale=str(item.get("rationale") or ""),
                implementation=str(item.get("implementation") or ""),
                confidence=item.get("confidence", 0.5),
                provenance=provenance,
            ))

        confidence = payload.get("confidence")
        if confidence is None:
            scores = [f.confidence for f in findings]
            confidence = sum(scores) / len(scores) if scores else 0.5

        return SpecializedAnalysis(
            dimension=self.dimension,
            chunk_id=chunk.id,
            model=self.model,
            findings=findings,
            recommendations=recommendations,
            confidence=confidence,
            agent=self.name,
        )


def fallback_analysis(
    name: str,
    dimension: str,
    model: str,
    chunk: Chunk,
    reason: str,
    confidence: float = 0.3,
) -> SpecializedAnalysis:
    """
    fallback 분석 생성

    analysis-failure Finding 하나만 담고 is_fallback으로 표시된다.
    같은 실패에 대해 몇 번을 만들어도 id 외에는 동일하다.
    """
    finding = Finding(
        id=new_id(f"{dimension}-fallback"),
        type=FALLBACK_TYPE,
        severity=Severity.LOW,
        message=f"{dimension} analysis unavailable: {reason}",
        file=chunk.file_path,
        line=None,
        evidence=(reason,) if reason else (),
        confidence=min(clamp(confidence), 0.3),
        provenance=(Provenance(name, model),),
    )
    return SpecializedAnalysis(
        dimension=dimension,
        chunk_id=chunk.id,
        model=model,
        findings=[finding],
        recommendations=[],
        confidence=finding.confidence,
        is_fallback=True,
        validation_score=0.0,
        error=reason,
        agent=name,
    )


def _to_line(value) -> int | None:
    try:
        line = int(value)
    except (TypeError, ValueError):
        return None
    return line if line > 0 else None


class ArchitectureAgent(AnalysisAgent):
    """아키텍처 관점"""
    DIMENSION = "architecture"
    FOCUS = [
        "모듈 경계와 결합도 (coupling)",
        "디자인 패턴 오남용 (design-pattern)",
        "책임 분리 위반",
        "확장성을 해치는 구조",
    ]


class SecurityAgent(AnalysisAgent):
    """보안 관점"""
    DIMENSION = "security"
    FOCUS = [
        "입력 검증 누락, injection (sql-injection, XSS 등)",
        "인증/인가 우회 (authentication)",
        "민감 정보 노출 (하드코딩된 키, 로그)",
        "취약한 의존성 사용 (vulnerability)",
    ]


class PerformanceAgent(AnalysisAgent):
    """성능 관점"""
    DIMENSION = "performance"
    FOCUS = [
        "불필요한 반복, N+1 쿼리",
        "메모리 누수, 과도한 할당",
        "블로킹 I/O",
        "확장 시 병목 (scalability)",
    ]


class TestingAgent(AnalysisAgent):
    """테스트 관점"""
    DIMENSION = "testing"
    FOCUS = [
        "테스트 누락된 변경 (coverage)",
        "엣지 케이스 미검증",
        "불안정한(flaky) 테스트",
        "assert 없는 테스트",
    ]


AGENT_TYPES: dict[str, type[AnalysisAgent]] = {
    cls.DIMENSION: cls
    for cls in (ArchitectureAgent, SecurityAgent, PerformanceAgent, TestingAgent)
}


class FindingSource(ABC):
    """
    휴리스틱 Finding 출처 (정적 분석기, 린터 등)

    SourceAgent로 감싸면 fan-out에 추가 분석으로 참여한다.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @property
    @abstractmethod
    def dimension(self) -> str:
        pass

    @abstractmethod
    def scan(self, chunk: Chunk) -> list[Finding]:
        pass


class SourceAgent:
    """FindingSource를 분석 에이전트 인터페이스로 맞추는 어댑터"""

    model = "heuristic"

    def __init__(self, source: FindingSource, confidence: float = 0.7):
        self.source = source
        self.confidence = clamp(confidence)

    @property
    def name(self) -> str:
        return self.source.name

    @property
    def dimension(self) -> str:
        return self.source.dimension

    def analyze(self, chunk: Chunk, focus: str | None = None) -> SpecializedAnalysis:
        try:
            findings = self.source.scan(chunk)
        except Exception as e:
            logger.warning("Source %s failed on %s: %s", self.name, chunk.id, e)
            return fallback_analysis(self.name, self.dimension, self.model, chunk, str(e))

        # provenance 없는 Finding에는 출처를 채워 넣음
        stamped = []
        for finding in findings:
            if not finding.provenance:
                finding = Finding(
                    id=finding.id,
                    type=finding.type,
                    severity=finding.severity,
                    message=finding.message,
                    file=finding.file,
                    line=finding.line,
                    evidence=finding.evidence,
                    confidence=finding.confidence,
                    provenance=(Provenance(self.name, self.model),),
                )
            stamped.append(finding)

        return SpecializedAnalysis(
            dimension=self.dimension,
            chunk_id=chunk.id,
            model=self.model,
            findings=stamped,
            confidence=self.confidence,
            agent=self.name,
        )


def build_agents(
    config: PipelineConfig,
    client_factory: Callable[[str, AgentSettings], ModelClient] | None = None,
) -> list[AnalysisAgent]:
    """
    설정의 차원마다 에이전트 생성

    Args:
        config: 파이프라인 설정
        client_factory: (dimension, settings) -> ModelClient (테스트용 주입)
    """
    agents = []
    for dimension in config.dimensions:
        settings = config.agent_settings(dimension)
        if client_factory:
            client = client_factory(dimension, settings)
        else:
            client = build_client(
                settings,
                timeout=config.call_timeout,
                api_key=config.openai_api_key,
                base_url=config.openai_base_url,
            )

        agent_cls = AGENT_TYPES.get(dimension, AnalysisAgent)
        agents.append(agent_cls(
            client,
            dimension=dimension,
            options=CompletionOptions(max_tokens=settings.max_tokens, temperature=settings.temperature),
            fallback_confidence=config.fallback_confidence,
        ))
    return agents
