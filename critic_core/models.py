"""
Model Clients

분석 에이전트가 사용하는 모델 엔드포인트 클라이언트.

모든 클라이언트는 complete(prompt, options) 하나만 노출한다.
실패/타임아웃 시 max_retries 만큼 재시도한 뒤 마지막 에러를 raise 한다.
fallback 처리는 에이전트의 몫이다.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
import logging
import os
import shutil
import subprocess
import tempfile

from .config import AgentSettings

logger = logging.getLogger(__name__)


@dataclass
class CompletionOptions:
    """샘플링 파라미터"""
    max_tokens: int = 4096
    temperature: float = 0.1


@dataclass
class ModelResponse:
    """모델 응답"""
    content: str
    model: str
    tokens_used: int | None = None
    raw_response: dict | None = None


class ModelClient(ABC):
    """모델 클라이언트 추상 클래스"""

    @abstractmethod
    def complete(self, prompt: str, options: CompletionOptions | None = None) -> ModelResponse:
        """프롬프트 완성"""
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """모델 사용 가능 여부"""
        pass

    @property
    @abstractmethod
    def name(self) -> str:
        """모델 이름"""
        pass


class ClaudeClient(ModelClient):
    """
    Claude CLI 클라이언트

    claude -p "프롬프트" --model sonnet 으로 독립 세션 호출.
    CLI가 샘플링 파라미터를 받지 않으므로 options는 무시된다.

    Usage:
        client = ClaudeClient(model="sonnet")
        if client.is_available():
            response = client.complete("리뷰해줘")
    """

    AVAILABLE_MODELS = ["sonnet", "opus", "haiku"]

    def __init__(self, model: str = "sonnet", timeout: int = 300, max_retries: int = 2):
        if model not in self.AVAILABLE_MODELS:
            raise ValueError(f"Unknown model: {model}. Available: {self.AVAILABLE_MODELS}")
        self.model = model
        self.timeout = timeout
        self.max_retries = max_retries

    @property
    def name(self) -> str:
        return f"claude-{self.model}"

    def is_available(self) -> bool:
        """Claude CLI 설치 확인"""
        return shutil.which("claude") is not None

    def complete(self, prompt: str, options: CompletionOptions | None = None) -> ModelResponse:
        """
        Claude CLI 호출

        Raises:
            ClaudeError: 재시도 후에도 실패 시
        """
        last_error = None
        for attempt in range(self.max_retries):
            try:
                result = subprocess.run(
                    ["claude", "-p", prompt, "--model", self.model, "--output-format", "text"],
                    capture_output=True,
                    timeout=self.timeout,
                    text=True
                )

                if result.returncode != 0:
                    last_error = ClaudeError(f"Claude failed: {result.stderr}")
                    logger.warning("%s attempt %d/%d failed: %s", self.name, attempt + 1, self.max_retries, last_error)
                    continue

                return ModelResponse(
                    content=result.stdout.strip(),
                    model=self.name,
                )

            except subprocess.TimeoutExpired:
                last_error = ClaudeError(f"Claude timed out after {self.timeout}s")
                logger.warning("%s attempt %d/%d timed out", self.name, attempt + 1, self.max_retries)
                continue

        raise last_error or ClaudeError("Unknown error")


class CodexClient(ModelClient):
    """
    OpenAI Codex CLI 클라이언트

    Usage:
        client = CodexClient()
        if client.is_available():
            response = client.complete("리뷰해줘")
    """

    def __init__(self, timeout: int = 300, max_retries: int = 2):
        self.timeout = timeout
        self.max_retries = max_retries

    @property
    def name(self) -> str:
        return "codex-gpt"

    def is_available(self) -> bool:
        """Codex CLI 설치 확인"""
        return shutil.which("codex") is not None

    def complete(self, prompt: str, options: CompletionOptions | None = None) -> ModelResponse:
        """
        Codex CLI 호출 (응답은 -o 출력 파일로 받음)

        Raises:
            CodexError: 재시도 후에도 실패 시
        """
        last_error = None
        for attempt in range(self.max_retries):
            with tempfile.NamedTemporaryFile(mode='w', suffix='.txt', delete=False) as f:
                output_file = f.name

            try:
                result = subprocess.run(
                    ["codex", "exec", prompt, "-o", output_file],
                    capture_output=True,
                    timeout=self.timeout,
                    text=True
                )

                if result.returncode != 0:
                    last_error = CodexError(f"Codex failed: {result.stderr}")
                    logger.warning("%s attempt %d/%d failed: %s", self.name, attempt + 1, self.max_retries, last_error)
                    continue

                with open(output_file, 'r') as f:
                    content = f.read().strip()

                return ModelResponse(
                    content=content,
                    model=self.name,
                )

            except subprocess.TimeoutExpired:
                last_error = CodexError(f"Codex timed out after {self.timeout}s")
                logger.warning("%s attempt %d/%d timed out", self.name, attempt + 1, self.max_retries)
                continue
            finally:
                if os.path.exists(output_file):
                    os.unlink(output_file)

        raise last_error or CodexError("Unknown error")


class OpenAIClient(ModelClient):
    """
    OpenAI 호환 HTTP 엔드포인트 클라이언트

    base_url을 지정하면 LM Studio, Ollama 등 로컬 OpenAI 호환 서버도 사용 가능.
    이 클라이언트만 max_tokens/temperature를 실제로 전달한다.

    Usage:
        client = OpenAIClient(model="gpt-4o", api_key="sk-...")
        response = client.complete("리뷰해줘", CompletionOptions(temperature=0.2))
    """

    def __init__(
        self,
        model: str = "gpt-4o",
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: int = 300,
        max_retries: int = 2,
    ):
        from openai import OpenAI

        self.model = model
        self.timeout = timeout
        self.max_retries = max_retries
        # 로컬 서버는 키가 필요 없지만 SDK는 빈 값을 거부함
        self.client = OpenAI(
            api_key=api_key or "not-needed",
            base_url=base_url,
            timeout=timeout,
            max_retries=0,
        )

    @property
    def name(self) -> str:
        return f"openai-{self.model}"

    def is_available(self) -> bool:
        return True

    def complete(self, prompt: str, options: CompletionOptions | None = None) -> ModelResponse:
        """
        Chat Completions 호출

        Raises:
            OpenAIError: 재시도 후에도 실패 시
        """
        options = options or CompletionOptions()
        last_error = None
        for attempt in range(self.max_retries):
            try:
                response = self.client.chat.completions.create(
                    model=self.model,
                    messages=[{"role": "user", "content": prompt}],
                    temperature=options.temperature,
                    max_tokens=options.max_tokens,
                )
            except Exception as e:
                last_error = OpenAIError(f"OpenAI request failed: {e}")
                logger.warning("%s attempt %d/%d failed: %s", self.name, attempt + 1, self.max_retries, e)
                continue

            content = response.choices[0].message.content or ""
            usage = getattr(response, "usage", None)
            return ModelResponse(
                content=content.strip(),
                model=self.name,
                tokens_used=getattr(usage, "total_tokens", None),
            )

        raise last_error or OpenAIError("Unknown error")


def build_client(
    settings: AgentSettings,
    timeout: int = 300,
    api_key: str | None = None,
    base_url: str | None = None,
) -> ModelClient:
    """
    설정으로부터 모델 클라이언트 생성

    Raises:
        ValueError: 알 수 없는 provider
    """
    if settings.provider == "claude":
        return ClaudeClient(model=settings.model, timeout=timeout, max_retries=settings.max_retries)
    if settings.provider == "codex":
        return CodexClient(timeout=timeout, max_retries=settings.max_retries)
    if settings.provider == "openai":
        return OpenAIClient(
            model=settings.model,
            api_key=api_key,
            base_url=settings.base_url or base_url,
            timeout=timeout,
            max_retries=settings.max_retries,
        )
    raise ValueError(f"Unknown model provider: {settings.provider!r}. Choose 'claude', 'codex' or 'openai'.")


class ModelError(Exception):
    """모델 엔드포인트 에러 베이스"""
    pass


class ClaudeError(ModelError):
    """Claude CLI 에러"""
    pass


class CodexError(ModelError):
    """Codex CLI 에러"""
    pass


class OpenAIError(ModelError):
    """OpenAI 호환 엔드포인트 에러"""
    pass
