"""
Change Context

리뷰 대상 변경사항(unified diff) 수집과 분석 단위(Chunk) 분할.

Usage:
    provider = DiffContextProvider(max_chunk_lines=200)
    change = provider.fetch("changes.diff")
    chunks = provider.chunk(change)
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal
import logging
import re

logger = logging.getLogger(__name__)


@dataclass
class DiffLine:
    """개별 diff 라인"""
    type: Literal["add", "remove", "context"]
    content: str
    old_line: int | None = None
    new_line: int | None = None

    @property
    def text(self) -> str:
        """prefix를 붙인 원래 diff 라인"""
        prefix = {"add": "+", "remove": "-", "context": " "}[self.type]
        return prefix + self.content


@dataclass
class DiffHunk:
    """diff hunk (변경 블록)"""
    file_path: str
    old_start: int
    new_start: int
    lines: list[DiffLine] = field(default_factory=list)


def parse_unified_diff(diff_text: str) -> list[DiffHunk]:
    """
    unified diff 텍스트를 파싱하여 DiffHunk 리스트 반환.

    Args:
        diff_text: git diff 출력 등의 unified diff 형식 텍스트

    Returns:
        파싱된 DiffHunk 리스트
    """
    if not diff_text or not diff_text.strip():
        return []

    hunks: list[DiffHunk] = []
    current_file: str | None = None
    current_hunk: DiffHunk | None = None
    old_line = 0
    new_line = 0
    # hunk 헤더의 old/new 라인 수 중 아직 읽지 않은 양
    old_left = 0
    new_left = 0

    file_pattern = re.compile(r'^diff --git a/(.*) b/(.*)$')
    hunk_pattern = re.compile(r'^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@')

    for line in diff_text.split('\n'):
        # hunk 본문 안에서는 '--- '/'+++ '로 시작해도 변경 라인
        if current_hunk is not None and (old_left > 0 or new_left > 0):
            if line.startswith('+'):
                current_hunk.lines.append(DiffLine(type="add", content=line[1:], new_line=new_line))
                new_line += 1
                new_left -= 1
                continue
            if line.startswith('-'):
                current_hunk.lines.append(DiffLine(type="remove", content=line[1:], old_line=old_line))
                old_line += 1
                old_left -= 1
                continue
            if line.startswith(' ') or line == '':
                current_hunk.lines.append(DiffLine(
                    type="context",
                    content=line[1:],
                    old_line=old_line,
                    new_line=new_line
                ))
                old_line += 1
                new_line += 1
                old_left -= 1
                new_left -= 1
                continue
            if line.startswith('\\'):
                # "\ No newline at end of file"
                continue

        file_match = file_pattern.match(line)
        if file_match:
            current_file = file_match.group(2)  # b/ 경로 사용
            current_hunk = None
            continue

        # diff --git 헤더 없는 diff (diff -u 출력)
        if line.startswith('--- '):
            continue
        if line.startswith('+++ '):
            path = line[4:].split('\t')[0]
            if path.startswith('b/'):
                path = path[2:]
            if path != '/dev/null':
                current_file = path
            current_hunk = None
            continue

        hunk_match = hunk_pattern.match(line)
        if hunk_match:
            old_start = int(hunk_match.group(1))
            new_start = int(hunk_match.group(3))

            current_hunk = DiffHunk(
                file_path=current_file or "unknown",
                old_start=old_start,
                new_start=new_start,
                lines=[]
            )
            hunks.append(current_hunk)
            old_line = old_start
            new_line = new_start
            old_left = int(hunk_match.group(2) or 1)
            new_left = int(hunk_match.group(4) or 1)

    return hunks


@dataclass
class Chunk:
    """
    분석 단위

    completed는 이 chunk에 대해 결과(정상 또는 fallback)가 저장된 에이전트 이름 집합.
    """
    id: str
    file_path: str
    start_line: int
    end_line: int
    content: str
    completed: set[str] = field(default_factory=set)

    @property
    def size(self) -> int:
        """라인 수"""
        return len(self.content.splitlines())

    def contains(self, line: int | None) -> bool:
        return line is not None and self.start_line <= line <= self.end_line

    def to_prompt_context(self) -> str:
        """프롬프트에 넣을 context 문자열"""
        return (
            f"## File: {self.file_path} (lines {self.start_line}-{self.end_line})\n"
            f"```diff\n{self.content}\n```"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "file_path": self.file_path,
            "start_line": self.start_line,
            "end_line": self.end_line,
            "content": self.content,
            "completed": sorted(self.completed),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Chunk":
        return cls(
            id=data["id"],
            file_path=data["file_path"],
            start_line=data.get("start_line", 0),
            end_line=data.get("end_line", 0),
            content=data.get("content", ""),
            completed=set(data.get("completed", [])),
        )


@dataclass
class ChangeContext:
    """수집된 변경사항 메타데이터"""
    input_ref: str
    title: str
    diff_text: str
    files: list[str] = field(default_factory=list)
    additions: int = 0
    deletions: int = 0

    def to_dict(self) -> dict:
        return {
            "input_ref": self.input_ref,
            "title": self.title,
            "diff_text": self.diff_text,
            "files": list(self.files),
            "additions": self.additions,
            "deletions": self.deletions,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ChangeContext":
        return cls(
            input_ref=data["input_ref"],
            title=data.get("title", ""),
            diff_text=data.get("diff_text", ""),
            files=list(data.get("files", [])),
            additions=data.get("additions", 0),
            deletions=data.get("deletions", 0),
        )


class ContextProvider(ABC):
    """변경사항 수집기 추상 클래스"""

    @abstractmethod
    def fetch(self, input_ref: str) -> ChangeContext:
        """input_ref가 가리키는 변경사항 수집"""
        pass

    @abstractmethod
    def chunk(self, change: ChangeContext) -> list[Chunk]:
        """변경사항을 분석 단위로 분할"""
        pass


class DiffContextProvider(ContextProvider):
    """
    unified diff 파일 기반 수집기

    hunk 단위로 chunk를 만들고, max_chunk_lines를 넘는 hunk는 잘라서 나눈다.
    """

    def __init__(self, max_chunk_lines: int = 200):
        if max_chunk_lines < 1:
            raise ValueError("max_chunk_lines must be positive")
        self.max_chunk_lines = max_chunk_lines

    def fetch(self, input_ref: str) -> ChangeContext:
        """
        diff 파일 읽기

        Raises:
            FileNotFoundError: 파일이 없을 때
        """
        path = Path(input_ref)
        if not path.exists():
            raise FileNotFoundError(f"Diff file not found: {input_ref}")

        diff_text = path.read_text()
        return self.from_text(diff_text, input_ref=str(input_ref), title=path.name)

    def from_text(self, diff_text: str, input_ref: str = "<text>", title: str = "") -> ChangeContext:
        """diff 텍스트로부터 ChangeContext 생성"""
        hunks = parse_unified_diff(diff_text)

        files: list[str] = []
        for hunk in hunks:
            if hunk.file_path not in files:
                files.append(hunk.file_path)

        return ChangeContext(
            input_ref=input_ref,
            title=title or input_ref,
            diff_text=diff_text,
            files=files,
            additions=sum(1 for h in hunks for l in h.lines if l.type == "add"),
            deletions=sum(1 for h in hunks for l in h.lines if l.type == "remove"),
        )

    def chunk(self, change: ChangeContext) -> list[Chunk]:
        chunks: list[Chunk] = []

        for hunk in parse_unified_diff(change.diff_text):
            if not hunk.lines:
                continue
            for start in range(0, len(hunk.lines), self.max_chunk_lines):
                piece = hunk.lines[start:start + self.max_chunk_lines]
                numbers = [l.new_line for l in piece if l.new_line is not None]
                # 삭제만 있는 조각은 hunk 시작 위치로 표시
                start_line = numbers[0] if numbers else hunk.new_start
                end_line = numbers[-1] if numbers else hunk.new_start

                chunks.append(Chunk(
                    id=f"chunk-{len(chunks) + 1:03d}",
                    file_path=hunk.file_path,
                    start_line=start_line,
                    end_line=end_line,
                    content="\n".join(l.text for l in piece),
                ))

        logger.debug("Split %s into %d chunks", change.input_ref, len(chunks))
        return chunks
