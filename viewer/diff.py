"""
Diff Viewer for Code Review

리뷰 대상 diff를 Streamlit으로 렌더링하고, 합의 Finding이 걸린 라인을 표시.
"""

import html

import streamlit as st

from critic_core.analysis import Finding
from critic_core.context import DiffHunk, parse_unified_diff


def findings_by_line(findings: list[Finding]) -> dict[tuple[str, int], list[Finding]]:
    """(file, line) -> 해당 라인의 Finding (라인 없는 Finding은 제외)"""
    index: dict[tuple[str, int], list[Finding]] = {}
    for finding in findings:
        if finding.line is not None:
            index.setdefault((finding.file, finding.line), []).append(finding)
    return index


def group_by_file(hunks: list[DiffHunk]) -> dict[str, list[DiffHunk]]:
    files: dict[str, list[DiffHunk]] = {}
    for hunk in hunks:
        files.setdefault(hunk.file_path, []).append(hunk)
    return files


class DiffRenderer:
    """Streamlit용 Diff 렌더러"""

    def __init__(self):
        self._inject_styles()

    def _inject_styles(self):
        """CSS 스타일 주입"""
        st.markdown("""
        <style>
            .diff-container {
                font-family: 'SF Mono', 'Monaco', 'Menlo', monospace;
                font-size: 13px;
                border: 1px solid #d0d7de;
                border-radius: 6px;
            }
            .diff-line { display: flex; }
            .diff-line-num {
                width: 50px;
                padding: 0 8px;
                text-align: right;
                color: #57606a;
                background-color: #f6f8fa;
                flex-shrink: 0;
            }
            .diff-line-content { flex: 1; padding: 0 8px; white-space: pre-wrap; }
            .diff-add { background-color: #e6ffec; }
            .diff-remove { background-color: #ffebe9; }
            .diff-finding {
                background-color: #fff8c5;
                border-left: 3px solid #bf8700;
                padding: 2px 8px;
                font-family: sans-serif;
                font-size: 12px;
            }
        </style>
        """, unsafe_allow_html=True)

    def render_diff(self, diff_text: str, findings: list[Finding] | None = None) -> None:
        """
        diff 텍스트를 Streamlit으로 렌더링.

        Args:
            diff_text: unified diff 형식 텍스트
            findings: 라인에 표시할 Finding
        """
        hunks = parse_unified_diff(diff_text)
        if not hunks:
            st.info("변경사항이 없습니다.")
            return

        marks = findings_by_line(findings or [])
        for file_path, file_hunks in group_by_file(hunks).items():
            self._render_file(file_path, file_hunks, marks)

    def _render_file(
        self,
        file_path: str,
        hunks: list[DiffHunk],
        marks: dict[tuple[str, int], list[Finding]],
    ) -> None:
        adds = sum(1 for h in hunks for l in h.lines if l.type == "add")
        removes = sum(1 for h in hunks for l in h.lines if l.type == "remove")

        with st.expander(f"📄 {file_path}  +{adds} -{removes}", expanded=True):
            html_lines = ['<div class="diff-container">']
            for hunk in hunks:
                for line in hunk.lines:
                    old_num = str(line.old_line) if line.old_line else ""
                    new_num = str(line.new_line) if line.new_line else ""
                    html_lines.append(
                        f'<div class="diff-line diff-{line.type}">'
                        f'<div class="diff-line-num">{old_num}</div>'
                        f'<div class="diff-line-num">{new_num}</div>'
                        f'<div class="diff-line-content">{html.escape(line.content)}</div>'
                        f'</div>'
                    )
                    for finding in marks.get((file_path, line.new_line), []):
                        html_lines.append(
                            f'<div class="diff-finding">[{finding.severity.value}] {finding.type}: '
                            f'{html.escape(finding.message)}</div>'
                        )
            html_lines.append('</div>')
            st.markdown("\n".join(html_lines), unsafe_allow_html=True)
