"""
Critic Consensus Viewer

Streamlit 기반 대시보드:
- Tasks: 저장된 리뷰 Task 목록과 합의/정제 결과
- Diff: 선택한 Task의 diff와 Finding 위치

Usage:
    streamlit run viewer/app.py -- --config .critic.yml

    # 또는 환경변수로
    CRITIC_STORE_DIR=/path/to/.critic streamlit run viewer/app.py
"""

import os
import sys

import streamlit as st

from critic_core.checkpoints import build_store
from critic_core.config import load_config
from critic_core.errors import CriticError
from viewer.diff import DiffRenderer
from viewer.tasks import TaskViewer

st.set_page_config(
    page_title="Critic Consensus",
    page_icon="⚖️",
    layout="wide",
    initial_sidebar_state="collapsed",
)


def get_config_path() -> str:
    """커맨드라인 --config 인자 (없으면 .critic.yml)"""
    if "--config" in sys.argv:
        idx = sys.argv.index("--config")
        if idx + 1 < len(sys.argv):
            return sys.argv[idx + 1]
    return ".critic.yml"


def get_store():
    config = load_config(get_config_path(), {
        "store_dir": os.environ.get("CRITIC_STORE_DIR"),
    })
    st.caption(f"📁 {config.store}: {config.store_dir}")
    return build_store(config.store, config.store_dir)


def render_diff_tab(store) -> None:
    """선택한 Task의 diff 렌더링"""
    tasks = store.list_tasks()
    if not tasks:
        st.info("No tasks found.")
        return

    task_id = st.selectbox("Task", options=[t.id for t in tasks], key="diff_task")
    try:
        checkpoint = store.load(task_id)
    except CriticError as e:
        st.error(f"Failed to load task: {e}")
        return

    if checkpoint.change is None:
        st.info("Context not fetched yet.")
        return

    findings = checkpoint.consensus.findings if checkpoint.consensus else []
    DiffRenderer().render_diff(checkpoint.change.diff_text, findings)


def main():
    st.title("⚖️ Critic Consensus")

    store = get_store()

    tab_tasks, tab_diff = st.tabs(["Tasks", "Diff"])

    with tab_tasks:
        TaskViewer(store).render()

    with tab_diff:
        render_diff_tab(store)

    if st.button("🔄 새로고침"):
        st.rerun()


if __name__ == "__main__":
    main()
