"""CLI 테스트"""

import json
from unittest.mock import patch

import pytest

import cli
from critic_core.agents import SecurityAgent
from critic_core.models import ModelClient, ModelResponse


REVIEW = json.dumps({
    "findings": [{
        "type": "hardcoded-secret",
        "severity": "medium",
        "message": "secret in source",
        "line": 2,
        "evidence": ["SECRET"],
        "confidence": 0.9,
    }],
    "recommendations": [],
    "confidence": 0.9,
})

DIFF = """--- a/auth.py
+++ b/auth.py
@@ -1,2 +1,3 @@
 import os
+SECRET = "hunter2"
 def login():
"""


class StaticClient(ModelClient):
    @property
    def name(self):
        return "static"

    def is_available(self):
        return True

    def complete(self, prompt, options=None):
        return ModelResponse(content=REVIEW, model=self.name)


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "pr.diff").write_text(DIFF)
    return tmp_path


@pytest.fixture
def fake_agents():
    with patch("critic_core.workflow.build_agents", return_value=[SecurityAgent(StaticClient())]) as mock:
        yield mock


class TestMain:
    def test_no_arguments_prints_help(self, workspace, capsys):
        assert cli.main([]) == 1
        assert "usage" in capsys.readouterr().out.lower()

    def test_missing_diff(self, workspace, capsys, fake_agents):
        assert cli.main(["--diff", "nope.diff"]) == 1
        assert "nope.diff" in capsys.readouterr().out

    def test_review_and_list(self, workspace, capsys, fake_agents):
        assert cli.main(["--diff", "pr.diff", "--task-id", "pr-1"]) == 0
        out = capsys.readouterr().out
        assert "Task pr-1: COMPLETED" in out
        assert "REQUEST_CHANGES" in out
        assert (workspace / ".critic" / "tasks" / "pr-1.json").exists()

        assert cli.main(["--list"]) == 0
        assert "pr-1" in capsys.readouterr().out

    def test_json_output(self, workspace, capsys, fake_agents):
        assert cli.main(["--diff", "pr.diff", "--task-id", "pr-2", "--json"]) == 0

        data = json.loads(capsys.readouterr().out)
        assert data["task"]["state"] == "completed"
        assert data["result"]["decision"] == "REQUEST_CHANGES"

    def test_duplicate_task_id(self, workspace, capsys, fake_agents):
        cli.main(["--diff", "pr.diff", "--task-id", "pr-3"])
        capsys.readouterr()

        assert cli.main(["--diff", "pr.diff", "--task-id", "pr-3"]) == 1
        assert "already exists" in capsys.readouterr().out

    def test_resume_unknown(self, workspace, capsys, fake_agents):
        assert cli.main(["--resume", "ghost"]) == 1
        assert "ghost" in capsys.readouterr().out

    def test_resume_completed(self, workspace, capsys, fake_agents):
        cli.main(["--diff", "pr.diff", "--task-id", "pr-4"])
        capsys.readouterr()

        assert cli.main(["--resume", "pr-4"]) == 0
        assert "COMPLETED" in capsys.readouterr().out

    def test_store_dir_override(self, workspace, fake_agents):
        assert cli.main(["--diff", "pr.diff", "--task-id", "pr-5", "--store-dir", "elsewhere"]) == 0
        assert (workspace / "elsewhere" / "tasks" / "pr-5.json").exists()

    def test_interrupted_review_is_cancelled(self, workspace, capsys):
        class InterruptingClient(StaticClient):
            def complete(self, prompt, options=None):
                raise KeyboardInterrupt

        agents = [SecurityAgent(InterruptingClient())]
        with patch("critic_core.workflow.build_agents", return_value=agents):
            assert cli.main(["--diff", "pr.diff", "--task-id", "pr-7"]) == 130

        out = capsys.readouterr().out
        assert "CANCELLED" in out
        assert "--resume pr-7" in out

        saved = json.loads((workspace / ".critic" / "tasks" / "pr-7.json").read_text())
        assert saved["task"]["state"] == "cancelled"

    def test_failed_task_exit_code(self, workspace, capsys, fake_agents):
        (workspace / "empty.diff").write_text("")

        assert cli.main(["--diff", "empty.diff", "--task-id", "pr-6"]) == 1
        out = capsys.readouterr().out
        assert "FAILED" in out
        assert "--resume pr-6" in out
