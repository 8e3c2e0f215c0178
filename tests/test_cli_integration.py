import json
import os
import shutil
import subprocess
from pathlib import Path
from typing import Any

import pytest
from click.testing import CliRunner

from ralph.cli import cli
from ralph.config import load_config
from ralph.state.backlog import load_backlog
from ralph.state.progress import read_records

BACKLOG = Path(".agents/tasks/prd.json")
BASELINE = 'File "docs/US-001.txt" exists with the exact text "US-001 complete"'


def _run(cmd: list[str], cwd: Path) -> str:
    proc = subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True)
    return proc.stdout.strip()


def _init_git_repo(repo_path: Path) -> None:
    _run(["git", "init"], cwd=repo_path)
    _run(["git", "config", "user.email", "test@example.com"], cwd=repo_path)
    _run(["git", "config", "user.name", "Test User"], cwd=repo_path)
    (repo_path / "seed.txt").write_text("seed\n", encoding="utf-8")
    _run(["git", "add", "seed.txt"], cwd=repo_path)
    _run(["git", "commit", "-m", "seed"], cwd=repo_path)


def _write_backlog(repo: Path, stories: list[dict[str, Any]]) -> Path:
    path = repo / BACKLOG
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {"version": 1, "project": "smoke", "qualityGates": [], "stories": stories}
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    return path


def _smoke_story(criteria: list[str] | None = None) -> dict[str, Any]:
    return {
        "id": "US-001",
        "title": "Smoke Test Story",
        "description": "Create docs/US-001.txt.",
        "status": "open",
        "dependsOn": [],
        "acceptanceCriteria": criteria if criteria is not None else ["Example: smoke run"],
    }


@pytest.mark.parametrize("agent", ["codex", "claude", "droid"])
def test_build_dry_run_for_each_agent(tmp_path: Path, monkeypatch, agent: str) -> None:
    _write_backlog(tmp_path, [_smoke_story()])
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("RALPH_DRY_RUN", "1")

    result = CliRunner().invoke(cli, ["build", "1", "--no-commit", f"--agent={agent}"])

    assert result.exit_code == 0, result.output
    assert "[1] building US-001" in result.output
    assert "Run exhausted" in result.output
    assert load_backlog(tmp_path / BACKLOG).get("US-001").status.value == "done"
    record = read_records(tmp_path / ".ralph" / "progress.md")[0]
    assert record["agent"] == agent
    assert record["dry_run"] == "yes"


def test_build_deadlock_exits_non_zero(tmp_path: Path, monkeypatch) -> None:
    _write_backlog(tmp_path, [_smoke_story([BASELINE])])
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("RALPH_DRY_RUN", raising=False)

    result = CliRunner().invoke(cli, ["build", "3", "--no-commit", "--dry-run"])

    assert result.exit_code == 1
    assert "US-001: failed" in result.output
    assert "Run deadlocked" in result.output
    assert "Failed: US-001" in result.output


def test_build_reports_schema_errors(tmp_path: Path, monkeypatch) -> None:
    path = tmp_path / BACKLOG
    path.parent.mkdir(parents=True)
    path.write_text("{not json", encoding="utf-8")
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(cli, ["build", "1", "--no-commit", "--dry-run"])

    assert result.exit_code == 1
    assert "backlog:" in result.output
    assert "not valid JSON" in result.output


def test_build_rejects_zero_iterations(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(cli, ["build", "0"])

    assert result.exit_code == 2


def test_build_aborts_when_agent_binary_is_missing(tmp_path: Path, monkeypatch) -> None:
    _write_backlog(tmp_path, [_smoke_story()])
    (tmp_path / "ralph.toml").write_text(
        '[agent]\ncodex_binary = "definitely-not-a-ralph-agent"\n', encoding="utf-8"
    )
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("RALPH_DRY_RUN", raising=False)

    result = CliRunner().invoke(cli, ["build", "1", "--no-commit", "--agent=codex"])

    assert result.exit_code == 2
    assert "Run aborted" in result.output
    assert load_backlog(tmp_path / BACKLOG).get("US-001").status.value == "open"


def test_status_lists_stories_and_next(tmp_path: Path, monkeypatch) -> None:
    story = _smoke_story()
    blocked = {**_smoke_story(), "id": "US-002", "title": "Follow-up", "dependsOn": ["US-001"]}
    _write_backlog(tmp_path, [story, blocked])
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()

    text_result = runner.invoke(cli, ["status"])
    json_result = runner.invoke(cli, ["status", "--json"])

    assert text_result.exit_code == 0
    assert "Project: smoke" in text_result.output
    assert "[waiting on US-001]" in text_result.output
    assert "Next: US-001" in text_result.output

    assert json_result.exit_code == 0
    payload = json.loads(json_result.output)
    assert payload["next"] == "US-001"
    assert payload["counts"]["open"] == 2
    assert payload["iterations_logged"] == 0


def test_init_writes_config_and_empty_backlog(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()

    result = runner.invoke(cli, ["init", "--agent", "droid", "--project", "demo"])

    assert result.exit_code == 0
    assert load_config(tmp_path / "ralph.toml").agent.default == "droid"
    document = load_backlog(tmp_path / BACKLOG)
    assert document.project == "demo"
    assert document.stories == []
    assert (tmp_path / ".ralph").is_dir()

    _write_backlog(tmp_path, [_smoke_story()])
    again = runner.invoke(cli, ["init"])
    assert again.exit_code == 0
    assert load_backlog(tmp_path / BACKLOG).get("US-001") is not None
    assert load_config(tmp_path / "ralph.toml").agent.default == "droid"


@pytest.mark.parametrize("agent", ["codex", "claude", "droid"])
def test_real_agent_completes_smoke_story(tmp_path: Path, monkeypatch, agent: str) -> None:
    if os.environ.get("RALPH_INTEGRATION") != "1":
        pytest.skip("Set RALPH_INTEGRATION=1 to run real agents.")
    if shutil.which(agent) is None:
        pytest.skip(f"{agent} is not on PATH.")

    _init_git_repo(tmp_path)
    _write_backlog(tmp_path, [_smoke_story([BASELINE])])
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("RALPH_DRY_RUN", raising=False)

    result = CliRunner().invoke(cli, ["build", "1", f"--agent={agent}"])

    assert result.exit_code == 0, result.output
    assert (tmp_path / "docs" / "US-001.txt").read_text(encoding="utf-8").strip() == (
        "US-001 complete"
    )
    assert load_backlog(tmp_path / BACKLOG).get("US-001").status.value == "done"
    assert _run(["git", "log", "-1", "--format=%s"], cwd=tmp_path) == (
        "feat: US-001 - Smoke Test Story"
    )


def test_broken_config_is_reported_without_traceback(tmp_path: Path, monkeypatch) -> None:
    _write_backlog(tmp_path, [_smoke_story()])
    (tmp_path / "ralph.toml").write_text("[agent\n", encoding="utf-8")
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()

    for args in (["build", "1", "--no-commit", "--dry-run"], ["status"], ["init"]):
        result = runner.invoke(cli, args)
        assert result.exit_code == 1
        assert "config:" in result.output


def test_undecodable_backlog_is_reported_without_traceback(tmp_path: Path, monkeypatch) -> None:
    path = tmp_path / BACKLOG
    path.parent.mkdir(parents=True)
    path.write_bytes(b'{"stories": [{"id": "\xff\xfe", "title": "x"}]}')
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(cli, ["status"])

    assert result.exit_code == 1
    assert "backlog:" in result.output
    assert "cannot be read" in result.output
