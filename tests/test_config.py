import tomllib
from pathlib import Path

import pytest

from ralph import __version__
from ralph.config import ConfigError, RalphConfig, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "ralph.toml"
    config = RalphConfig.default()
    config.agent.default = "droid"
    config.agent.max_retries = 2
    config.agent.timeout_seconds = 90.5
    config.agent.extra_args = ["--model", "fast"]
    config.workflow.commit = False
    config.workflow.commit_error_policy = "warn"
    config.paths.backlog = "backlog/prd.json"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.agent.default == "droid"
    assert loaded.agent.max_retries == 2
    assert loaded.agent.timeout_seconds == 90.5
    assert loaded.agent.extra_args == ["--model", "fast"]
    assert loaded.workflow.commit is False
    assert loaded.workflow.commit_error_policy == "warn"
    assert loaded.paths.backlog == "backlog/prd.json"
    assert loaded.paths.progress == ".ralph/progress.md"


def test_missing_config_file_uses_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded == RalphConfig.default()
    assert loaded.backlog_path(tmp_path) == tmp_path / ".agents" / "tasks" / "prd.json"
    assert loaded.progress_path(tmp_path) == tmp_path / ".ralph" / "progress.md"


def test_toml_dump_contains_sections_and_agent_fields() -> None:
    rendered = dumps_toml(RalphConfig.default())

    assert "[paths]" in rendered
    assert "[agent]" in rendered
    assert "[workflow]" in rendered
    assert "timeout_seconds" in rendered
    assert "commit_error_policy" in rendered
    assert tomllib.loads(rendered)["agent"]["default"] == "codex"


def test_binary_for_uses_configured_paths() -> None:
    config = RalphConfig.default()
    config.agent.claude_binary = "/opt/bin/claude"

    assert config.binary_for("claude") == "/opt/bin/claude"
    assert config.binary_for("codex") == "codex"


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("[agent\ndefault = 'codex'\n", "not readable TOML"),
        ("[agent]\nmodel = 'fast'\n", "unknown setting"),
        ("agent = 'codex'\n", r"\[agent\] must be a table"),
        ("[agent]\ndefault = 'gemini'\n", "agent.default must be one of"),
        ("[workflow]\ncommit_error_policy = 'ignore'\n", "commit_error_policy"),
    ],
)
def test_load_config_rejects_bad_files(tmp_path: Path, content: str, message: str) -> None:
    config_path = tmp_path / "ralph.toml"
    config_path.write_text(content, encoding="utf-8")

    with pytest.raises(ConfigError, match=message):
        load_config(config_path)
