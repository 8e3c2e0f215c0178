from pathlib import Path

from ralph.state.progress import ProgressLogger, ProgressRecord, read_records


def _record(iteration: int, story_id: str, result: str = "pass", **fields) -> ProgressRecord:
    return ProgressRecord(
        iteration=iteration,
        story_id=story_id,
        title=f"Story {story_id}",
        agent="codex",
        result=result,  # type: ignore[arg-type]
        timestamp="2026-01-01T00:00:00+00:00",
        **fields,
    )


def test_append_writes_header_once_and_keeps_earlier_blocks(tmp_path: Path) -> None:
    path = tmp_path / ".ralph" / "progress.md"
    logger = ProgressLogger(path)

    logger.append(_record(1, "US-001"))
    first = path.read_text(encoding="utf-8")
    logger.append(_record(2, "US-002", result="fail", note="agent failed: exit 3"))
    second = path.read_text(encoding="utf-8")

    assert second.startswith(first)
    assert second.count("# Ralph Progress Log") == 1
    assert "## Iteration 2 - US-002 - 2026-01-01T00:00:00+00:00" in second


def test_render_includes_checks_and_flattens_multiline_values() -> None:
    rendered = _record(
        3,
        "US-003",
        verification="1/2 checks passed",
        checks=((True, "docs/a.txt: exact text matches"), (False, "docs/b.txt: missing")),
        commit="disabled",
        dry_run=True,
        note="line one\nline two",
    ).render()

    assert "- dry_run: yes" in rendered
    assert "- commit: disabled" in rendered
    assert "- note: line one line two" in rendered
    assert "- check: PASS docs/a.txt: exact text matches" in rendered
    assert "- check: FAIL docs/b.txt: missing" in rendered


def test_read_records_parses_blocks(tmp_path: Path) -> None:
    path = tmp_path / "progress.md"
    logger = ProgressLogger(path)
    logger.append(
        _record(1, "US-001", checks=((True, "docs/US-001.txt: exact text matches"),))
    )
    logger.append(_record(2, "US-002", result="aborted"))

    records = read_records(path)

    assert [record["iteration"] for record in records] == [1, 2]
    assert records[0]["story"] == "US-001"
    assert records[0]["result"] == "pass"
    assert records[0]["checks"] == ["PASS docs/US-001.txt: exact text matches"]
    assert records[1]["result"] == "aborted"
    assert logger.records() == records


def test_missing_log_has_no_records_and_empty_tail(tmp_path: Path) -> None:
    logger = ProgressLogger(tmp_path / "absent.md")

    assert logger.records() == []
    assert logger.tail(10) == ""


def test_tail_returns_last_lines(tmp_path: Path) -> None:
    logger = ProgressLogger(tmp_path / "progress.md")
    logger.append(_record(1, "US-001"))

    tail = logger.tail(2)

    assert len(tail.splitlines()) == 2
    assert tail.splitlines()[-1] == "- dry_run: no"
    assert logger.tail(0) == ""
