from __future__ import annotations

import logging
import re
import shlex
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`*?~]|[$]\(|[$]\{?\w)")


@dataclass(frozen=True, slots=True)
class GateResult:
    command: str
    exit_code: int
    stdout_tail: str = ""
    stderr_tail: str = ""
    used_shell: bool = False
    timed_out: bool = False

    @property
    def passed(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    def to_dict(self) -> dict[str, Any]:
        return {
            "command": self.command,
            "exit_code": self.exit_code,
            "passed": self.passed,
            "timed_out": self.timed_out,
            "stdout_tail": self.stdout_tail,
            "stderr_tail": self.stderr_tail,
        }


@dataclass(slots=True)
class GateReport:
    results: list[GateResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(result.passed for result in self.results)

    @property
    def failed_gate(self) -> GateResult | None:
        for result in self.results:
            if not result.passed:
                return result
        return None


def run_command(command: str, working_directory: Path, timeout_seconds: float) -> GateResult:
    command_text = command.strip()
    if not command_text:
        return GateResult(command=command, exit_code=1, stderr_tail="Command is empty.")

    used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
    command_payload: str | list[str] = command_text
    if not used_shell:
        try:
            command_payload = shlex.split(command_text)
        except ValueError:
            used_shell = True
            command_payload = command_text

    try:
        proc = subprocess.run(
            command_payload,
            cwd=working_directory,
            shell=used_shell,
            text=True,
            capture_output=True,
            timeout=timeout_seconds,
        )
    except subprocess.TimeoutExpired as exc:
        stdout = exc.stdout.decode("utf-8", "replace") if isinstance(exc.stdout, bytes) else ""
        return GateResult(
            command=command,
            exit_code=124,
            stdout_tail=stdout.strip()[-1000:],
            stderr_tail=f"Timed out after {timeout_seconds:.1f}s",
            used_shell=used_shell,
            timed_out=True,
        )
    except FileNotFoundError as exc:
        return GateResult(
            command=command,
            exit_code=127,
            stderr_tail=f"Command not found: {exc.filename or command_text}",
            used_shell=used_shell,
        )
    return GateResult(
        command=command,
        exit_code=proc.returncode,
        stdout_tail=proc.stdout.strip()[-1000:],
        stderr_tail=proc.stderr.strip()[-1000:],
        used_shell=used_shell,
    )


def run_gates(
    commands: list[str],
    working_directory: Path,
    timeout_seconds: float = 600.0,
) -> GateReport:
    """Run quality gates in order, stopping at the first failure."""
    report = GateReport()
    for command in commands:
        result = run_command(command, working_directory, timeout_seconds)
        report.results.append(result)
        if not result.passed:
            logger.warning("Quality gate failed (exit %s): %s", result.exit_code, command)
            break
        logger.info("Quality gate passed: %s", command)
    return report
