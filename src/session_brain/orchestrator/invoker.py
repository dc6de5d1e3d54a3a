"""Run the external analysis agent for one job and parse its result."""

from __future__ import annotations

import hashlib
import json
import logging
import shlex
import subprocess
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any

from session_brain.config import AgentSettings
from session_brain.orchestrator.models import AnalysisJob, context_to_dict
from session_brain.orchestrator.output_parser import parse_agent_output

logger = logging.getLogger(__name__)

REQUIRED_SKILLS: tuple[str, ...] = ()
OPTIONAL_SKILLS: tuple[str, ...] = ("codemap",)
CONDITIONAL_SKILLS: tuple[str, ...] = ("rlm",)

_PROMPT_CONTEXT_KEYS: tuple[str, ...] = ("existingNodeId", "reason", "boundaryType")
_STDERR_PREVIEW_CHARS = 500
_POLL_SECONDS = 0.1


@dataclass(slots=True)
class AgentResult:
    """Typed outcome of one agent invocation."""

    success: bool
    raw_output: str
    node_data: dict[str, Any] | None = None
    error: str | None = None
    exit_code: int | None = None
    duration_ms: int = 0
    timed_out: bool = False


@dataclass(slots=True)
class SkillInfo:
    name: str
    available: bool
    path: Path


@dataclass(slots=True)
class _ProcessOutcome:
    stdout: str
    stderr: str
    exit_code: int | None
    timed_out: bool
    spawn_error: str | None = None


class AgentInvoker:
    """Builds the prompt and argv, supervises the agent process, parses stdout."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        command: str = "pi",
        provider: str,
        model: str,
        prompt_file: Path,
        timeout_minutes: float,
        skills_dir: Path,
        rlm_size_threshold_bytes: int = 500 * 1024,
        terminate_grace_seconds: float = 10.0,
    ) -> None:
        self.command = command
        self.provider = provider
        self.model = model
        self.prompt_file = prompt_file
        self.timeout_minutes = timeout_minutes
        self.skills_dir = skills_dir
        self.rlm_size_threshold_bytes = rlm_size_threshold_bytes
        self.terminate_grace_seconds = terminate_grace_seconds

    @classmethod
    def from_settings(cls, settings: AgentSettings) -> AgentInvoker:
        return cls(
            command=settings.command,
            provider=settings.provider,
            model=settings.model,
            prompt_file=settings.prompt_file,
            timeout_minutes=settings.timeout_minutes,
            skills_dir=settings.skills_dir,
            rlm_size_threshold_bytes=settings.rlm_size_threshold_bytes,
            terminate_grace_seconds=settings.terminate_grace_seconds,
        )

    def invoke(self, job: AnalysisJob) -> AgentResult:
        """Run the agent for a job; never raises for agent-side failures."""

        started = time.monotonic()

        if not self.prompt_file.is_file():
            return AgentResult(
                success=False,
                raw_output="",
                error=f"Prompt file not found: {self.prompt_file}",
                duration_ms=_elapsed_ms(started),
            )
        if not Path(job.session_file).is_file():
            return AgentResult(
                success=False,
                raw_output="",
                error=f"Session file not found: {job.session_file}",
                duration_ms=_elapsed_ms(started),
            )

        args = self.build_args(job)
        logger.debug(
            "Spawning agent for job %s: %s -p ...",
            job.id,
            " ".join([self.command, *args[:-2]]),
        )
        outcome = self._run_process([*shlex.split(self.command), *args])
        duration_ms = _elapsed_ms(started)

        if outcome.spawn_error is not None:
            return AgentResult(
                success=False,
                raw_output="",
                error=f"Failed to spawn agent: {outcome.spawn_error}",
                duration_ms=duration_ms,
            )
        if outcome.timed_out:
            return AgentResult(
                success=False,
                raw_output=outcome.stdout,
                error=f"Analysis timed out after {_format_minutes(self.timeout_minutes)} minutes",
                exit_code=outcome.exit_code,
                duration_ms=duration_ms,
                timed_out=True,
            )
        if outcome.exit_code != 0:
            return AgentResult(
                success=False,
                raw_output=outcome.stdout,
                error=(
                    f"Agent exited with code {outcome.exit_code}: "
                    f"{outcome.stderr[:_STDERR_PREVIEW_CHARS]}"
                ),
                exit_code=outcome.exit_code,
                duration_ms=duration_ms,
            )

        parsed = parse_agent_output(outcome.stdout)
        return AgentResult(
            success=parsed.success,
            raw_output=outcome.stdout,
            node_data=parsed.node_data,
            error=parsed.error,
            exit_code=outcome.exit_code,
            duration_ms=duration_ms,
        )

    def build_args(self, job: AnalysisJob) -> list[str]:
        """Agent argv without the executable itself."""

        args = [
            "--provider",
            self.provider,
            "--model",
            self.model,
            "--system-prompt",
            str(self.prompt_file),
        ]
        skills = self.select_skills(Path(job.session_file))
        if skills:
            args.extend(["--skills", ",".join(skills)])
        args.extend(["--no-session", "--mode", "json", "-p", build_analysis_prompt(job)])
        return args

    def select_skills(self, session_file: Path | None = None) -> list[str]:
        """Available required/optional skills, plus conditional ones for large sessions."""

        availability = self.skill_availability()
        selected = [
            name
            for name in (*REQUIRED_SKILLS, *OPTIONAL_SKILLS)
            if availability[name].available
        ]
        if session_file is not None and _file_size(session_file) >= self.rlm_size_threshold_bytes:
            selected.extend(name for name in CONDITIONAL_SKILLS if availability[name].available)
        return selected

    def skill_availability(self) -> dict[str, SkillInfo]:
        availability: dict[str, SkillInfo] = {}
        for name in (*REQUIRED_SKILLS, *OPTIONAL_SKILLS, *CONDITIONAL_SKILLS):
            path = self.skills_dir / name / "SKILL.md"
            availability[name] = SkillInfo(name=name, available=path.is_file(), path=path)
        return availability

    def environment_issues(self) -> list[str]:
        """Problems that make every job fail until fixed by the operator."""

        issues: list[str] = []
        if not self.prompt_file.is_file():
            issues.append(f"Prompt file not found: {self.prompt_file}")
        availability = self.skill_availability()
        missing = [name for name in REQUIRED_SKILLS if not availability[name].available]
        if missing:
            issues.append(
                f"Missing required skills: {', '.join(missing)} (looked in {self.skills_dir})",
            )
        return issues

    def prompt_fingerprint(self) -> tuple[str, str] | None:
        """sha256 of the system prompt file with its text, or None when missing."""

        try:
            text = self.prompt_file.read_text("utf-8")
        except FileNotFoundError:
            return None
        return hashlib.sha256(text.encode("utf-8")).hexdigest(), text

    def _run_process(self, argv: list[str]) -> _ProcessOutcome:
        if not argv or not argv[0]:
            return _ProcessOutcome(
                stdout="",
                stderr="",
                exit_code=None,
                timed_out=False,
                spawn_error="agent command is empty",
            )
        timeout_seconds = self.timeout_minutes * 60
        with (
            tempfile.TemporaryFile("w+", encoding="utf-8", errors="replace") as stdout_handle,
            tempfile.TemporaryFile("w+", encoding="utf-8", errors="replace") as stderr_handle,
        ):
            try:
                process = subprocess.Popen(  # noqa: S603
                    argv,
                    stdin=subprocess.DEVNULL,
                    stdout=stdout_handle,
                    stderr=stderr_handle,
                    text=True,
                )
            except OSError as error:
                return _ProcessOutcome(
                    stdout="",
                    stderr="",
                    exit_code=None,
                    timed_out=False,
                    spawn_error=str(error),
                )

            deadline = time.monotonic() + timeout_seconds
            timed_out = False
            while process.poll() is None:
                if time.monotonic() >= deadline:
                    timed_out = True
                    logger.warning(
                        "Agent pid %s exceeded %s minutes, sending terminate",
                        process.pid,
                        _format_minutes(self.timeout_minutes),
                    )
                    self._terminate_process(process)
                    break
                time.sleep(_POLL_SECONDS)

            stdout = _read_back(stdout_handle)
            stderr = _read_back(stderr_handle)

        if stderr.strip() and not timed_out:
            logger.debug("Agent stderr: %s", stderr.strip()[:_STDERR_PREVIEW_CHARS])
        return _ProcessOutcome(
            stdout=stdout,
            stderr=stderr,
            exit_code=process.returncode,
            timed_out=timed_out,
        )

    def _terminate_process(self, process: subprocess.Popen[str]) -> None:
        try:
            process.terminate()
        except OSError:
            return
        try:
            process.wait(timeout=self.terminate_grace_seconds)
        except subprocess.TimeoutExpired:
            logger.warning(
                "Agent pid %s ignored terminate for %ss, killing",
                process.pid,
                self.terminate_grace_seconds,
            )
            try:
                process.kill()
            except OSError:
                return
            process.wait(timeout=5)


def build_analysis_prompt(job: AnalysisJob) -> str:
    """User prompt handed to the agent with ``-p``."""

    parts = [
        "Analyze this pi session segment and extract structured insights.",
        "",
        f"Session: {job.session_file}",
    ]
    if job.segment_start and job.segment_end:
        parts.append(f"Segment: entries from {job.segment_start} to {job.segment_end}")
    elif job.segment_start:
        parts.append(f"Segment: starting from entry {job.segment_start}")
    elif job.segment_end:
        parts.append(f"Segment: up to entry {job.segment_end}")

    context = context_to_dict(job.context)
    relevant = {key: context[key] for key in _PROMPT_CONTEXT_KEYS if context.get(key)}
    if relevant:
        parts.extend(["", "Additional context:", json.dumps(relevant, indent=2)])

    parts.extend(
        [
            "",
            "Return a JSON object matching the Node schema. Wrap in ```json code fence.",
        ],
    )
    return "\n".join(parts)


def _read_back(handle: IO[str]) -> str:
    handle.flush()
    handle.seek(0)
    return handle.read()


def _file_size(path: Path) -> int:
    try:
        return path.stat().st_size
    except OSError:
        return 0


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _format_minutes(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else f"{value:g}"
