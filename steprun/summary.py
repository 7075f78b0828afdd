from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from pathlib import Path

from steprun.model import RunResult


@dataclass(frozen=True)
class StepSummary:
    index: int
    name: str
    command: str
    exit_code: int
    duration_s: float
    error: str | None


@dataclass(frozen=True)
class AbortSummary:
    index: int
    cause: str
    exit_code: int
    message: str


@dataclass(frozen=True)
class RunSummary:
    passed: bool
    status: str  # completed|aborted
    total_duration_s: float
    abort: AbortSummary | None
    steps: list[StepSummary]


def summarize(result: RunResult) -> RunSummary:
    abort = None
    if result.abort is not None:
        abort = AbortSummary(
            index=result.abort.index,
            cause=result.abort.cause.value,
            exit_code=result.abort.exit_code,
            message=result.abort.message,
        )
    return RunSummary(
        passed=result.ok,
        status=result.status.value,
        total_duration_s=round(result.duration_s, 3),
        abort=abort,
        steps=[
            StepSummary(
                index=r.index,
                name=r.step.label,
                command=r.step.command_str,
                exit_code=r.exit_code,
                duration_s=round(r.duration_s, 3),
                error=r.error,
            )
            for r in result.results
        ],
    )


def write_summary(path: Path, result: RunResult) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(asdict(summarize(result)), indent=2) + "\n", encoding="utf-8")
