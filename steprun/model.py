from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Mapping

from steprun.util import sh_join


@dataclass(frozen=True)
class Step:
    program: str
    args: tuple[str, ...] = ()
    cwd: Path | None = None
    env: Mapping[str, str] | None = None
    name: str | None = None
    capture: bool = True

    def __post_init__(self) -> None:
        if not isinstance(self.program, str) or not self.program:
            raise ValueError("Step requires a non-empty 'program'")
        # Accept any sequence of strings but store a tuple so the Step stays immutable.
        args = tuple(self.args)
        if not all(isinstance(a, str) for a in args):
            raise ValueError(f"Step arguments must be strings: {args!r}")
        if "\0" in self.program or any("\0" in a for a in args):
            raise ValueError(f"Step program and arguments must not contain NUL bytes: {self.program!r}")
        object.__setattr__(self, "args", args)
        if self.env is not None:
            env = dict(self.env)
            if any("\0" in k or "\0" in v or "=" in k for k, v in env.items()):
                raise ValueError(f"Step environment has an invalid entry: {env!r}")
            object.__setattr__(self, "env", env)

    @property
    def argv(self) -> list[str]:
        return [self.program, *self.args]

    @property
    def command_str(self) -> str:
        return sh_join(self.argv)

    @property
    def label(self) -> str:
        return self.name or self.command_str


class RunStatus(str, Enum):
    COMPLETED = "completed"
    ABORTED = "aborted"


class AbortCause(str, Enum):
    NON_ZERO_EXIT = "non_zero_exit"
    LAUNCH_FAILURE = "launch_failure"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class StepResult:
    index: int
    step: Step
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_s: float = 0.0
    error: str | None = None  # launch failure / cancellation message

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and self.error is None


@dataclass(frozen=True)
class Abort:
    index: int
    cause: AbortCause
    exit_code: int
    message: str = ""


@dataclass(frozen=True)
class RunResult:
    results: tuple[StepResult, ...] = field(default_factory=tuple)
    abort: Abort | None = None
    duration_s: float = 0.0

    @property
    def status(self) -> RunStatus:
        return RunStatus.COMPLETED if self.abort is None else RunStatus.ABORTED

    @property
    def ok(self) -> bool:
        return self.abort is None

    @property
    def exit_code(self) -> int:
        return 0 if self.abort is None else self.abort.exit_code
