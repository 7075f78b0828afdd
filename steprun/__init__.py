"""
steprun: run an ordered list of external commands, stopping at the first failure.
"""

from steprun.launcher import (
    AsyncSubprocessLauncher,
    Completion,
    LaunchError,
    SubprocessLauncher,
)
from steprun.model import Abort, AbortCause, RunResult, RunStatus, Step, StepResult
from steprun.runner import AsyncStepRunner, StepRunner

__all__ = [
    "Abort",
    "AbortCause",
    "AsyncStepRunner",
    "AsyncSubprocessLauncher",
    "Completion",
    "LaunchError",
    "RunResult",
    "RunStatus",
    "Step",
    "StepResult",
    "StepRunner",
    "SubprocessLauncher",
]
