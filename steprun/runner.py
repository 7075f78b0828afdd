from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Iterable

from steprun.launcher import (
    AsyncProcessHandle,
    AsyncProcessLauncher,
    AsyncSubprocessLauncher,
    Completion,
    LaunchError,
    ProcessHandle,
    ProcessLauncher,
    SubprocessLauncher,
)
from steprun.model import Abort, AbortCause, RunResult, Step, StepResult

EXIT_CANCELLED = 130

DEFAULT_POLL_INTERVAL_S = 0.1
DEFAULT_GRACE_PERIOD_S = 5.0


def _require_steps(steps: Iterable[Step]) -> list[Step]:
    items = list(steps)
    if not items:
        raise ValueError("No steps to run")
    for i, s in enumerate(items):
        if not isinstance(s, Step):
            raise ValueError(f"Item {i} is not a Step: {s!r}")
    return items


class _Progress:
    """Bookkeeping for one run invocation. Never shared between runs."""

    def __init__(self, total: int, logger: logging.Logger) -> None:
        self.total = total
        self.logger = logger
        self.results: list[StepResult] = []
        self.started = time.monotonic()

    def _branch(self, index: int, *, last: bool) -> str:
        return "└─" if last or index == self.total - 1 else "├─"

    def record(
        self,
        index: int,
        step: Step,
        completion: Completion,
        started: float,
        *,
        error: str | None = None,
    ) -> StepResult:
        result = StepResult(
            index=index,
            step=step,
            exit_code=completion.exit_code,
            stdout=completion.stdout,
            stderr=completion.stderr,
            duration_s=time.monotonic() - started,
            error=error,
        )
        self.results.append(result)

        status = "OK" if result.ok else "FAIL"
        self.logger.info(
            "%s [%d] %s: %s (%.1fs)",
            self._branch(index, last=not result.ok),
            index,
            step.label,
            status,
            result.duration_s,
        )
        if result.stdout.strip():
            self.logger.debug("stdout:\n%s", result.stdout.rstrip())
        if result.stderr.strip():
            level = logging.DEBUG if result.ok else logging.ERROR
            self.logger.log(level, "stderr:\n%s", result.stderr.rstrip())
        return result

    def aborted(self, index: int, cause: AbortCause, exit_code: int, message: str) -> RunResult:
        self.logger.error("Stopped at step %d: %s", index, message)
        return RunResult(
            results=tuple(self.results),
            abort=Abort(index=index, cause=cause, exit_code=exit_code, message=message),
            duration_s=time.monotonic() - self.started,
        )

    def cancelled_before(self, index: int) -> RunResult:
        return self.aborted(index, AbortCause.CANCELLED, EXIT_CANCELLED, "cancelled before start")

    def launch_failed(self, index: int, step: Step, err: LaunchError, started: float) -> RunResult:
        self.record(index, step, Completion(exit_code=err.exit_code), started, error=str(err))
        return self.aborted(index, AbortCause.LAUNCH_FAILURE, err.exit_code, str(err))

    def finished(self, index: int, step: Step, completion: Completion, started: float, *, cancelled: bool) -> RunResult | None:
        """Record a terminated process. Returns a RunResult when the run must stop."""
        if cancelled:
            self.record(index, step, completion, started, error="cancelled")
            return self.aborted(index, AbortCause.CANCELLED, completion.exit_code, "cancelled")
        self.record(index, step, completion, started)
        if completion.exit_code != 0:
            return self.aborted(
                index,
                AbortCause.NON_ZERO_EXIT,
                completion.exit_code,
                f"{step.label} exited with {completion.exit_code}",
            )
        return None

    def completed(self) -> RunResult:
        return RunResult(results=tuple(self.results), duration_s=time.monotonic() - self.started)


class StepRunner:
    """
    Runs steps one at a time on a blocking launcher, stopping at the first failure.

    Cancellation is driven by a `threading.Event` passed to `run`; setting it
    terminates the current process and prevents any later step from starting.
    """

    def __init__(
        self,
        launcher: ProcessLauncher | None = None,
        *,
        logger: logging.Logger | None = None,
        poll_interval_s: float = DEFAULT_POLL_INTERVAL_S,
        grace_period_s: float = DEFAULT_GRACE_PERIOD_S,
    ) -> None:
        self._logger = logger or logging.getLogger("steprun")
        self._launcher = launcher or SubprocessLauncher(logger=self._logger)
        self._poll_interval_s = poll_interval_s
        self._grace_period_s = grace_period_s

    def run(self, steps: Iterable[Step], *, cancel: threading.Event | None = None) -> RunResult:
        items = _require_steps(steps)
        progress = _Progress(len(items), self._logger)

        for index, step in enumerate(items):
            if cancel is not None and cancel.is_set():
                return progress.cancelled_before(index)

            started = time.monotonic()
            try:
                handle = self._launcher.launch(
                    step.program,
                    step.args,
                    cwd=step.cwd,
                    env=step.env,
                    capture=step.capture,
                )
            except LaunchError as e:
                return progress.launch_failed(index, step, e, started)

            try:
                completion, cancelled = self._wait(handle, cancel)
            except BaseException:
                # Don't leave the process running behind an escaping error or interrupt.
                handle.kill()
                raise
            stop = progress.finished(index, step, completion, started, cancelled=cancelled)
            if stop is not None:
                return stop

        return progress.completed()

    def _wait(self, handle: ProcessHandle, cancel: threading.Event | None) -> tuple[Completion, bool]:
        if cancel is None:
            return handle.wait(), False

        while True:
            completion = handle.wait(self._poll_interval_s)
            if completion is not None:
                # A process that died from the same interrupt counts as cancelled.
                return completion, cancel.is_set() and completion.exit_code != 0
            if cancel.is_set():
                break

        handle.terminate()
        completion = handle.wait(self._grace_period_s)
        if completion is None:
            handle.kill()
            completion = handle.wait()
        return completion, True


class AsyncStepRunner:
    """
    Event-loop flavour of StepRunner: each step's process is awaited, so the
    loop keeps serving other tasks while a step runs.
    """

    def __init__(
        self,
        launcher: AsyncProcessLauncher | None = None,
        *,
        logger: logging.Logger | None = None,
        grace_period_s: float = DEFAULT_GRACE_PERIOD_S,
    ) -> None:
        self._logger = logger or logging.getLogger("steprun")
        self._launcher = launcher or AsyncSubprocessLauncher(logger=self._logger)
        self._grace_period_s = grace_period_s

    async def run(self, steps: Iterable[Step], *, cancel: asyncio.Event | None = None) -> RunResult:
        items = _require_steps(steps)
        progress = _Progress(len(items), self._logger)

        for index, step in enumerate(items):
            if cancel is not None and cancel.is_set():
                return progress.cancelled_before(index)

            started = time.monotonic()
            try:
                handle = await self._launcher.launch(
                    step.program,
                    step.args,
                    cwd=step.cwd,
                    env=step.env,
                    capture=step.capture,
                )
            except LaunchError as e:
                return progress.launch_failed(index, step, e, started)

            completion, cancelled = await self._wait(handle, cancel)
            stop = progress.finished(index, step, completion, started, cancelled=cancelled)
            if stop is not None:
                return stop

        return progress.completed()

    async def _wait(self, handle: AsyncProcessHandle, cancel: asyncio.Event | None) -> tuple[Completion, bool]:
        waiter = asyncio.ensure_future(handle.wait())
        try:
            if cancel is None:
                return await waiter, False

            stopper = asyncio.ensure_future(cancel.wait())
            try:
                done, _pending = await asyncio.wait({waiter, stopper}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                stopper.cancel()
            if waiter in done:
                completion = waiter.result()
                return completion, cancel.is_set() and completion.exit_code != 0

            handle.terminate()
            try:
                completion = await asyncio.wait_for(asyncio.shield(waiter), self._grace_period_s)
            except asyncio.TimeoutError:
                handle.kill()
                completion = await waiter
            return completion, True
        except asyncio.CancelledError:
            # The awaiting task was cancelled: don't leave the process running.
            handle.kill()
            waiter.cancel()
            raise
