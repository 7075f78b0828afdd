"""
Process launchers.

A launcher starts one OS process and hands back a completion handle. The
blocking flavour wraps `subprocess.Popen`, the event-loop flavour wraps
`asyncio.create_subprocess_exec`. Both honour dry-run, in which case the
command is only logged and reported as exiting with 0.
"""

from __future__ import annotations

import asyncio
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Protocol, Sequence

from steprun.util import merged_env, sh_join

# Shell conventions for "command not found" and "found but could not run".
EXIT_NOT_FOUND = 127
EXIT_CANNOT_EXECUTE = 126


@dataclass(frozen=True)
class Completion:
    exit_code: int
    stdout: str = ""
    stderr: str = ""


class LaunchError(RuntimeError):
    def __init__(self, program: str, message: str, *, exit_code: int = EXIT_CANNOT_EXECUTE) -> None:
        super().__init__(f"Failed to launch {program!r}: {message}")
        self.program = program
        self.exit_code = exit_code

    @classmethod
    def from_os_error(cls, program: str, err: OSError) -> "LaunchError":
        code = EXIT_NOT_FOUND if isinstance(err, FileNotFoundError) else EXIT_CANNOT_EXECUTE
        return cls(program, err.strerror or str(err), exit_code=code)


class ProcessHandle(Protocol):
    def wait(self, timeout: float | None = None) -> Completion | None:
        """Return the completion, or None if the process is still running after `timeout`."""
        ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...


class ProcessLauncher(Protocol):
    def launch(
        self,
        program: str,
        args: Sequence[str] = (),
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        capture: bool = True,
    ) -> ProcessHandle: ...


class AsyncProcessHandle(Protocol):
    async def wait(self) -> Completion: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...


class AsyncProcessLauncher(Protocol):
    async def launch(
        self,
        program: str,
        args: Sequence[str] = (),
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        capture: bool = True,
    ) -> AsyncProcessHandle: ...


def _check_cwd(program: str, cwd: Path | None) -> None:
    if cwd is not None and not Path(cwd).is_dir():
        raise LaunchError(program, f"working directory does not exist: {cwd}")


class CompletedHandle:
    """Handle for a process that has already finished (or was never started in dry-run)."""

    def __init__(self, completion: Completion) -> None:
        self._completion = completion

    def wait(self, timeout: float | None = None) -> Completion:
        return self._completion

    def terminate(self) -> None:
        pass

    def kill(self) -> None:
        pass


class PopenHandle:
    def __init__(self, proc: subprocess.Popen) -> None:
        self._proc = proc

    @property
    def pid(self) -> int:
        return self._proc.pid

    def wait(self, timeout: float | None = None) -> Completion | None:
        # communicate() may be called again after a timeout without losing output.
        try:
            out, err = self._proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None
        return Completion(exit_code=self._proc.returncode, stdout=out or "", stderr=err or "")

    def terminate(self) -> None:
        if self._proc.poll() is None:
            self._proc.terminate()

    def kill(self) -> None:
        if self._proc.poll() is None:
            self._proc.kill()


class SubprocessLauncher:
    def __init__(self, *, dry_run: bool = False, logger: logging.Logger | None = None) -> None:
        self._dry_run = dry_run
        self._logger = logger or logging.getLogger("steprun")

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    def launch(
        self,
        program: str,
        args: Sequence[str] = (),
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        capture: bool = True,
    ) -> ProcessHandle:
        argv = [program, *args]
        # Keep low-level process logs at DEBUG so step progress stays one line per step.
        self._logger.debug("RUN %s", sh_join(argv))
        if self._dry_run:
            return CompletedHandle(Completion(exit_code=0))

        _check_cwd(program, cwd)
        pipe = subprocess.PIPE if capture else None
        try:
            proc = subprocess.Popen(
                argv,
                text=True,
                encoding="utf-8",
                errors="replace",
                stdout=pipe,
                stderr=pipe,
                cwd=str(cwd) if cwd is not None else None,
                env=merged_env(env),
            )
        except OSError as e:
            raise LaunchError.from_os_error(program, e) from e
        return PopenHandle(proc)


class AsyncCompletedHandle:
    def __init__(self, completion: Completion) -> None:
        self._completion = completion

    async def wait(self) -> Completion:
        return self._completion

    def terminate(self) -> None:
        pass

    def kill(self) -> None:
        pass


def _decode(data: bytes | None) -> str:
    if not data:
        return ""
    return data.decode("utf-8", errors="replace")


class AsyncioProcessHandle:
    def __init__(self, proc: asyncio.subprocess.Process) -> None:
        self._proc = proc

    @property
    def pid(self) -> int:
        return self._proc.pid

    async def wait(self) -> Completion:
        out, err = await self._proc.communicate()
        return Completion(exit_code=self._proc.returncode, stdout=_decode(out), stderr=_decode(err))

    def terminate(self) -> None:
        self._signal(self._proc.terminate)

    def kill(self) -> None:
        self._signal(self._proc.kill)

    def _signal(self, send) -> None:
        if self._proc.returncode is not None:
            return
        try:
            send()
        except ProcessLookupError:
            # Exited between the returncode check and the signal.
            pass


class AsyncSubprocessLauncher:
    def __init__(self, *, dry_run: bool = False, logger: logging.Logger | None = None) -> None:
        self._dry_run = dry_run
        self._logger = logger or logging.getLogger("steprun")

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    async def launch(
        self,
        program: str,
        args: Sequence[str] = (),
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        capture: bool = True,
    ) -> AsyncProcessHandle:
        argv = [program, *args]
        self._logger.debug("RUN %s", sh_join(argv))
        if self._dry_run:
            return AsyncCompletedHandle(Completion(exit_code=0))

        _check_cwd(program, cwd)
        pipe = asyncio.subprocess.PIPE if capture else None
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=pipe,
                stderr=pipe,
                cwd=str(cwd) if cwd is not None else None,
                env=merged_env(env),
            )
        except OSError as e:
            raise LaunchError.from_os_error(program, e) from e
        return AsyncioProcessHandle(proc)
