from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Mapping, Sequence

import pytest

from steprun.launcher import Completion, LaunchError


class FakeHandle:
    def __init__(self, completion: Completion) -> None:
        self.completion = completion

    def wait(self, timeout: float | None = None) -> Completion:
        return self.completion

    def terminate(self) -> None:
        pass

    def kill(self) -> None:
        pass


class FakeLauncher:
    """Records launches and answers with scripted exit codes keyed by program name."""

    def __init__(self, codes: Mapping[str, int] | None = None, *, missing: Sequence[str] = ()) -> None:
        self.codes = dict(codes or {})
        self.missing = set(missing)
        self.launched: list[list[str]] = []
        self.calls: list[dict] = []

    def _start(self, program, args, cwd, env, capture) -> Completion:
        self.launched.append([program, *args])
        self.calls.append({"cwd": cwd, "env": env, "capture": capture})
        if program in self.missing:
            raise LaunchError(program, "No such file or directory", exit_code=127)
        return Completion(exit_code=self.codes.get(program, 0), stdout=f"{program} out\n")

    def launch(self, program: str, args: Sequence[str] = (), *, cwd=None, env=None, capture=True) -> FakeHandle:
        return FakeHandle(self._start(program, args, cwd, env, capture))


class FakeAsyncHandle(FakeHandle):
    async def wait(self) -> Completion:  # type: ignore[override]
        return self.completion


class FakeAsyncLauncher(FakeLauncher):
    async def launch(  # type: ignore[override]
        self, program: str, args: Sequence[str] = (), *, cwd=None, env=None, capture=True
    ) -> FakeAsyncHandle:
        return FakeAsyncHandle(self._start(program, args, cwd, env, capture))


@pytest.fixture
def fake_launcher_factory():
    return FakeLauncher


@pytest.fixture
def fake_async_launcher_factory():
    return FakeAsyncLauncher


@pytest.fixture
def python_exe() -> str:
    return sys.executable


@pytest.fixture(autouse=True)
def _restore_steprun_logger():
    # The CLI reconfigures the shared "steprun" logger; keep tests isolated.
    logger = logging.getLogger("steprun")
    handlers, level, propagate = list(logger.handlers), logger.level, logger.propagate
    yield
    logger.handlers[:] = handlers
    logger.setLevel(level)
    logger.propagate = propagate


@pytest.fixture
def write_file(tmp_path: Path):
    def _write(name: str, text: str) -> Path:
        p = tmp_path / name
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(text, encoding="utf-8")
        return p

    return _write
