from __future__ import annotations

import asyncio
import logging
import signal
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from steprun.config_loader import LoadedConfig
from steprun.kinds.factory import KindFactory
from steprun.launcher import AsyncSubprocessLauncher, SubprocessLauncher
from steprun.model import RunResult, Step
from steprun.runner import AsyncStepRunner, StepRunner
from steprun.util import resolve_dir


@dataclass(frozen=True)
class Options:
    dry_run: bool = False
    stream: bool = False  # let step output go straight to the terminal
    use_async: bool = False


@dataclass(frozen=True)
class Context:
    base_dir: Path
    logger: logging.Logger
    options: Options
    env: Mapping[str, str] = field(default_factory=dict)


def build_context(
    *,
    config: LoadedConfig,
    options: Options,
    logger: logging.Logger,
) -> Context:
    base_dir = resolve_dir(config.cwd, config.path.parent.resolve())
    return Context(
        base_dir=base_dir,
        logger=logger,
        options=options,
        env=dict(config.env),
    )


def build_steps(config: LoadedConfig, factory: KindFactory, ctx: Context) -> list[Step]:
    steps: list[Step] = []
    for i, raw in enumerate(config.steps, start=1):
        try:
            steps.append(factory.from_dict(raw, ctx))
        except ValueError as e:
            raise ValueError(f"Invalid step in {config.path} (index {i}): {e}") from e
    return steps


def _run_blocking(steps: list[Step], ctx: Context) -> RunResult:
    runner = StepRunner(
        SubprocessLauncher(dry_run=ctx.options.dry_run, logger=ctx.logger),
        logger=ctx.logger,
    )
    cancel = threading.Event()

    # Ctrl-C stops the current step instead of tearing down the interpreter.
    if threading.current_thread() is not threading.main_thread():
        return runner.run(steps, cancel=cancel)
    previous = signal.signal(signal.SIGINT, lambda _signum, _frame: cancel.set())
    try:
        return runner.run(steps, cancel=cancel)
    finally:
        signal.signal(signal.SIGINT, previous)


async def _run_async(steps: list[Step], ctx: Context) -> RunResult:
    runner = AsyncStepRunner(
        AsyncSubprocessLauncher(dry_run=ctx.options.dry_run, logger=ctx.logger),
        logger=ctx.logger,
    )
    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel.set)
        installed = True
    except (NotImplementedError, RuntimeError):
        # Not available on every platform/loop (e.g. Windows).
        installed = False
    try:
        return await runner.run(steps, cancel=cancel)
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


def run_steps(steps: list[Step], ctx: Context) -> RunResult:
    if ctx.options.use_async:
        return asyncio.run(_run_async(steps, ctx))
    return _run_blocking(steps, ctx)
