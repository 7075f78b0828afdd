"""Blocking StepRunner: sequencing, abort rules and cancellation."""

from __future__ import annotations

import shutil
import threading
import time
from pathlib import Path

import pytest

from steprun.model import AbortCause, RunStatus, Step
from steprun.runner import EXIT_CANCELLED, StepRunner


def _py(python_exe: str, code: str, **kwargs) -> Step:
    return Step(python_exe, ("-c", code), **kwargs)


def test_all_zero_exits_complete_with_one_result_per_step_in_order(fake_launcher_factory) -> None:
    launcher = fake_launcher_factory()
    steps = [Step("a"), Step("b", ("x",)), Step("c")]

    result = StepRunner(launcher).run(steps)

    assert result.status is RunStatus.COMPLETED
    assert result.ok
    assert result.exit_code == 0
    assert [r.index for r in result.results] == [0, 1, 2]
    assert [r.step for r in result.results] == steps
    assert launcher.launched == [["a"], ["b", "x"], ["c"]]


@pytest.mark.parametrize("k", [0, 1, 2, 3])
def test_first_non_zero_exit_aborts_with_k_plus_one_results(fake_launcher_factory, k: int) -> None:
    steps = [Step(f"s{i}") for i in range(4)]
    launcher = fake_launcher_factory({f"s{k}": 7})

    result = StepRunner(launcher).run(steps)

    assert result.status is RunStatus.ABORTED
    assert result.abort.index == k
    assert result.abort.cause is AbortCause.NON_ZERO_EXIT
    assert result.abort.exit_code == 7
    assert len(result.results) == k + 1
    assert result.results[-1].exit_code == 7
    assert len(launcher.launched) == k + 1


def test_only_the_first_failure_counts(fake_launcher_factory) -> None:
    launcher = fake_launcher_factory({"bad": 2, "worse": 3})

    result = StepRunner(launcher).run([Step("bad"), Step("worse")])

    assert result.abort.index == 0
    assert result.exit_code == 2
    assert launcher.launched == [["bad"]]


def test_running_the_same_sequence_twice_gives_independent_results(fake_launcher_factory) -> None:
    runner = StepRunner(fake_launcher_factory())
    steps = [Step("a"), Step("b")]

    first = runner.run(steps)
    second = runner.run(steps)

    assert first.status is RunStatus.COMPLETED
    assert second.status is RunStatus.COMPLETED
    assert first.results is not second.results
    assert len(first.results) == len(second.results) == 2


def test_empty_step_list_is_rejected(fake_launcher_factory) -> None:
    launcher = fake_launcher_factory()

    with pytest.raises(ValueError, match="No steps"):
        StepRunner(launcher).run([])
    assert launcher.launched == []


def test_non_step_items_are_rejected(fake_launcher_factory) -> None:
    with pytest.raises(ValueError):
        StepRunner(fake_launcher_factory()).run([Step("a"), "echo hi"])  # type: ignore[list-item]


def test_launch_failure_aborts_and_skips_remaining_steps(fake_launcher_factory) -> None:
    launcher = fake_launcher_factory(missing=["ghost"])

    result = StepRunner(launcher).run([Step("ok"), Step("ghost"), Step("never")])

    assert result.abort.index == 1
    assert result.abort.cause is AbortCause.LAUNCH_FAILURE
    assert result.abort.exit_code == 127
    assert len(result.results) == 2
    assert result.results[1].error is not None
    assert "ghost" in result.results[1].error
    assert ["never"] not in launcher.launched


def test_step_cwd_env_and_capture_reach_the_launcher(fake_launcher_factory, tmp_path: Path) -> None:
    launcher = fake_launcher_factory()
    step = Step("a", cwd=tmp_path, env={"K": "V"}, capture=False)

    StepRunner(launcher).run([step])

    assert launcher.calls == [{"cwd": tmp_path, "env": {"K": "V"}, "capture": False}]


def test_cancel_set_before_start_launches_nothing(fake_launcher_factory) -> None:
    launcher = fake_launcher_factory()
    cancel = threading.Event()
    cancel.set()

    result = StepRunner(launcher).run([Step("a")], cancel=cancel)

    assert result.abort.index == 0
    assert result.abort.cause is AbortCause.CANCELLED
    assert result.abort.exit_code == EXIT_CANCELLED
    assert result.results == ()
    assert launcher.launched == []


def test_scenario_single_successful_command(python_exe: str) -> None:
    result = StepRunner().run([_py(python_exe, "print('ok')")])

    assert result.status is RunStatus.COMPLETED
    assert len(result.results) == 1
    assert result.results[0].exit_code == 0
    assert result.results[0].stdout.strip() == "ok"


def test_scenario_failing_first_command_never_launches_second(python_exe: str, tmp_path: Path) -> None:
    marker = tmp_path / "never"
    steps = [
        _py(python_exe, "raise SystemExit(1)"),
        _py(python_exe, f"open({str(marker)!r}, 'w').close()"),
    ]

    result = StepRunner().run(steps)

    assert (result.abort.index, result.abort.exit_code) == (0, 1)
    assert len(result.results) == 1
    assert not marker.exists()


@pytest.mark.skipif(shutil.which("cp") is None, reason="needs cp")
def test_scenario_copy_of_missing_source_aborts_at_second_step(python_exe: str, tmp_path: Path) -> None:
    steps = [
        _py(python_exe, "print('a')"),
        Step("cp", ("missing-src", "dest"), cwd=tmp_path),
    ]

    result = StepRunner().run(steps)

    assert result.abort.index == 1
    assert result.abort.cause is AbortCause.NON_ZERO_EXIT
    assert result.abort.exit_code != 0
    assert len(result.results) == 2
    assert result.results[1].stderr


def test_missing_program_is_a_launch_failure(tmp_path: Path) -> None:
    result = StepRunner().run([Step("steprun-definitely-missing-program")])

    assert result.abort.cause is AbortCause.LAUNCH_FAILURE
    assert result.abort.exit_code == 127


def test_env_overrides_are_visible_to_the_process(python_exe: str) -> None:
    step = _py(python_exe, "import os; print(os.environ['STEPRUN_TEST_VALUE'])", env={"STEPRUN_TEST_VALUE": "42"})

    result = StepRunner().run([step])

    assert result.results[0].stdout.strip() == "42"


def test_cancel_terminates_running_process(python_exe: str, tmp_path: Path) -> None:
    marker = tmp_path / "never"
    steps = [
        _py(python_exe, "import time; time.sleep(30)"),
        _py(python_exe, f"open({str(marker)!r}, 'w').close()"),
    ]
    cancel = threading.Event()
    timer = threading.Timer(0.3, cancel.set)
    timer.start()

    started = time.monotonic()
    try:
        result = StepRunner(poll_interval_s=0.05, grace_period_s=2.0).run(steps, cancel=cancel)
    finally:
        timer.cancel()

    assert time.monotonic() - started < 20
    assert result.abort.cause is AbortCause.CANCELLED
    assert result.abort.index == 0
    assert len(result.results) == 1
    assert result.results[0].error == "cancelled"
    assert not marker.exists()


def test_output_that_is_not_utf8_is_replaced_not_fatal(python_exe: str) -> None:
    code = "import sys; sys.stdout.buffer.write(b'\\xff\\xfe bad'); sys.stderr.buffer.write(b'\\xff')"

    result = StepRunner().run([_py(python_exe, code)])

    assert result.status is RunStatus.COMPLETED
    assert result.results[0].stdout == "\ufffd\ufffd bad"
    assert result.results[0].stderr == "\ufffd"


def test_process_is_killed_when_waiting_fails() -> None:
    class _BrokenHandle:
        killed = False

        def wait(self, timeout=None):
            raise RuntimeError("wait failed")

        def terminate(self) -> None:
            pass

        def kill(self) -> None:
            self.killed = True

    handle = _BrokenHandle()

    class _Launcher:
        def launch(self, program, args=(), *, cwd=None, env=None, capture=True):
            return handle

    with pytest.raises(RuntimeError, match="wait failed"):
        StepRunner(_Launcher()).run([Step("a")])
    assert handle.killed
