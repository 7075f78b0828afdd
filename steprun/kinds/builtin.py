from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Sequence

from steprun.kinds.api import StepKind
from steprun.model import Step
from steprun.util import resolve_dir

if TYPE_CHECKING:
    from steprun.core import Context


def _optional_str(raw: dict[str, Any], key: str) -> str | None:
    value = raw.get(key)
    if value is not None and (not isinstance(value, str) or not value):
        raise ValueError(f"'{key}' must be a non-empty string if present")
    return value


def _str_list(raw: dict[str, Any], key: str) -> list[str]:
    value = raw.get(key, [])
    if isinstance(value, list) and all(isinstance(x, str) for x in value):
        return list(value)
    raise ValueError(f"'{key}' must be a list of strings if present")


def _make_step(program: str, args: Sequence[str], raw: dict[str, Any], ctx: "Context") -> Step:
    """Apply the fields every kind shares: name, cwd, env, capture."""
    name = _optional_str(raw, "name")
    cwd = _optional_str(raw, "cwd")

    env = raw.get("env")
    if env is not None and (
        not isinstance(env, dict) or not all(isinstance(k, str) and isinstance(v, str) for k, v in env.items())
    ):
        raise ValueError("'env' must be a table of string values if present")
    merged = {**ctx.env, **(env or {})}

    capture = raw.get("capture", not ctx.options.stream)
    if not isinstance(capture, bool):
        raise ValueError("'capture' must be a boolean if present")

    return Step(
        program=program,
        args=tuple(args),
        cwd=resolve_dir(cwd, ctx.base_dir),
        env=merged or None,
        name=name,
        capture=capture,
    )


@dataclass(frozen=True)
class ExecKind:
    name: str = "builtin.exec"

    def kinds(self) -> Sequence[str]:
        return ("exec",)

    def from_dict(self, raw: dict[str, Any], ctx: "Context") -> Step:
        argv = raw.get("argv")
        if argv is not None:
            if "program" in raw or "args" in raw:
                raise ValueError("Use either 'argv' or 'program'/'args', not both")
            if not isinstance(argv, list) or not argv or not all(isinstance(x, str) for x in argv):
                raise ValueError("'argv' must be a non-empty list of strings")
            return _make_step(argv[0], argv[1:], raw, ctx)

        program = raw.get("program")
        if not isinstance(program, str) or not program:
            raise ValueError("exec step requires 'program' (or 'argv')")
        return _make_step(program, _str_list(raw, "args"), raw, ctx)


@dataclass(frozen=True)
class ShellKind:
    name: str = "builtin.shell.bash"

    def kinds(self) -> Sequence[str]:
        return ("shell",)

    def from_dict(self, raw: dict[str, Any], ctx: "Context") -> Step:
        script = raw.get("script")
        if isinstance(script, str):
            lines = [script]
        elif isinstance(script, list) and all(isinstance(x, str) for x in script):
            lines = list(script)
        else:
            raise ValueError("shell step requires 'script' (string or list of strings)")

        # Single bash session so stateful commands (e.g. `cd`) persist.
        body = "set -euo pipefail\n" + "\n".join(lines) + "\n"
        return _make_step("bash", ["-lc", body], raw, ctx)


@dataclass(frozen=True)
class CargoKind:
    name: str = "builtin.cargo"

    def kinds(self) -> Sequence[str]:
        return ("cargo",)

    def from_dict(self, raw: dict[str, Any], ctx: "Context") -> Step:
        subcommand = _optional_str(raw, "subcommand") or "build"

        release = raw.get("release", True)
        if not isinstance(release, bool):
            raise ValueError("'release' must be a boolean if present")

        args = [subcommand]
        if release:
            args.append("--release")
        features = _str_list(raw, "features")
        if features:
            args.extend(["--features", ",".join(features)])
        manifest_path = _optional_str(raw, "manifest_path")
        if manifest_path is not None:
            args.extend(["--manifest-path", manifest_path])
        args.extend(_str_list(raw, "extra_args"))
        return _make_step("cargo", args, raw, ctx)


@dataclass(frozen=True)
class CopyKind:
    name: str = "builtin.copy.cp"

    def kinds(self) -> Sequence[str]:
        return ("copy",)

    def from_dict(self, raw: dict[str, Any], ctx: "Context") -> Step:
        source = raw.get("source")
        target = raw.get("target")
        if not isinstance(source, str) or not source or not isinstance(target, str) or not target:
            raise ValueError("copy step requires 'source' and 'target'")
        return _make_step("cp", [source, target], raw, ctx)


def builtin_kinds() -> list[StepKind]:
    # Keep ordering stable for predictable behavior and logging.
    return [
        ExecKind(),
        ShellKind(),
        CargoKind(),
        CopyKind(),
    ]
