from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from json import JSONDecodeError

import yaml

try:
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - Python < 3.11
    import tomli as tomllib

# Top-level keys that configure the whole file rather than describe a step.
_META_KEYS = {"version", "description", "cwd", "env"}


@dataclass(frozen=True)
class LoadedConfig:
    path: Path
    version: int | None
    description: str | None
    steps: list[dict[str, Any]]
    cwd: str | None = None
    env: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class LoadedConfigParts:
    version: int | None = None
    description: str | None = None
    cwd: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    steps: list[Any] = field(default_factory=list)


def _require_int(value: Any, *, what: str) -> int:
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValueError(f"'{what}' must be an integer if present")
    return value


def _require_env(value: Any, *, what: str) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in value.items()
    ):
        raise ValueError(f"'{what}' must be a table of string values")
    return dict(value)


def _as_table_list(value: Any, *, what: str) -> list[dict[str, Any]]:
    if value is None:
        return []
    if isinstance(value, dict):
        return [value]
    if isinstance(value, list) and all(isinstance(x, dict) for x in value):
        return value
    raise ValueError(f"'{what}' must be a table or array-of-tables")


def _tables_to_steps(kind: str, tables: list[dict[str, Any]]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for t in tables:
        existing_kind = t.get("kind")
        if existing_kind is not None and existing_kind != kind:
            raise ValueError(f"Step table for [[{kind}]] must not set kind={existing_kind!r}")
        step = dict(t)
        step["kind"] = kind
        out.append(step)
    return out


def _read_meta(obj: dict[str, Any]) -> tuple[int | None, str | None, str | None, dict[str, str]]:
    version = obj.get("version")
    description = obj.get("description")
    cwd = obj.get("cwd")
    if version is not None:
        _require_int(version, what="version")
    if description is not None and not isinstance(description, str):
        raise ValueError("'description' must be a string if present")
    if cwd is not None and (not isinstance(cwd, str) or not cwd):
        raise ValueError("'cwd' must be a non-empty string if present")
    env = _require_env(obj.get("env"), what="env")
    return version, description, cwd, env


def _explicit_steps(obj: dict[str, Any]) -> list[Any] | None:
    steps = obj.get("steps")
    if not isinstance(steps, list):
        return None
    extra_keys = set(obj.keys()) - _META_KEYS - {"steps"}
    if extra_keys:
        extra = ", ".join(sorted(extra_keys))
        raise ValueError(f"When using 'steps', no other top-level step tables are allowed (found: {extra}).")
    return steps


def _normalize_top_level(obj: Any) -> LoadedConfigParts:
    if isinstance(obj, list):
        return LoadedConfigParts(steps=obj)
    if isinstance(obj, dict):
        version, description, cwd, env = _read_meta(obj)

        # Style A: explicit steps list (JSON/YAML list, or TOML [[steps]]).
        steps = _explicit_steps(obj)
        if steps is not None:
            return LoadedConfigParts(version, description, cwd, env, steps)

        # Style B: one array-of-tables per kind, e.g. [[cargo]], [[copy]].
        out: list[dict[str, Any]] = []
        for key, value in obj.items():
            if key in _META_KEYS:
                continue
            out.extend(_tables_to_steps(key, _as_table_list(value, what=key)))
        return LoadedConfigParts(version, description, cwd, env, out)
    raise ValueError("Config must be a list of step objects or {version, steps:[...]}.")


def _load_json(text: str, path: Path) -> Any:
    try:
        return json.loads(text)
    except JSONDecodeError as e:
        raise ValueError(
            f"Invalid JSON in {path} at line {e.lineno}, column {e.colno}: {e.msg}"
        ) from e


def _load_toml(text: str, path: Path) -> Any:
    try:
        return tomllib.loads(text)
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Invalid TOML in {path}: {e}") from e


_TOML_AOT_HEADER_RE = re.compile(r"^\s*\[\[\s*([A-Za-z0-9_-]+)\s*\]\]\s*$", re.MULTILINE)


def _normalize_toml_top_level(*, raw: Any, text: str, path: Path) -> LoadedConfigParts:
    """
    TOML-specific normalization that preserves the *appearance order* of array-of-tables.

    tomllib groups all [[cargo]] tables together under key "cargo", which loses
    interleaving like:
        [[cargo]] ...
        [[copy]] ...
        [[cargo]] ...

    The step sequence is rebuilt by scanning the TOML text for [[...]] headers in
    order and consuming the corresponding tables from the parsed structure.
    """
    if not isinstance(raw, dict):
        raise ValueError("Config must be a list of step objects or {version, steps:[...]}.")

    version, description, cwd, env = _read_meta(raw)

    # Style A: explicit list ([[steps]]).
    steps = _explicit_steps(raw)
    if steps is not None:
        return LoadedConfigParts(version, description, cwd, env, steps)

    # Style B: order-preserving kind tables ([[exec]], [[cargo]], [[copy]], ...).
    headers = _TOML_AOT_HEADER_RE.findall(text)
    counters: dict[str, int] = {}
    out: list[dict[str, Any]] = []

    for header in headers:
        if header == "steps":
            raise ValueError(f"{path}: do not mix [[steps]] with kind tables like [[cargo]]; choose one style.")

        tables_obj = raw.get(header)
        if not isinstance(tables_obj, list) or not all(isinstance(x, dict) for x in tables_obj):
            raise ValueError(f"{path}: [[{header}]] does not parse as an array-of-tables")

        idx = counters.get(header, 0)
        if idx >= len(tables_obj):
            raise ValueError(f"{path}: too many [[{header}]] headers (parsed only {len(tables_obj)} tables)")
        counters[header] = idx + 1
        out.extend(_tables_to_steps(header, [tables_obj[idx]]))

    # Every parsed array-of-tables must have been seen by the header scan.
    for key, value in raw.items():
        if key in _META_KEYS:
            continue
        if isinstance(value, list) and all(isinstance(x, dict) for x in value):
            used = counters.get(key, 0)
            if used != len(value):
                raise ValueError(f"{path}: parsed {len(value)} [[{key}]] tables but found {used} headers in file")
        elif isinstance(value, dict):
            # Only top-level [[kind]] headers are scanned; [[group.kind]] would lose its order.
            raise ValueError(f"{path}: nested step tables under {key!r} are not supported; use top-level [[kind]] tables")
        else:
            raise ValueError(f"{path}: unexpected top-level key {key!r}")

    return LoadedConfigParts(version, description, cwd, env, out)


def _load_yaml(text: str, path: Path) -> Any:
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as e:
        mark = getattr(e, "problem_mark", None)
        if mark is not None:
            raise ValueError(
                f"Invalid YAML in {path} at line {mark.line + 1}, column {mark.column + 1}: {e}"
            ) from e
        raise ValueError(f"Invalid YAML in {path}: {e}") from e


def load_config_file(path: Path) -> LoadedConfig:
    text = path.read_text(encoding="utf-8")
    suffix = path.suffix.lower()

    if suffix == ".json":
        parts = _normalize_top_level(_load_json(text, path))
    elif suffix == ".toml":
        parts = _normalize_toml_top_level(raw=_load_toml(text, path), text=text, path=path)
    elif suffix in (".yaml", ".yml"):
        parts = _normalize_top_level(_load_yaml(text, path))
    else:
        raise ValueError(
            f"Unsupported config format for {path} (expected .json, .toml, .yaml, .yml)."
        )

    normalized: list[dict[str, Any]] = []
    for item in parts.steps:
        if not isinstance(item, dict):
            raise ValueError(f"Step must be an object in {path}")
        normalized.append(item)
    return LoadedConfig(
        path=path,
        version=parts.version,
        description=parts.description,
        steps=normalized,
        cwd=parts.cwd,
        env=parts.env,
    )
