from __future__ import annotations

import os
import shlex
from pathlib import Path
from typing import Mapping, Sequence


def expand_path(s: str) -> Path:
    # Expand ~ and $VARS
    return Path(os.path.expandvars(os.path.expanduser(s)))


def resolve_dir(value: str | Path | None, base: Path) -> Path:
    """
    Resolve a working directory from a config value.

    Relative values are taken relative to `base` (usually the directory of the
    step file), absolute and ~-prefixed values are used as-is.
    """
    if value is None:
        return base
    p = expand_path(str(value))
    if not p.is_absolute():
        p = base / p
    return p


def sh_join(args: Sequence[str]) -> str:
    return shlex.join(list(args))


def merged_env(overrides: Mapping[str, str] | None) -> dict[str, str] | None:
    if overrides is None:
        return None
    env = dict(os.environ)
    env.update(dict(overrides))
    return env
