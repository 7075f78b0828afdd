from __future__ import annotations

from typing import TYPE_CHECKING, Any, Iterable

from steprun.kinds.api import StepKind
from steprun.model import Step

if TYPE_CHECKING:
    from steprun.core import Context

DEFAULT_KIND = "exec"


class KindFactory:
    """
    Registry-backed factory. Core code does not know about concrete step kinds.
    """

    def __init__(self, kinds: Iterable[StepKind]) -> None:
        by_kind: dict[str, StepKind] = {}
        for kind in kinds:
            if not getattr(kind, "name", None):
                raise ValueError("Step kind is missing required attribute 'name'")
            names = kind.kinds()
            if not names:
                raise ValueError(f"Step kind {kind.name} must handle at least one kind name")
            for n in names:
                if not isinstance(n, str) or not n:
                    raise ValueError(f"Step kind {kind.name} returned invalid kind name: {n!r}")
                if n in by_kind:
                    other = by_kind[n]
                    raise ValueError(f"Duplicate handler for kind {n!r}: {other.name} and {kind.name}")
                by_kind[n] = kind
        self._by_kind = by_kind

    @property
    def registered_kinds(self) -> list[str]:
        return sorted(self._by_kind.keys())

    def from_dict(self, raw: dict[str, Any], ctx: "Context") -> Step:
        kind = raw.get("kind", DEFAULT_KIND)
        if not isinstance(kind, str) or not kind:
            raise ValueError("'kind' must be a non-empty string if present")

        handler = self._by_kind.get(kind)
        if handler is None:
            known = ", ".join(self.registered_kinds) if self._by_kind else "(none)"
            raise ValueError(f"Unknown step kind: {kind} (known: {known})")
        return handler.from_dict(raw, ctx)
