from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, Sequence

from steprun.model import Step

if TYPE_CHECKING:
    from steprun.core import Context


class StepKind(Protocol):
    """
    A step kind converts a raw step table (dict) into a Step.

    A kind must:
    - declare which `kind` names it handles
    - validate its own fields
    - produce a fully resolved Step (program, args, cwd, env)
    """

    name: str

    def kinds(self) -> Sequence[str]: ...

    def from_dict(self, raw: dict[str, Any], ctx: "Context") -> Step: ...
