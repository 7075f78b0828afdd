"""
Step kinds for steprun.

A kind turns one raw step table from a step file into an executable Step.
"""

from steprun.kinds.api import StepKind
from steprun.kinds.builtin import builtin_kinds
from steprun.kinds.factory import KindFactory

__all__ = ["StepKind", "KindFactory", "builtin_kinds"]
