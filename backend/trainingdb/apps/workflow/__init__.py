from trainingdb.errors import TransitionError

from .engine import apply_transition, check_transition
from .registry import WORKFLOWS

__all__ = ["TransitionError", "WORKFLOWS", "apply_transition", "check_transition"]
