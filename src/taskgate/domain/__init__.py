from taskgate.domain.errors import (
    Forbidden,
    InvalidTransition,
    LifecycleError,
    NotFound,
    StaleState,
    ValidationError,
)
from taskgate.domain.models import (
    Direction,
    OwnerChange,
    PermitKind,
    TaskStage,
    Transition,
    can_transition,
    parse_stage,
    required_permit,
    resolve_transition,
)

__all__ = [
    'Direction',
    'Forbidden',
    'InvalidTransition',
    'LifecycleError',
    'NotFound',
    'OwnerChange',
    'PermitKind',
    'StaleState',
    'TaskStage',
    'Transition',
    'ValidationError',
    'can_transition',
    'parse_stage',
    'required_permit',
    'resolve_transition',
]
