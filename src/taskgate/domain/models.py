from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from taskgate.domain.errors import InvalidTransition, ValidationError


class TaskStage(str, Enum):
    OPEN = 'Open'
    TODO = 'To-Do'
    DOING = 'Doing'
    DONE = 'Done'
    CLOSED = 'Closed'


class Direction(str, Enum):
    PROMOTE = 'promote'
    DEMOTE = 'demote'


class PermitKind(str, Enum):
    CREATE = 'permit_create'
    OPEN = 'permit_open'
    TODO = 'permit_todo'
    DOING = 'permit_doing'
    DONE = 'permit_done'


class OwnerChange(str, Enum):
    KEEP = 'keep'
    CLEAR = 'clear'
    ACTOR = 'actor'


PERMIT_BY_STAGE: dict[TaskStage, PermitKind] = {
    TaskStage.OPEN: PermitKind.OPEN,
    TaskStage.TODO: PermitKind.TODO,
    TaskStage.DOING: PermitKind.DOING,
    TaskStage.DONE: PermitKind.DONE,
}

PLAN_EDITABLE_STAGES = frozenset({TaskStage.OPEN, TaskStage.DONE})

_STAGE_LOOKUP = {stage.value.lower(): stage for stage in TaskStage}
_STAGE_LOOKUP.update({'todo': TaskStage.TODO, 'to_do': TaskStage.TODO})


@dataclass(frozen=True)
class Transition:
    direction: Direction
    source: TaskStage
    target: TaskStage
    owner: OwnerChange
    verb: str
    notify: bool = False

    @property
    def note(self) -> str:
        return f'Task {self.verb}: {self.source.value} -> {self.target.value}.'


TRANSITIONS: dict[tuple[TaskStage, Direction], Transition] = {
    (t.source, t.direction): t
    for t in (
        Transition(Direction.PROMOTE, TaskStage.OPEN, TaskStage.TODO, OwnerChange.CLEAR, 'released'),
        Transition(Direction.PROMOTE, TaskStage.TODO, TaskStage.DOING, OwnerChange.ACTOR, 'taken'),
        Transition(
            Direction.PROMOTE,
            TaskStage.DOING,
            TaskStage.DONE,
            OwnerChange.KEEP,
            'submitted for review',
            notify=True,
        ),
        Transition(Direction.PROMOTE, TaskStage.DONE, TaskStage.CLOSED, OwnerChange.KEEP, 'approved'),
        Transition(Direction.DEMOTE, TaskStage.DOING, TaskStage.TODO, OwnerChange.CLEAR, 'returned'),
        Transition(Direction.DEMOTE, TaskStage.DONE, TaskStage.DOING, OwnerChange.KEEP, 'rejected'),
    )
}


def parse_stage(value: str | TaskStage, *, field: str = 'state') -> TaskStage:
    """Parse external stage input case-insensitively."""
    if isinstance(value, TaskStage):
        return value
    text = str(value or '').strip().lower()
    stage = _STAGE_LOOKUP.get(text)
    if stage is None:
        raise ValidationError(f'unknown stage: {value!r}', field=field)
    return stage


def resolve_transition(stage: TaskStage, direction: Direction) -> Transition:
    transition = TRANSITIONS.get((stage, direction))
    if transition is None:
        raise InvalidTransition(f'cannot {direction.value} a task in stage {stage.value}')
    return transition


def can_transition(stage: TaskStage, direction: Direction) -> bool:
    return (stage, direction) in TRANSITIONS


def required_permit(stage: TaskStage) -> PermitKind:
    """Permit set gating any action on a task sitting in *stage*."""
    permit = PERMIT_BY_STAGE.get(stage)
    if permit is None:
        raise InvalidTransition(f'no action is permitted on a task in stage {stage.value}')
    return permit


def format_task_id(app_acronym: str, ordinal: int) -> str:
    return f'{app_acronym}_{int(ordinal)}'
