from __future__ import annotations

from taskgate.domain.errors import StaleState, ValidationError
from taskgate.domain.models import TaskStage


def check_expected_stage(current: TaskStage | str, expected: str | None) -> None:
    """Reject the mutation unless *expected* matches the stage just read from storage.

    The comparison is exact: ``expected`` must equal the canonical stage label.
    """
    if expected is None:
        raise ValidationError('expected_state is required', field='expected_state')
    actual = current.value if isinstance(current, TaskStage) else str(current)
    if str(expected) != actual:
        raise StaleState(
            f'task stage changed: expected {expected!r}, found {actual!r}',
            expected=str(expected),
            actual=actual,
        )
