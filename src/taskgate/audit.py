from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, Mapping

from taskgate.domain.errors import ValidationError
from taskgate.domain.models import TaskStage, Transition

CREATED_NOTE = 'Task created.'
MAX_NOTE_LENGTH = 4000


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class NoteDraft:
    """One audit entry waiting to be appended; the repository assigns its sequence number."""

    author: str
    stage: TaskStage
    text: str
    created_at: datetime


class AuditTrail:
    def __init__(self, *, clock: Callable[[], datetime] | None = None):
        self._clock = clock or _utc_now

    def _draft(self, author: str, stage: TaskStage, text: str) -> NoteDraft:
        created_at = self._clock()
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        return NoteDraft(author=author, stage=stage, text=text, created_at=created_at.astimezone(timezone.utc))

    def created(self, author: str) -> NoteDraft:
        return self._draft(author, TaskStage.OPEN, CREATED_NOTE)

    def transition(self, author: str, transition: Transition) -> NoteDraft:
        return self._draft(author, transition.target, transition.note)

    def plan_changed(self, author: str, stage: TaskStage, old_plan: str | None, new_plan: str | None) -> NoteDraft:
        text = f'Plan changed from {old_plan or "(none)"} to {new_plan or "(none)"}.'
        return self._draft(author, stage, text)

    def annotation(self, author: str, stage: TaskStage, text: str | None, *, required: bool = False) -> NoteDraft | None:
        body = str(text or '').strip()
        if not body:
            if required:
                raise ValidationError('notes must not be empty', field='notes')
            return None
        if len(body) > MAX_NOTE_LENGTH:
            raise ValidationError(f'notes must be at most {MAX_NOTE_LENGTH} characters', field='notes')
        return self._draft(author, stage, body)


def render_notes(entries: Iterable[Mapping]) -> str:
    """Render the note log as one text block, oldest entry first."""
    blocks: list[str] = []
    for entry in entries:
        header = f"[{entry['created_at']}] {entry['author']} ({entry['stage']})"
        blocks.append(f"{header}\n{entry['text']}")
    return '\n\n'.join(blocks)
