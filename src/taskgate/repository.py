from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from threading import RLock
from typing import Callable, Protocol

from taskgate.audit import NoteDraft
from taskgate.domain.errors import NotFound, StaleState, ValidationError
from taskgate.domain.models import PermitKind, TaskStage, format_task_id


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


PERMIT_FIELDS = tuple(p.value for p in PermitKind)


@dataclass(frozen=True)
class ApplicationRecord:
    acronym: str
    description: str
    start_date: date | None
    end_date: date | None
    permit_create: list[str]
    permit_open: list[str]
    permit_todo: list[str]
    permit_doing: list[str]
    permit_done: list[str]


@dataclass(frozen=True)
class PlanRecord:
    app_acronym: str
    name: str
    start_date: date | None
    end_date: date | None


@dataclass(frozen=True)
class TaskCreateRecord:
    app_acronym: str
    name: str
    description: str
    plan: str | None
    creator: str


@dataclass(frozen=True)
class TaskChange:
    """Outcome of a guarded mutation: the task's new columns plus the audit entries to append."""

    stage: str
    owner: str | None
    plan: str | None
    notes: list[NoteDraft] = field(default_factory=list)


TaskMutation = Callable[[dict, dict], TaskChange]
ApplicationCheck = Callable[[dict], None]


class TaskRepository(Protocol):
    def create_application(self, record: ApplicationRecord) -> dict:
        ...

    def update_application(self, record: ApplicationRecord) -> dict:
        ...

    def get_application(self, acronym: str) -> dict | None:
        ...

    def list_applications(self) -> list[dict]:
        ...

    def create_plan(self, record: PlanRecord) -> dict:
        ...

    def get_plan(self, app_acronym: str, name: str) -> dict | None:
        ...

    def list_plans(self, app_acronym: str) -> list[dict]:
        ...

    def create_task_record(
        self,
        record: TaskCreateRecord,
        *,
        notes: list[NoteDraft],
        check: ApplicationCheck | None = None,
    ) -> dict:
        """Allocate the next ordinal of the application and insert the task in ``Open``.

        *check* runs against the application row read in the same transaction
        and aborts the insert by raising.
        """
        ...

    def list_tasks(self, app_acronym: str, *, stage: str | None = None) -> list[dict]:
        ...

    def get_task(self, task_id: str) -> dict | None:
        ...

    def mutate_task(self, task_id: str, mutation: TaskMutation) -> dict:
        """Run *mutation* on freshly read task/application rows and persist its result atomically.

        The write is conditional on the stage that was read; a concurrent
        writer that committed in between surfaces as ``StaleState``.
        Any exception raised by *mutation* leaves the task untouched.
        """
        ...


def application_to_dict(record: ApplicationRecord) -> dict:
    return {
        'acronym': record.acronym,
        'description': record.description,
        'start_date': record.start_date,
        'end_date': record.end_date,
        **{name: list(getattr(record, name)) for name in PERMIT_FIELDS},
    }


class InMemoryTaskRepository:
    def __init__(self):
        self._lock = RLock()
        self.applications: dict[str, dict] = {}
        self.plans: dict[tuple[str, str], dict] = {}
        self.tasks: dict[str, dict] = {}
        self.notes: dict[str, list[dict]] = {}

    def create_application(self, record: ApplicationRecord) -> dict:
        with self._lock:
            if record.acronym in self.applications:
                raise ValidationError(
                    f'application {record.acronym} already exists',
                    field='acronym',
                    code='duplicate',
                )
            now = _utc_now_iso()
            row = {**application_to_dict(record), 'r_number': 0, 'created_at': now, 'updated_at': now}
            self.applications[record.acronym] = row
            return copy.deepcopy(row)

    def update_application(self, record: ApplicationRecord) -> dict:
        with self._lock:
            row = self.applications.get(record.acronym)
            if row is None:
                raise NotFound(f'application {record.acronym} not found', field='acronym')
            row.update(application_to_dict(record))
            row['updated_at'] = _utc_now_iso()
            return copy.deepcopy(row)

    def get_application(self, acronym: str) -> dict | None:
        with self._lock:
            row = self.applications.get(acronym)
            return copy.deepcopy(row) if row else None

    def list_applications(self) -> list[dict]:
        with self._lock:
            return [copy.deepcopy(row) for _, row in sorted(self.applications.items())]

    def create_plan(self, record: PlanRecord) -> dict:
        key = (record.app_acronym, record.name)
        with self._lock:
            if record.app_acronym not in self.applications:
                raise NotFound(f'application {record.app_acronym} not found', field='app_acronym')
            if key in self.plans:
                raise ValidationError(
                    f'plan {record.name} already exists in {record.app_acronym}',
                    field='name',
                    code='duplicate',
                )
            row = {
                'app_acronym': record.app_acronym,
                'name': record.name,
                'start_date': record.start_date,
                'end_date': record.end_date,
                'created_at': _utc_now_iso(),
            }
            self.plans[key] = row
            return dict(row)

    def get_plan(self, app_acronym: str, name: str) -> dict | None:
        with self._lock:
            row = self.plans.get((app_acronym, name))
            return dict(row) if row else None

    def list_plans(self, app_acronym: str) -> list[dict]:
        with self._lock:
            rows = [dict(r) for (app, _), r in self.plans.items() if app == app_acronym]
        rows.sort(key=lambda r: r['name'])
        return rows

    def create_task_record(
        self,
        record: TaskCreateRecord,
        *,
        notes: list[NoteDraft],
        check: ApplicationCheck | None = None,
    ) -> dict:
        with self._lock:
            application = self.applications.get(record.app_acronym)
            if application is None:
                raise NotFound(f'application {record.app_acronym} not found', field='Task_app_Acronym')
            if check is not None:
                check(copy.deepcopy(application))
            ordinal = int(application['r_number']) + 1
            task_id = format_task_id(record.app_acronym, ordinal)
            now = _utc_now_iso()
            row = {
                'task_id': task_id,
                'app_acronym': record.app_acronym,
                'ordinal': ordinal,
                'name': record.name,
                'description': record.description,
                'plan': record.plan,
                'stage': TaskStage.OPEN.value,
                'creator': record.creator,
                'owner': None,
                'created_at': now,
                'updated_at': now,
            }
            application['r_number'] = ordinal
            self.tasks[task_id] = row
            self.notes[task_id] = []
            self._append_notes(task_id, notes)
            return self._task_with_notes(task_id)

    def list_tasks(self, app_acronym: str, *, stage: str | None = None) -> list[dict]:
        with self._lock:
            rows = [
                dict(r)
                for r in self.tasks.values()
                if r['app_acronym'] == app_acronym and (stage is None or r['stage'] == stage)
            ]
        rows.sort(key=lambda r: r['ordinal'])
        return rows

    def get_task(self, task_id: str) -> dict | None:
        with self._lock:
            if task_id not in self.tasks:
                return None
            return self._task_with_notes(task_id)

    def mutate_task(self, task_id: str, mutation: TaskMutation) -> dict:
        with self._lock:
            row = self.tasks.get(task_id)
            if row is None:
                raise NotFound(f'task {task_id} not found', field='task_id')
            application = self.applications.get(row['app_acronym'])
            if application is None:
                raise NotFound(f'application {row["app_acronym"]} not found')
            read_stage = row['stage']
            change = mutation(dict(row), copy.deepcopy(application))
            if row['stage'] != read_stage:
                raise StaleState('task was modified concurrently', actual=row['stage'])
            row['stage'] = change.stage
            row['owner'] = change.owner
            row['plan'] = change.plan
            row['updated_at'] = _utc_now_iso()
            self._append_notes(task_id, change.notes)
            return self._task_with_notes(task_id)

    def _append_notes(self, task_id: str, notes: list[NoteDraft]) -> None:
        log = self.notes[task_id]
        for draft in notes:
            log.append(
                {
                    'seq': len(log) + 1,
                    'task_id': task_id,
                    'author': draft.author,
                    'stage': draft.stage.value,
                    'text': draft.text,
                    'created_at': draft.created_at.isoformat(),
                }
            )

    def _task_with_notes(self, task_id: str) -> dict:
        row = dict(self.tasks[task_id])
        row['notes'] = [dict(n) for n in self.notes.get(task_id, [])]
        return row
