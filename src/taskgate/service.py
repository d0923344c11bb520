from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
import re

from taskgate.accounts import AccountDirectory, Principal
from taskgate.audit import AuditTrail, NoteDraft, render_notes
from taskgate.concurrency import check_expected_stage
from taskgate.domain.errors import Forbidden, InvalidTransition, NotFound, ValidationError
from taskgate.domain.models import (
    PLAN_EDITABLE_STAGES,
    Direction,
    OwnerChange,
    PermitKind,
    TaskStage,
    Transition,
    parse_stage,
    required_permit,
    resolve_transition,
)
from taskgate.notifications import NotificationDispatcher
from taskgate.observability import get_logger, set_request_context
from taskgate.permissions import clean_group_list, normalize_group, require_permission
from taskgate.repository import (
    ApplicationRecord,
    PlanRecord,
    TaskChange,
    TaskCreateRecord,
    TaskRepository,
)

_log = get_logger('taskgate.service')

_ACRONYM_RE = re.compile(r'^[A-Za-z0-9_-]{1,50}$')
_MAX_NAME_LENGTH = 255


@dataclass(frozen=True)
class ApplicationInput:
    acronym: str
    description: str = ''
    start_date: date | None = None
    end_date: date | None = None
    permit_create: list[str] = field(default_factory=list)
    permit_open: list[str] = field(default_factory=list)
    permit_todo: list[str] = field(default_factory=list)
    permit_doing: list[str] = field(default_factory=list)
    permit_done: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class PlanInput:
    app_acronym: str
    name: str
    start_date: date | None = None
    end_date: date | None = None


@dataclass(frozen=True)
class CreateTaskInput:
    app_acronym: str
    name: str
    description: str = ''
    plan: str | None = None
    notes: str | None = None


@dataclass(frozen=True)
class NoteView:
    seq: int
    author: str
    stage: TaskStage
    text: str
    created_at: str


@dataclass(frozen=True)
class TaskView:
    task_id: str
    app_acronym: str
    ordinal: int
    name: str
    description: str
    plan: str | None
    stage: TaskStage
    creator: str
    owner: str | None
    created_at: str
    updated_at: str
    notes: list[NoteView]

    @property
    def notes_text(self) -> str:
        return render_notes(
            {'created_at': n.created_at, 'author': n.author, 'stage': n.stage.value, 'text': n.text}
            for n in self.notes
        )


@dataclass(frozen=True)
class ApplicationView:
    acronym: str
    description: str
    start_date: date | None
    end_date: date | None
    r_number: int
    permit_create: list[str]
    permit_open: list[str]
    permit_todo: list[str]
    permit_doing: list[str]
    permit_done: list[str]


@dataclass(frozen=True)
class PlanView:
    app_acronym: str
    name: str
    start_date: date | None
    end_date: date | None


def validate_plan_window(
    start_date: date | None,
    end_date: date | None,
    *,
    app_start: date | None,
    app_end: date | None,
) -> None:
    if start_date and end_date and end_date < start_date:
        raise ValidationError('plan end date must not be before its start date', field='end_date')
    if start_date and app_start and start_date < app_start:
        raise ValidationError('plan cannot start before its application starts', field='start_date')
    if end_date and app_end and end_date > app_end:
        raise ValidationError('plan cannot end after its application ends', field='end_date')


def _required_text(value: str | None, *, field: str, max_length: int = _MAX_NAME_LENGTH) -> str:
    text = str(value or '').strip()
    if not text:
        raise ValidationError(f'{field} is required', field=field)
    if len(text) > max_length:
        raise ValidationError(f'{field} must be at most {max_length} characters', field=field)
    return text


def _optional_name(value: str | None) -> str | None:
    return str(value or '').strip() or None


class LifecycleService:
    def __init__(
        self,
        *,
        repository: TaskRepository,
        accounts: AccountDirectory,
        notifications: NotificationDispatcher | None = None,
        audit: AuditTrail | None = None,
        admin_group: str = 'admin',
    ):
        self.repository = repository
        self.accounts = accounts
        self.notifications = notifications
        self.audit = audit or AuditTrail()
        self.admin_group = admin_group

    # catalog

    def create_application(self, principal: Principal, payload: ApplicationInput) -> ApplicationView:
        self._require_admin(principal)
        record = self._application_record(payload)
        row = self.repository.create_application(record)
        _log.info('application created acronym=%s user=%s', record.acronym, principal.username)
        return self._to_application_view(row)

    def update_application(self, principal: Principal, acronym: str, payload: ApplicationInput) -> ApplicationView:
        self._require_admin(principal)
        current = self._require_application(acronym)
        record = self._application_record(
            ApplicationInput(
                acronym=current['acronym'],
                description=payload.description,
                start_date=payload.start_date,
                end_date=payload.end_date,
                permit_create=payload.permit_create,
                permit_open=payload.permit_open,
                permit_todo=payload.permit_todo,
                permit_doing=payload.permit_doing,
                permit_done=payload.permit_done,
            )
        )
        for plan in self.repository.list_plans(record.acronym):
            try:
                validate_plan_window(
                    plan['start_date'],
                    plan['end_date'],
                    app_start=record.start_date,
                    app_end=record.end_date,
                )
            except ValidationError as exc:
                raise ValidationError(
                    f"application window excludes plan {plan['name']}: {exc.message}",
                    field=exc.field,
                ) from exc
        row = self.repository.update_application(record)
        _log.info('application updated acronym=%s user=%s', record.acronym, principal.username)
        return self._to_application_view(row)

    def get_application(self, acronym: str) -> ApplicationView:
        return self._to_application_view(self._require_application(acronym))

    def list_applications(self) -> list[ApplicationView]:
        return [self._to_application_view(r) for r in self.repository.list_applications()]

    def create_plan(self, principal: Principal, payload: PlanInput) -> PlanView:
        application = self._require_application(payload.app_acronym, field='app_acronym')
        require_permission(
            username=principal.username,
            acting_groups=self.accounts.groups_for_user(principal.username),
            application=application,
            permit=PermitKind.OPEN,
            action='create plans',
        )
        name = _required_text(payload.name, field='name')
        validate_plan_window(
            payload.start_date,
            payload.end_date,
            app_start=application['start_date'],
            app_end=application['end_date'],
        )
        row = self.repository.create_plan(
            PlanRecord(
                app_acronym=application['acronym'],
                name=name,
                start_date=payload.start_date,
                end_date=payload.end_date,
            )
        )
        _log.info('plan created app=%s plan=%s user=%s', application['acronym'], name, principal.username)
        return self._to_plan_view(row)

    def list_plans(self, app_acronym: str) -> list[PlanView]:
        application = self._require_application(app_acronym)
        return [self._to_plan_view(r) for r in self.repository.list_plans(application['acronym'])]

    def get_plan(self, app_acronym: str, name: str) -> PlanView:
        row = self.repository.get_plan(str(app_acronym or '').strip(), str(name or '').strip())
        if row is None:
            raise NotFound(f'plan {name} not found in {app_acronym}', field='plan_name')
        return self._to_plan_view(row)

    # tasks

    def create_task(self, principal: Principal, payload: CreateTaskInput) -> TaskView:
        application = self._require_application(payload.app_acronym, field='Task_app_Acronym')
        name = _required_text(payload.name, field='Task_name')
        description = str(payload.description or '').strip()
        plan = _optional_name(payload.plan)
        if plan is not None and self.repository.get_plan(application['acronym'], plan) is None:
            raise NotFound(f"plan {plan} not found in {application['acronym']}", field='Task_plan')

        username = principal.username
        acting_groups = self.accounts.groups_for_user(username)
        set_request_context(task_id=None, username=username)

        def check(app_row: dict) -> None:
            require_permission(
                username=username,
                acting_groups=acting_groups,
                application=app_row,
                permit=PermitKind.CREATE,
                action='create tasks',
            )

        notes = [self.audit.created(username)]
        extra = self.audit.annotation(username, TaskStage.OPEN, payload.notes)
        if extra is not None:
            notes.append(extra)
        row = self.repository.create_task_record(
            TaskCreateRecord(
                app_acronym=application['acronym'],
                name=name,
                description=description,
                plan=plan,
                creator=username,
            ),
            notes=notes,
            check=check,
        )
        set_request_context(task_id=row['task_id'], username=username)
        _log.info('task created task_id=%s user=%s', row['task_id'], username)
        return self._to_task_view(row)

    def list_tasks(self, app_acronym: str, *, stage: str | TaskStage | None = None) -> list[TaskView]:
        application = self._require_application(app_acronym)
        stage_value = parse_stage(stage).value if stage not in (None, '') else None
        rows = self.repository.list_tasks(application['acronym'], stage=stage_value)
        return [self._to_task_view(r) for r in rows]

    def get_task(self, task_id: str) -> TaskView:
        row = self.repository.get_task(str(task_id or '').strip())
        if row is None:
            raise NotFound(f'task {task_id} not found', field='task_id')
        return self._to_task_view(row)

    def promote_task(
        self,
        principal: Principal,
        task_id: str,
        *,
        expected_state: str | None,
        notes: str | None = None,
    ) -> TaskView:
        return self._move(principal, task_id, Direction.PROMOTE, expected_state=expected_state, notes=notes)

    def demote_task(
        self,
        principal: Principal,
        task_id: str,
        *,
        expected_state: str | None,
        notes: str | None = None,
    ) -> TaskView:
        return self._move(principal, task_id, Direction.DEMOTE, expected_state=expected_state, notes=notes)

    def assign_plan(self, principal: Principal, task_id: str, plan_name: str | None) -> TaskView:
        return self.update_task(principal, task_id, change_plan=True, plan_name=plan_name)

    def add_note(self, principal: Principal, task_id: str, notes: str) -> TaskView:
        return self.update_task(principal, task_id, notes=notes)

    def update_task(
        self,
        principal: Principal,
        task_id: str,
        *,
        change_plan: bool = False,
        plan_name: str | None = None,
        notes: str | None = None,
    ) -> TaskView:
        """Reassign the plan and/or append a caller note in one transaction, plan entry first."""
        if not change_plan and notes is None:
            raise ValidationError('plan_name or notes is required', field='task_id')
        task_id = str(task_id or '').strip()
        username = principal.username
        set_request_context(task_id=task_id, username=username)

        new_plan = _optional_name(plan_name) if change_plan else None
        if new_plan is not None:
            current = self.repository.get_task(task_id)
            if current is None:
                raise NotFound(f'task {task_id} not found', field='task_id')
            if self.repository.get_plan(current['app_acronym'], new_plan) is None:
                raise NotFound(f"plan {new_plan} not found in {current['app_acronym']}", field='plan_name')
        acting_groups = self.accounts.groups_for_user(username)

        def mutation(task: dict, application: dict) -> TaskChange:
            stage = TaskStage(task['stage'])
            drafts: list[NoteDraft] = []
            plan = task['plan']
            if change_plan:
                if stage not in PLAN_EDITABLE_STAGES:
                    raise InvalidTransition(
                        f'plan can only be changed while the task is Open or Done (task is {stage.value})',
                        field='plan_name',
                        code='plan_locked',
                    )
                require_permission(
                    username=username,
                    acting_groups=acting_groups,
                    application=application,
                    permit=PermitKind.OPEN,
                    action=f'change the plan of task {task_id}',
                )
                if new_plan != plan:
                    drafts.append(self.audit.plan_changed(username, stage, plan, new_plan))
                    plan = new_plan
            if notes is not None:
                if stage == TaskStage.CLOSED:
                    raise InvalidTransition('closed tasks cannot be annotated', field='notes')
                require_permission(
                    username=username,
                    acting_groups=acting_groups,
                    application=application,
                    permit=required_permit(stage),
                    action=f'annotate task {task_id}',
                )
                note = self.audit.annotation(username, stage, notes, required=True)
                if note is not None:
                    drafts.append(note)
            return TaskChange(stage=task['stage'], owner=task['owner'], plan=plan, notes=drafts)

        row = self.repository.mutate_task(task_id, mutation)
        _log.info('task updated task_id=%s user=%s plan_changed=%s noted=%s', task_id, username, change_plan, notes is not None)
        return self._to_task_view(row)

    def _move(
        self,
        principal: Principal,
        task_id: str,
        direction: Direction,
        *,
        expected_state: str | None,
        notes: str | None,
    ) -> TaskView:
        task_id = str(task_id or '').strip()
        username = principal.username
        set_request_context(task_id=task_id, username=username)
        acting_groups = self.accounts.groups_for_user(username)
        applied: dict[str, object] = {}

        def mutation(task: dict, application: dict) -> TaskChange:
            stage = TaskStage(task['stage'])
            check_expected_stage(stage, expected_state)
            transition = resolve_transition(stage, direction)
            require_permission(
                username=username,
                acting_groups=acting_groups,
                application=application,
                permit=required_permit(stage),
                action=f'{direction.value} task {task_id}',
            )
            owner = task['owner']
            if transition.owner == OwnerChange.CLEAR:
                owner = None
            elif transition.owner == OwnerChange.ACTOR:
                owner = username
            drafts = [self.audit.transition(username, transition)]
            extra = self.audit.annotation(username, transition.target, notes)
            if extra is not None:
                drafts.append(extra)
            applied['transition'] = transition
            applied['application'] = application
            return TaskChange(stage=transition.target.value, owner=owner, plan=task['plan'], notes=drafts)

        row = self.repository.mutate_task(task_id, mutation)
        transition = applied['transition']
        application = applied['application']
        assert isinstance(transition, Transition) and isinstance(application, dict)
        _log.info(
            'task %s task_id=%s from=%s to=%s user=%s',
            transition.verb,
            task_id,
            transition.source.value,
            transition.target.value,
            username,
            extra={'app': row['app_acronym'], 'stage': transition.target.value},
        )
        if transition.notify:
            self._notify(row, application)
        return self._to_task_view(row)

    def _notify(self, task: dict, application: dict) -> None:
        if self.notifications is None:
            return
        try:
            self.notifications.dispatch(task, application)
        except Exception:
            _log.exception('notification dispatch failed task_id=%s', task.get('task_id'))

    # helpers

    def _require_admin(self, principal: Principal) -> None:
        groups = self.accounts.groups_for_user(principal.username)
        if normalize_group(self.admin_group) not in groups:
            raise Forbidden(f'user {principal.username} is not an administrator')

    def _require_application(self, acronym: str, *, field: str = 'app_acronym') -> dict:
        key = str(acronym or '').strip()
        if not key:
            raise ValidationError(f'{field} is required', field=field)
        row = self.repository.get_application(key)
        if row is None:
            raise NotFound(f'application {key} not found', field=field)
        return row

    @staticmethod
    def _application_record(payload: ApplicationInput) -> ApplicationRecord:
        acronym = str(payload.acronym or '').strip()
        if not _ACRONYM_RE.match(acronym):
            raise ValidationError(
                'acronym must be 1-50 letters, digits, underscores or hyphens',
                field='acronym',
            )
        if payload.start_date and payload.end_date and payload.end_date < payload.start_date:
            raise ValidationError('application end date must not be before its start date', field='end_date')
        permits = {
            permit.value: clean_group_list(getattr(payload, permit.value), field=permit.value)
            for permit in PermitKind
        }
        return ApplicationRecord(
            acronym=acronym,
            description=str(payload.description or '').strip(),
            start_date=payload.start_date,
            end_date=payload.end_date,
            **permits,
        )

    @staticmethod
    def _to_application_view(row: dict) -> ApplicationView:
        return ApplicationView(
            acronym=row['acronym'],
            description=row['description'],
            start_date=row['start_date'],
            end_date=row['end_date'],
            r_number=int(row.get('r_number', 0)),
            permit_create=list(row['permit_create']),
            permit_open=list(row['permit_open']),
            permit_todo=list(row['permit_todo']),
            permit_doing=list(row['permit_doing']),
            permit_done=list(row['permit_done']),
        )

    @staticmethod
    def _to_plan_view(row: dict) -> PlanView:
        return PlanView(
            app_acronym=row['app_acronym'],
            name=row['name'],
            start_date=row['start_date'],
            end_date=row['end_date'],
        )

    @staticmethod
    def _to_task_view(row: dict) -> TaskView:
        return TaskView(
            task_id=row['task_id'],
            app_acronym=row['app_acronym'],
            ordinal=int(row['ordinal']),
            name=row['name'],
            description=row['description'],
            plan=row.get('plan'),
            stage=TaskStage(row['stage']),
            creator=row['creator'],
            owner=row.get('owner'),
            created_at=str(row['created_at']),
            updated_at=str(row['updated_at']),
            notes=[
                NoteView(
                    seq=int(n['seq']),
                    author=n['author'],
                    stage=TaskStage(n['stage']),
                    text=n['text'],
                    created_at=str(n['created_at']),
                )
                for n in row.get('notes', [])
            ],
        )
