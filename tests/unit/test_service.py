from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import date

import pytest

from taskgate.accounts import InMemoryAccountDirectory, Principal
from taskgate.domain.errors import Forbidden, InvalidTransition, NotFound, StaleState, ValidationError
from taskgate.domain.models import TaskStage
from taskgate.repository import InMemoryTaskRepository
from taskgate.service import ApplicationInput, CreateTaskInput, LifecycleService, PlanInput

ROOT = Principal('root')
ALICE = Principal('alice')
BOB = Principal('bob')
CAROL = Principal('carol')


class RecordingDispatcher:
    def __init__(self):
        self.calls: list[tuple[dict, dict]] = []

    def dispatch(self, task: dict, application: dict) -> None:
        self.calls.append((task, application))


class ExplodingDispatcher:
    def dispatch(self, task: dict, application: dict) -> None:
        raise RuntimeError('smtp down')


def _app_input(**overrides) -> ApplicationInput:
    values = dict(
        acronym='APP1',
        description='demo',
        permit_create=['PM'],
        permit_open=['PM'],
        permit_todo=['devs'],
        permit_doing=['devs'],
        permit_done=['leads'],
    )
    values.update(overrides)
    return ApplicationInput(**values)


def build_service(dispatcher=None):
    accounts = InMemoryAccountDirectory()
    accounts.add_account('root', groups=['Admin'])
    accounts.add_account('alice', groups=['pm'], email='alice@example.com')
    accounts.add_account('bob', groups=['devs'], email='bob@example.com')
    accounts.add_account('carol', groups=['leads'], email='carol@example.com')
    repo = InMemoryTaskRepository()
    service = LifecycleService(repository=repo, accounts=accounts, notifications=dispatcher)
    service.create_application(ROOT, _app_input())
    service.create_plan(ALICE, PlanInput(app_acronym='APP1', name='Sprint-1'))
    return service, repo, accounts


def _new_task(service: LifecycleService, **kwargs):
    return service.create_task(ALICE, CreateTaskInput(app_acronym='APP1', name='Write docs', **kwargs))


def _walk_to(service: LifecycleService, task_id: str, stage: TaskStage) -> None:
    steps = [
        (TaskStage.OPEN, ALICE),
        (TaskStage.TODO, BOB),
        (TaskStage.DOING, BOB),
        (TaskStage.DONE, CAROL),
    ]
    for current, actor in steps:
        if current == stage:
            return
        service.promote_task(actor, task_id, expected_state=current.value)


def test_create_task_starts_open_with_creation_note():
    service, _, _ = build_service()

    task = _new_task(service, description='  first  ', notes='kickoff')

    assert task.task_id == 'APP1_1'
    assert task.stage == TaskStage.OPEN
    assert task.owner is None
    assert task.creator == 'alice'
    assert task.description == 'first'
    assert [n.text for n in task.notes] == ['Task created.', 'kickoff']
    assert [n.seq for n in task.notes] == [1, 2]
    assert service.get_application('APP1').r_number == 1


def test_create_task_ids_increase_per_application():
    service, _, _ = build_service()
    ids = [_new_task(service).task_id for _ in range(3)]
    assert ids == ['APP1_1', 'APP1_2', 'APP1_3']


def test_create_task_requires_permit_create_and_allocates_nothing_on_refusal():
    service, _, _ = build_service()

    with pytest.raises(Forbidden):
        service.create_task(BOB, CreateTaskInput(app_acronym='APP1', name='nope'))

    assert service.get_application('APP1').r_number == 0
    assert service.list_tasks('APP1') == []


def test_create_task_unknown_plan_or_application_is_not_found():
    service, _, _ = build_service()

    with pytest.raises(NotFound) as exc:
        _new_task(service, plan='Sprint-9')
    assert exc.value.field == 'Task_plan'

    with pytest.raises(NotFound):
        service.create_task(ALICE, CreateTaskInput(app_acronym='NOPE', name='x'))


def test_full_lifecycle_sets_owner_on_take_and_closes():
    service, _, _ = build_service()
    task_id = _new_task(service).task_id

    released = service.promote_task(ALICE, task_id, expected_state='Open')
    assert released.stage == TaskStage.TODO
    assert released.owner is None

    taken = service.promote_task(BOB, task_id, expected_state='To-Do')
    assert taken.stage == TaskStage.DOING
    assert taken.owner == 'bob'

    done = service.promote_task(BOB, task_id, expected_state='Doing', notes='ready')
    assert done.stage == TaskStage.DONE
    assert done.owner == 'bob'

    closed = service.promote_task(CAROL, task_id, expected_state='Done')
    assert closed.stage == TaskStage.CLOSED
    assert closed.owner == 'bob'
    assert [n.text for n in closed.notes] == [
        'Task created.',
        'Task released: Open -> To-Do.',
        'Task taken: To-Do -> Doing.',
        'Task submitted for review: Doing -> Done.',
        'ready',
        'Task approved: Done -> Closed.',
    ]
    assert closed.notes[-1].stage == TaskStage.CLOSED

    with pytest.raises(InvalidTransition):
        service.promote_task(CAROL, task_id, expected_state='Closed')
    with pytest.raises(InvalidTransition):
        service.demote_task(CAROL, task_id, expected_state='Closed')


def test_promote_then_demote_restores_stage_and_owner_and_grows_notes():
    service, _, _ = build_service()
    task_id = _new_task(service).task_id
    _walk_to(service, task_id, TaskStage.TODO)
    before = service.get_task(task_id)

    service.promote_task(BOB, task_id, expected_state='To-Do')
    after = service.demote_task(BOB, task_id, expected_state='Doing')

    assert after.stage == before.stage == TaskStage.TODO
    assert after.owner == before.owner is None
    assert len(after.notes) == len(before.notes) + 2
    assert after.notes[-1].text == 'Task returned: Doing -> To-Do.'


def test_reject_keeps_owner():
    service, _, _ = build_service()
    task_id = _new_task(service).task_id
    _walk_to(service, task_id, TaskStage.DONE)

    rejected = service.demote_task(CAROL, task_id, expected_state='Done', notes='needs tests')

    assert rejected.stage == TaskStage.DOING
    assert rejected.owner == 'bob'
    assert rejected.notes[-1].text == 'needs tests'
    assert rejected.notes[-1].stage == TaskStage.DOING


def test_demote_from_open_or_todo_is_invalid():
    service, _, _ = build_service()
    task_id = _new_task(service).task_id

    with pytest.raises(InvalidTransition):
        service.demote_task(ALICE, task_id, expected_state='Open')
    _walk_to(service, task_id, TaskStage.TODO)
    with pytest.raises(InvalidTransition):
        service.demote_task(BOB, task_id, expected_state='To-Do')


def test_stale_and_forbidden_calls_mutate_nothing():
    service, _, _ = build_service()
    task_id = _new_task(service).task_id
    before = service.get_task(task_id)

    with pytest.raises(StaleState):
        service.promote_task(ALICE, task_id, expected_state='To-Do')
    with pytest.raises(Forbidden):
        service.promote_task(BOB, task_id, expected_state='Open')
    with pytest.raises(ValidationError):
        service.promote_task(ALICE, task_id, expected_state=None)

    assert service.get_task(task_id) == before


def test_forbidden_demote_mutates_nothing():
    service, _, _ = build_service()
    task_id = _new_task(service).task_id
    _walk_to(service, task_id, TaskStage.DONE)
    before = service.get_task(task_id)

    with pytest.raises(Forbidden):
        service.demote_task(BOB, task_id, expected_state='Done', notes='not yet')

    assert service.get_task(task_id) == before


def test_stale_demote_mutates_nothing():
    service, _, _ = build_service()
    task_id = _new_task(service).task_id
    _walk_to(service, task_id, TaskStage.DONE)
    before = service.get_task(task_id)

    with pytest.raises(StaleState) as exc:
        service.demote_task(CAROL, task_id, expected_state='Doing')

    assert exc.value.actual == 'Done'
    assert service.get_task(task_id) == before


def test_concurrent_promotes_only_one_wins():
    service, _, accounts = build_service()
    accounts.add_account('dave', groups=['devs'], email='dave@example.com')
    task_id = _new_task(service).task_id
    _walk_to(service, task_id, TaskStage.TODO)

    def take(principal: Principal):
        try:
            return service.promote_task(principal, task_id, expected_state='To-Do')
        except StaleState as exc:
            return exc

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = list(pool.map(take, [BOB, Principal('dave')]))

    winners = [r for r in results if not isinstance(r, Exception)]
    losers = [r for r in results if isinstance(r, Exception)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert losers[0].actual == 'Doing'

    final = service.get_task(task_id)
    assert final.stage == TaskStage.DOING
    assert final.owner == winners[0].owner
    assert [n.text for n in final.notes].count('Task taken: To-Do -> Doing.') == 1


def test_stale_check_runs_before_permission_check():
    service, _, _ = build_service()
    task_id = _new_task(service).task_id
    with pytest.raises(StaleState):
        service.promote_task(BOB, task_id, expected_state='Doing')


def test_group_changes_apply_to_the_next_call():
    service, _, accounts = build_service()
    task_id = _new_task(service).task_id

    with pytest.raises(Forbidden):
        service.promote_task(BOB, task_id, expected_state='Open')
    accounts.set_groups('bob', ['devs', 'PM'])
    moved = service.promote_task(BOB, task_id, expected_state='Open')
    assert moved.stage == TaskStage.TODO


def test_inactive_account_has_no_permissions():
    service, _, accounts = build_service()
    task_id = _new_task(service).task_id
    accounts.add_account('alice', groups=['pm'], is_active=False)
    with pytest.raises(Forbidden):
        service.promote_task(ALICE, task_id, expected_state='Open')


def test_plan_change_allowed_while_open_and_rejected_while_doing():
    service, _, _ = build_service()
    task_id = _new_task(service).task_id

    updated = service.assign_plan(ALICE, task_id, 'Sprint-1')
    assert updated.plan == 'Sprint-1'
    assert updated.notes[-1].text == 'Plan changed from (none) to Sprint-1.'
    assert updated.notes[-1].stage == TaskStage.OPEN

    _walk_to(service, task_id, TaskStage.DOING)
    with pytest.raises(InvalidTransition) as exc:
        service.assign_plan(ALICE, task_id, None)
    assert exc.value.code == 'plan_locked'
    assert service.get_task(task_id).plan == 'Sprint-1'


def test_plan_change_while_done_needs_permit_open():
    service, _, _ = build_service()
    task_id = _new_task(service, plan='Sprint-1').task_id
    _walk_to(service, task_id, TaskStage.DONE)

    with pytest.raises(Forbidden):
        service.assign_plan(CAROL, task_id, None)
    cleared = service.assign_plan(ALICE, task_id, None)
    assert cleared.plan is None
    assert cleared.notes[-1].text == 'Plan changed from Sprint-1 to (none).'


def test_plan_change_to_same_plan_writes_no_entry():
    service, _, _ = build_service()
    task_id = _new_task(service, plan='Sprint-1').task_id
    before = service.get_task(task_id)
    after = service.assign_plan(ALICE, task_id, 'Sprint-1')
    assert len(after.notes) == len(before.notes)


def test_plan_change_to_unknown_plan_is_not_found():
    service, _, _ = build_service()
    task_id = _new_task(service).task_id
    with pytest.raises(NotFound):
        service.assign_plan(ALICE, task_id, 'Sprint-9')


def test_update_task_plan_and_note_in_one_call_orders_plan_entry_first():
    service, _, _ = build_service()
    task_id = _new_task(service).task_id
    updated = service.update_task(ALICE, task_id, change_plan=True, plan_name='Sprint-1', notes='scheduled')
    assert [n.text for n in updated.notes[-2:]] == ['Plan changed from (none) to Sprint-1.', 'scheduled']


def test_update_task_without_changes_is_validation_error():
    service, _, _ = build_service()
    task_id = _new_task(service).task_id
    with pytest.raises(ValidationError):
        service.update_task(ALICE, task_id)


def test_add_note_uses_current_stage_permit():
    service, _, _ = build_service()
    task_id = _new_task(service).task_id
    _walk_to(service, task_id, TaskStage.DOING)

    noted = service.add_note(BOB, task_id, 'half way')
    assert noted.notes[-1].text == 'half way'
    assert noted.notes[-1].author == 'bob'
    assert noted.notes[-1].stage == TaskStage.DOING
    with pytest.raises(Forbidden):
        service.add_note(ALICE, task_id, 'nudge')
    with pytest.raises(ValidationError):
        service.add_note(BOB, task_id, '   ')


def test_closed_task_cannot_be_annotated():
    service, _, _ = build_service()
    task_id = _new_task(service).task_id
    _walk_to(service, task_id, TaskStage.DONE)
    service.promote_task(CAROL, task_id, expected_state='Done')

    with pytest.raises(InvalidTransition):
        service.add_note(CAROL, task_id, 'late comment')


def test_notification_dispatched_only_on_submit_for_review():
    dispatcher = RecordingDispatcher()
    service, _, _ = build_service(dispatcher)
    task_id = _new_task(service).task_id

    _walk_to(service, task_id, TaskStage.DOING)
    assert dispatcher.calls == []
    service.promote_task(BOB, task_id, expected_state='Doing')
    assert len(dispatcher.calls) == 1
    task, application = dispatcher.calls[0]
    assert task['task_id'] == task_id
    assert task['stage'] == 'Done'
    assert application['permit_done'] == ['leads']

    service.demote_task(CAROL, task_id, expected_state='Done')
    service.promote_task(BOB, task_id, expected_state='Doing')
    service.promote_task(CAROL, task_id, expected_state='Done')
    assert len(dispatcher.calls) == 2


def test_notification_failure_does_not_undo_transition():
    service, _, _ = build_service(ExplodingDispatcher())
    task_id = _new_task(service).task_id
    _walk_to(service, task_id, TaskStage.DOING)

    done = service.promote_task(BOB, task_id, expected_state='Doing')

    assert done.stage == TaskStage.DONE
    assert service.get_task(task_id).stage == TaskStage.DONE


def test_list_tasks_filters_by_stage():
    service, _, _ = build_service()
    first = _new_task(service).task_id
    _new_task(service)
    service.promote_task(ALICE, first, expected_state='Open')

    assert [t.task_id for t in service.list_tasks('APP1', stage='to-do')] == [first]
    assert len(service.list_tasks('APP1', stage='Open')) == 1
    assert len(service.list_tasks('APP1')) == 2
    with pytest.raises(ValidationError):
        service.list_tasks('APP1', stage='Archived')


def test_notes_text_renders_log():
    service, _, _ = build_service()
    task = _new_task(service)
    assert task.notes_text.startswith('[')
    assert 'alice (Open)\nTask created.' in task.notes_text


def test_application_catalog_requires_admin_and_rejects_duplicates():
    service, _, _ = build_service()

    with pytest.raises(Forbidden):
        service.create_application(ALICE, _app_input(acronym='APP2'))
    with pytest.raises(ValidationError) as exc:
        service.create_application(ROOT, _app_input())
    assert exc.value.code == 'duplicate'
    with pytest.raises(ValidationError):
        service.create_application(ROOT, _app_input(acronym='bad acronym!'))
    with pytest.raises(ValidationError):
        service.create_application(ROOT, _app_input(acronym='APP3', permit_done=[]))

    assert [a.acronym for a in service.list_applications()] == ['APP1']


def test_update_application_replaces_permits():
    service, _, _ = build_service()
    task_id = _new_task(service).task_id

    service.update_application(ROOT, 'APP1', _app_input(permit_open=['devs']))

    moved = service.promote_task(BOB, task_id, expected_state='Open')
    assert moved.stage == TaskStage.TODO


def test_update_application_window_must_contain_existing_plans():
    service, _, _ = build_service()
    service.update_application(ROOT, 'APP1', _app_input(start_date=date(2026, 1, 1), end_date=date(2026, 12, 31)))
    service.create_plan(
        ALICE,
        PlanInput(app_acronym='APP1', name='Q1', start_date=date(2026, 1, 1), end_date=date(2026, 3, 31)),
    )

    with pytest.raises(ValidationError):
        service.update_application(ROOT, 'APP1', _app_input(start_date=date(2026, 2, 1), end_date=date(2026, 12, 31)))


def test_create_plan_rules():
    service, _, _ = build_service()

    with pytest.raises(Forbidden):
        service.create_plan(BOB, PlanInput(app_acronym='APP1', name='Sprint-2'))
    with pytest.raises(ValidationError) as exc:
        service.create_plan(ALICE, PlanInput(app_acronym='APP1', name='Sprint-1'))
    assert exc.value.code == 'duplicate'
    with pytest.raises(ValidationError):
        service.create_plan(
            ALICE,
            PlanInput(app_acronym='APP1', name='Backwards', start_date=date(2026, 5, 1), end_date=date(2026, 4, 1)),
        )

    assert [p.name for p in service.list_plans('APP1')] == ['Sprint-1']
    assert service.get_plan('APP1', 'Sprint-1').app_acronym == 'APP1'
    with pytest.raises(NotFound):
        service.get_plan('APP1', 'Sprint-9')


def test_get_task_unknown_is_not_found():
    service, _, _ = build_service()
    with pytest.raises(NotFound):
        service.get_task('APP1_99')
    with pytest.raises(NotFound):
        service.promote_task(ALICE, 'APP1_99', expected_state='Open')


def test_release_then_forbidden_take_scenario():
    accounts = InMemoryAccountDirectory()
    accounts.add_account('root', groups=['admin'])
    accounts.add_account('alice', groups=['dev'])
    accounts.add_account('bob', groups=['qa'])
    service = LifecycleService(repository=InMemoryTaskRepository(), accounts=accounts)
    service.create_application(
        ROOT,
        ApplicationInput(
            acronym='APP1',
            permit_create=['dev'],
            permit_open=['dev'],
            permit_todo=['dev'],
            permit_doing=['dev'],
            permit_done=['dev'],
        ),
    )

    task = service.create_task(ALICE, CreateTaskInput(app_acronym='APP1', name='scenario'))
    assert task.stage == TaskStage.OPEN

    released = service.promote_task(ALICE, task.task_id, expected_state='Open')
    assert released.stage == TaskStage.TODO
    assert released.owner is None
    assert len(released.notes) == len(task.notes) + 1
    assert released.notes[-1].text == 'Task released: Open -> To-Do.'

    with pytest.raises(Forbidden):
        service.promote_task(BOB, task.task_id, expected_state='To-Do')
    assert service.get_task(task.task_id) == released
