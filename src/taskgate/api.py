from __future__ import annotations

from datetime import date
import logging

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import SQLAlchemyError

from taskgate.accounts import AccountDirectory, InMemoryAccountDirectory, Principal
from taskgate.domain.errors import (
    Forbidden,
    InvalidTransition,
    LifecycleError,
    NotFound,
    StaleState,
    ValidationError,
)
from taskgate.repository import InMemoryTaskRepository, TaskRepository
from taskgate.service import (
    ApplicationInput,
    ApplicationView,
    CreateTaskInput,
    LifecycleService,
    PlanInput,
    PlanView,
    TaskView,
)

_log = logging.getLogger(__name__)

_STATUS_BY_ERROR: tuple[tuple[type[LifecycleError], int], ...] = (
    (ValidationError, 400),
    (Forbidden, 403),
    (NotFound, 404),
    (InvalidTransition, 409),
    (StaleState, 409),
)


class CreateTaskRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(alias='Task_name', min_length=1, max_length=255)
    description: str = Field(default='', alias='Task_description')
    plan: str | None = Field(default=None, alias='Task_plan', max_length=255)
    app_acronym: str = Field(alias='Task_app_Acronym', min_length=1, max_length=50)
    notes: str | None = Field(default=None, max_length=4000)


class TransitionRequest(BaseModel):
    task_id: str = Field(min_length=1, max_length=80)
    expected_state: str = Field(min_length=1, max_length=16)
    notes: str | None = Field(default=None, max_length=4000)


class UpdateTaskRequest(BaseModel):
    task_id: str = Field(min_length=1, max_length=80)
    plan_name: str | None = Field(default=None, max_length=255)
    notes: str | None = Field(default=None, max_length=4000)


class ApplicationRequest(BaseModel):
    acronym: str = Field(min_length=1, max_length=50)
    description: str = Field(default='')
    start_date: date | None = None
    end_date: date | None = None
    permit_create: list[str] = Field(min_length=1)
    permit_open: list[str] = Field(min_length=1)
    permit_todo: list[str] = Field(min_length=1)
    permit_doing: list[str] = Field(min_length=1)
    permit_done: list[str] = Field(min_length=1)


class ApplicationUpdateRequest(BaseModel):
    description: str = Field(default='')
    start_date: date | None = None
    end_date: date | None = None
    permit_create: list[str] = Field(min_length=1)
    permit_open: list[str] = Field(min_length=1)
    permit_todo: list[str] = Field(min_length=1)
    permit_doing: list[str] = Field(min_length=1)
    permit_done: list[str] = Field(min_length=1)


class PlanRequest(BaseModel):
    app_acronym: str = Field(min_length=1, max_length=50)
    name: str = Field(min_length=1, max_length=255)
    start_date: date | None = None
    end_date: date | None = None


class NoteResponse(BaseModel):
    seq: int
    author: str
    stage: str
    text: str
    created_at: str


class TaskSummaryResponse(BaseModel):
    task_id: str
    app_acronym: str
    ordinal: int
    name: str
    description: str
    plan: str | None
    stage: str
    creator: str
    owner: str | None
    created_at: str
    updated_at: str


class TaskResponse(TaskSummaryResponse):
    notes: list[NoteResponse]
    notes_text: str


class ApplicationResponse(BaseModel):
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


class PlanResponse(BaseModel):
    app_acronym: str
    name: str
    start_date: date | None
    end_date: date | None


class AppState:
    def __init__(self, service: LifecycleService):
        self.service = service


class _Unauthenticated(Exception):
    pass


def _summary_fields(task: TaskView) -> dict:
    return {
        'task_id': task.task_id,
        'app_acronym': task.app_acronym,
        'ordinal': task.ordinal,
        'name': task.name,
        'description': task.description,
        'plan': task.plan,
        'stage': task.stage.value,
        'creator': task.creator,
        'owner': task.owner,
        'created_at': task.created_at,
        'updated_at': task.updated_at,
    }


def _to_task_response(task: TaskView) -> TaskResponse:
    return TaskResponse(
        **_summary_fields(task),
        notes=[
            NoteResponse(
                seq=n.seq,
                author=n.author,
                stage=n.stage.value,
                text=n.text,
                created_at=n.created_at,
            )
            for n in task.notes
        ],
        notes_text=task.notes_text,
    )


def _to_application_response(app: ApplicationView) -> ApplicationResponse:
    return ApplicationResponse(
        acronym=app.acronym,
        description=app.description,
        start_date=app.start_date,
        end_date=app.end_date,
        r_number=app.r_number,
        permit_create=app.permit_create,
        permit_open=app.permit_open,
        permit_todo=app.permit_todo,
        permit_doing=app.permit_doing,
        permit_done=app.permit_done,
    )


def _to_plan_response(plan: PlanView) -> PlanResponse:
    return PlanResponse(
        app_acronym=plan.app_acronym,
        name=plan.name,
        start_date=plan.start_date,
        end_date=plan.end_date,
    )


def _error_payload(*, message: str, field: str | None = None, code: str = 'validation_error') -> dict:
    payload: dict[str, str] = {
        'code': code,
        'message': message,
    }
    if field:
        payload['field'] = field
    return payload


def _field_from_loc(loc: tuple | list | None) -> str | None:
    if not loc:
        return None
    source_prefixes = {'body', 'query', 'path', 'header', 'cookie'}
    parts = list(loc)
    if parts and str(parts[0]) in source_prefixes:
        parts = parts[1:]
    if not parts:
        return None

    field = ''
    for part in parts:
        if isinstance(part, int):
            field += f'[{part}]'
            continue

        text = str(part)
        if field:
            field += f'.{text}'
        else:
            field = text

    return field or None


def create_app(
    *,
    service: LifecycleService | None = None,
    repository: TaskRepository | None = None,
    accounts: AccountDirectory | None = None,
    user_header: str = 'x-taskgate-user',
) -> FastAPI:
    if service is None:
        service = LifecycleService(
            repository=repository or InMemoryTaskRepository(),
            accounts=accounts or InMemoryAccountDirectory(),
        )

    app = FastAPI(title='taskgate api', version='0.1.0')
    app.state.container = AppState(service=service)
    resolved_user_header = str(user_header or 'x-taskgate-user').strip().lower()

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation_error(request: Request, exc: RequestValidationError):  # noqa: ARG001
        details = exc.errors()
        if details:
            first = details[0]
            message = str(first.get('msg') or 'invalid request body')
            field = _field_from_loc(first.get('loc'))
        else:
            message = 'invalid request body'
            field = None
        return JSONResponse(
            status_code=400,
            content=_error_payload(message=message, field=field),
        )

    @app.exception_handler(LifecycleError)
    async def handle_lifecycle_error(request: Request, exc: LifecycleError):  # noqa: ARG001
        status_code = 400
        for error_cls, code in _STATUS_BY_ERROR:
            if isinstance(exc, error_cls):
                status_code = code
                break
        return JSONResponse(
            status_code=status_code,
            content=_error_payload(message=exc.message, field=exc.field, code=exc.code),
        )

    @app.exception_handler(SQLAlchemyError)
    async def handle_storage_error(request: Request, exc: SQLAlchemyError):
        _log.error('storage failure path=%s', request.url.path, exc_info=exc)
        return JSONResponse(
            status_code=500,
            content=_error_payload(code='server_error', message='internal server error'),
        )

    def get_service() -> LifecycleService:
        return app.state.container.service

    def get_principal(request: Request) -> Principal:
        username = str(request.headers.get(resolved_user_header) or '').strip()
        if not username:
            raise _Unauthenticated()
        return Principal(username=username)

    @app.exception_handler(_Unauthenticated)
    async def handle_unauthenticated(request: Request, exc: _Unauthenticated):  # noqa: ARG001
        return JSONResponse(
            status_code=401,
            content=_error_payload(code='unauthorized', message='authenticated user required'),
        )

    @app.get('/healthz')
    def healthz() -> dict[str, str]:
        return {'status': 'ok'}

    # applications

    @app.post('/applications', response_model=ApplicationResponse, status_code=201)
    def create_application(
        payload: ApplicationRequest,
        principal: Principal = Depends(get_principal),
        service: LifecycleService = Depends(get_service),
    ) -> ApplicationResponse:
        created = service.create_application(
            principal,
            ApplicationInput(
                acronym=payload.acronym,
                description=payload.description,
                start_date=payload.start_date,
                end_date=payload.end_date,
                permit_create=payload.permit_create,
                permit_open=payload.permit_open,
                permit_todo=payload.permit_todo,
                permit_doing=payload.permit_doing,
                permit_done=payload.permit_done,
            ),
        )
        return _to_application_response(created)

    @app.put('/applications/{acronym}', response_model=ApplicationResponse)
    def update_application(
        acronym: str,
        payload: ApplicationUpdateRequest,
        principal: Principal = Depends(get_principal),
        service: LifecycleService = Depends(get_service),
    ) -> ApplicationResponse:
        updated = service.update_application(
            principal,
            acronym,
            ApplicationInput(
                acronym=acronym,
                description=payload.description,
                start_date=payload.start_date,
                end_date=payload.end_date,
                permit_create=payload.permit_create,
                permit_open=payload.permit_open,
                permit_todo=payload.permit_todo,
                permit_doing=payload.permit_doing,
                permit_done=payload.permit_done,
            ),
        )
        return _to_application_response(updated)

    @app.get('/applications', response_model=list[ApplicationResponse])
    def list_applications(
        principal: Principal = Depends(get_principal),  # noqa: ARG001
        service: LifecycleService = Depends(get_service),
    ) -> list[ApplicationResponse]:
        return [_to_application_response(a) for a in service.list_applications()]

    @app.get('/applications/{acronym}', response_model=ApplicationResponse)
    def get_application(
        acronym: str,
        principal: Principal = Depends(get_principal),  # noqa: ARG001
        service: LifecycleService = Depends(get_service),
    ) -> ApplicationResponse:
        return _to_application_response(service.get_application(acronym))

    # plans

    @app.post('/plans', response_model=PlanResponse, status_code=201)
    def create_plan(
        payload: PlanRequest,
        principal: Principal = Depends(get_principal),
        service: LifecycleService = Depends(get_service),
    ) -> PlanResponse:
        created = service.create_plan(
            principal,
            PlanInput(
                app_acronym=payload.app_acronym,
                name=payload.name,
                start_date=payload.start_date,
                end_date=payload.end_date,
            ),
        )
        return _to_plan_response(created)

    @app.get('/plans/{app_acronym}', response_model=list[PlanResponse])
    def list_plans(
        app_acronym: str,
        principal: Principal = Depends(get_principal),  # noqa: ARG001
        service: LifecycleService = Depends(get_service),
    ) -> list[PlanResponse]:
        return [_to_plan_response(p) for p in service.list_plans(app_acronym)]

    @app.get('/plans/{app_acronym}/{name}', response_model=PlanResponse)
    def get_plan(
        app_acronym: str,
        name: str,
        principal: Principal = Depends(get_principal),  # noqa: ARG001
        service: LifecycleService = Depends(get_service),
    ) -> PlanResponse:
        return _to_plan_response(service.get_plan(app_acronym, name))

    # tasks

    @app.post('/tasks', response_model=TaskResponse, status_code=201)
    def create_task(
        payload: CreateTaskRequest,
        principal: Principal = Depends(get_principal),
        service: LifecycleService = Depends(get_service),
    ) -> TaskResponse:
        task = service.create_task(
            principal,
            CreateTaskInput(
                app_acronym=payload.app_acronym,
                name=payload.name,
                description=payload.description,
                plan=payload.plan,
                notes=payload.notes,
            ),
        )
        return _to_task_response(task)

    @app.get('/tasks/{app_acronym}', response_model=list[TaskSummaryResponse])
    def list_tasks(
        app_acronym: str,
        principal: Principal = Depends(get_principal),  # noqa: ARG001
        service: LifecycleService = Depends(get_service),
        state: str | None = Query(default=None, max_length=16),
    ) -> list[TaskSummaryResponse]:
        rows = service.list_tasks(app_acronym, stage=state)
        return [TaskSummaryResponse(**_summary_fields(r)) for r in rows]

    @app.get('/task/{task_id}', response_model=TaskResponse)
    def get_task(
        task_id: str,
        principal: Principal = Depends(get_principal),  # noqa: ARG001
        service: LifecycleService = Depends(get_service),
    ) -> TaskResponse:
        return _to_task_response(service.get_task(task_id))

    @app.post('/tasks/promote', response_model=TaskResponse)
    def promote_task(
        payload: TransitionRequest,
        principal: Principal = Depends(get_principal),
        service: LifecycleService = Depends(get_service),
    ) -> TaskResponse:
        task = service.promote_task(
            principal,
            payload.task_id,
            expected_state=payload.expected_state,
            notes=payload.notes,
        )
        return _to_task_response(task)

    @app.post('/tasks/demote', response_model=TaskResponse)
    def demote_task(
        payload: TransitionRequest,
        principal: Principal = Depends(get_principal),
        service: LifecycleService = Depends(get_service),
    ) -> TaskResponse:
        task = service.demote_task(
            principal,
            payload.task_id,
            expected_state=payload.expected_state,
            notes=payload.notes,
        )
        return _to_task_response(task)

    @app.put('/tasks', response_model=TaskResponse)
    def update_task(
        payload: UpdateTaskRequest,
        principal: Principal = Depends(get_principal),
        service: LifecycleService = Depends(get_service),
    ) -> TaskResponse:
        change_plan = 'plan_name' in payload.model_fields_set
        notes = payload.notes if str(payload.notes or '').strip() else None
        if not change_plan and notes is None and 'notes' in payload.model_fields_set:
            raise ValidationError('notes must not be empty', field='notes')
        task = service.update_task(
            principal,
            payload.task_id,
            change_plan=change_plan,
            plan_name=payload.plan_name,
            notes=notes,
        )
        return _to_task_response(task)

    return app
