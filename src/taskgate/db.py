from __future__ import annotations

from contextlib import contextmanager
from datetime import date, datetime, timezone
import json
import time
from typing import Callable, Iterable, Iterator, TypeVar

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    func,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from taskgate.audit import NoteDraft
from taskgate.domain.errors import NotFound, StaleState, ValidationError
from taskgate.domain.models import TaskStage, format_task_id
from taskgate.observability import get_logger
from taskgate.permissions import normalize_groups
from taskgate.repository import (
    PERMIT_FIELDS,
    ApplicationCheck,
    ApplicationRecord,
    PlanRecord,
    TaskCreateRecord,
    TaskMutation,
)

_log = get_logger('taskgate.db')

T = TypeVar('T')

_STAGE_RACE_ATTEMPTS = 5


class _StageMoved(Exception):
    pass


def _iso_utc(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    else:
        value = value.astimezone(timezone.utc)
    return value.isoformat()


def _encode_groups(values: Iterable[str]) -> str:
    return json.dumps(list(values), ensure_ascii=False)


def _decode_groups(raw: str | None) -> list[str]:
    try:
        data = json.loads(raw or '[]')
    except ValueError:
        return []
    if not isinstance(data, list):
        return []
    return [str(v) for v in data if str(v).strip()]


class Base(DeclarativeBase):
    pass


class AccountEntity(Base):
    __tablename__ = 'accounts'

    username: Mapped[str] = mapped_column(String(50), primary_key=True)
    email: Mapped[str | None] = mapped_column(String(100), nullable=True)
    user_groups_json: Mapped[str] = mapped_column(Text(), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean(), nullable=False, default=True)


class ApplicationEntity(Base):
    __tablename__ = 'applications'

    acronym: Mapped[str] = mapped_column(String(50), primary_key=True)
    description: Mapped[str] = mapped_column(Text(), nullable=False)
    start_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    end_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    r_number: Mapped[int] = mapped_column(Integer(), nullable=False)
    permit_create_json: Mapped[str] = mapped_column(Text(), nullable=False)
    permit_open_json: Mapped[str] = mapped_column(Text(), nullable=False)
    permit_todo_json: Mapped[str] = mapped_column(Text(), nullable=False)
    permit_doing_json: Mapped[str] = mapped_column(Text(), nullable=False)
    permit_done_json: Mapped[str] = mapped_column(Text(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class PlanEntity(Base):
    __tablename__ = 'plans'
    __table_args__ = (
        UniqueConstraint('app_acronym', 'name', name='uq_plans_app_acronym_name'),
    )

    id: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    app_acronym: Mapped[str] = mapped_column(String(50), ForeignKey('applications.acronym'), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    start_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    end_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class TaskEntity(Base):
    __tablename__ = 'tasks'
    __table_args__ = (
        UniqueConstraint('app_acronym', 'ordinal', name='uq_tasks_app_acronym_ordinal'),
        Index('ix_tasks_app_acronym_stage', 'app_acronym', 'stage'),
    )

    task_id: Mapped[str] = mapped_column(String(80), primary_key=True)
    app_acronym: Mapped[str] = mapped_column(String(50), ForeignKey('applications.acronym'), nullable=False)
    ordinal: Mapped[int] = mapped_column(Integer(), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text(), nullable=False)
    plan: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stage: Mapped[str] = mapped_column(String(16), nullable=False)
    creator: Mapped[str] = mapped_column(String(50), nullable=False)
    owner: Mapped[str | None] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class TaskNoteEntity(Base):
    __tablename__ = 'task_notes'
    __table_args__ = (
        UniqueConstraint('task_id', 'seq', name='uq_task_notes_task_id_seq'),
    )

    id: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    task_id: Mapped[str] = mapped_column(String(80), ForeignKey('tasks.task_id'), nullable=False, index=True)
    seq: Mapped[int] = mapped_column(Integer(), nullable=False)
    author: Mapped[str] = mapped_column(String(50), nullable=False)
    stage: Mapped[str] = mapped_column(String(16), nullable=False)
    text: Mapped[str] = mapped_column(Text(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class Database:
    def __init__(self, url: str):
        engine_kwargs: dict[str, object] = {
            'future': True,
        }
        if str(url or '').strip().lower().startswith('sqlite'):
            # Request threads share the engine; writers wait on the file lock.
            engine_kwargs['connect_args'] = {'check_same_thread': False, 'timeout': 30}
        self.engine = create_engine(url, **engine_kwargs)
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False, class_=Session)
        if self.engine.dialect.name == 'sqlite':
            self._configure_sqlite_pragmas()

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _configure_sqlite_pragmas(self) -> None:
        with self.engine.connect() as conn:
            conn.exec_driver_sql('PRAGMA journal_mode=WAL')
            conn.exec_driver_sql('PRAGMA synchronous=NORMAL')
            conn.exec_driver_sql('PRAGMA foreign_keys=ON')
            conn.exec_driver_sql('PRAGMA busy_timeout=30000')


class SqlTaskRepository:
    def __init__(self, db: Database):
        self.db = db

    def _sqlite_lock_retry_attempts(self) -> int:
        return 8 if self.db.engine.dialect.name == 'sqlite' else 1

    @staticmethod
    def _is_sqlite_lock_error(exc: Exception) -> bool:
        text = str(exc or '').lower()
        return 'database is locked' in text or 'database table is locked' in text

    @staticmethod
    def _sqlite_lock_backoff_seconds(attempt: int) -> float:
        return min(0.2, 0.02 * (2 ** max(0, int(attempt) - 1)))

    def _run_with_lock_retry(self, unit: Callable[[], T], *, name: str) -> T:
        attempts = self._sqlite_lock_retry_attempts()
        for attempt in range(1, attempts + 1):
            try:
                return unit()
            except OperationalError as exc:
                if (not self._is_sqlite_lock_error(exc)) or attempt >= attempts:
                    raise
                _log.debug('sqlite lock contention in %s attempt=%s', name, attempt)
                time.sleep(self._sqlite_lock_backoff_seconds(attempt))
        raise RuntimeError(f'{name}_retry_exhausted')

    # applications

    def create_application(self, record: ApplicationRecord) -> dict:
        now = datetime.now(timezone.utc)
        row = ApplicationEntity(
            acronym=record.acronym,
            description=record.description,
            start_date=record.start_date,
            end_date=record.end_date,
            r_number=0,
            created_at=now,
            updated_at=now,
            **{f'{name}_json': _encode_groups(getattr(record, name)) for name in PERMIT_FIELDS},
        )
        try:
            with self.db.session() as session:
                if session.get(ApplicationEntity, record.acronym) is not None:
                    raise ValidationError(
                        f'application {record.acronym} already exists',
                        field='acronym',
                        code='duplicate',
                    )
                session.add(row)
        except IntegrityError as exc:
            raise ValidationError(
                f'application {record.acronym} already exists',
                field='acronym',
                code='duplicate',
            ) from exc
        return self._application_to_dict(row)

    def update_application(self, record: ApplicationRecord) -> dict:
        with self.db.session() as session:
            row = session.get(ApplicationEntity, record.acronym)
            if row is None:
                raise NotFound(f'application {record.acronym} not found', field='acronym')
            row.description = record.description
            row.start_date = record.start_date
            row.end_date = record.end_date
            for name in PERMIT_FIELDS:
                setattr(row, f'{name}_json', _encode_groups(getattr(record, name)))
            row.updated_at = datetime.now(timezone.utc)
            session.add(row)
            session.flush()
            return self._application_to_dict(row)

    def get_application(self, acronym: str) -> dict | None:
        with self.db.session() as session:
            row = session.get(ApplicationEntity, acronym)
            if row is None:
                return None
            return self._application_to_dict(row)

    def list_applications(self) -> list[dict]:
        with self.db.session() as session:
            rows = session.execute(select(ApplicationEntity).order_by(ApplicationEntity.acronym)).scalars().all()
            return [self._application_to_dict(r) for r in rows]

    # plans

    def create_plan(self, record: PlanRecord) -> dict:
        row = PlanEntity(
            app_acronym=record.app_acronym,
            name=record.name,
            start_date=record.start_date,
            end_date=record.end_date,
            created_at=datetime.now(timezone.utc),
        )
        try:
            with self.db.session() as session:
                if session.get(ApplicationEntity, record.app_acronym) is None:
                    raise NotFound(f'application {record.app_acronym} not found', field='app_acronym')
                existing = session.execute(
                    select(PlanEntity.id).where(
                        PlanEntity.app_acronym == record.app_acronym,
                        PlanEntity.name == record.name,
                    )
                ).first()
                if existing is not None:
                    raise ValidationError(
                        f'plan {record.name} already exists in {record.app_acronym}',
                        field='name',
                        code='duplicate',
                    )
                session.add(row)
        except IntegrityError as exc:
            raise ValidationError(
                f'plan {record.name} already exists in {record.app_acronym}',
                field='name',
                code='duplicate',
            ) from exc
        return self._plan_to_dict(row)

    def get_plan(self, app_acronym: str, name: str) -> dict | None:
        with self.db.session() as session:
            row = session.execute(
                select(PlanEntity).where(PlanEntity.app_acronym == app_acronym, PlanEntity.name == name)
            ).scalar_one_or_none()
            if row is None:
                return None
            return self._plan_to_dict(row)

    def list_plans(self, app_acronym: str) -> list[dict]:
        with self.db.session() as session:
            rows = session.execute(
                select(PlanEntity).where(PlanEntity.app_acronym == app_acronym).order_by(PlanEntity.name)
            ).scalars().all()
            return [self._plan_to_dict(r) for r in rows]

    # tasks

    def create_task_record(
        self,
        record: TaskCreateRecord,
        *,
        notes: list[NoteDraft],
        check: ApplicationCheck | None = None,
    ) -> dict:
        return self._run_with_lock_retry(
            lambda: self._create_task_once(record, notes=notes, check=check),
            name='create_task_record',
        )

    def _create_task_once(
        self,
        record: TaskCreateRecord,
        *,
        notes: list[NoteDraft],
        check: ApplicationCheck | None,
    ) -> dict:
        with self.db.session() as session:
            app_row = session.execute(
                select(ApplicationEntity)
                .where(ApplicationEntity.acronym == record.app_acronym)
                .with_for_update()
            ).scalar_one_or_none()
            if app_row is None:
                raise NotFound(f'application {record.app_acronym} not found', field='Task_app_Acronym')
            if check is not None:
                check(self._application_to_dict(app_row))

            session.execute(
                update(ApplicationEntity)
                .where(ApplicationEntity.acronym == record.app_acronym)
                .values(r_number=ApplicationEntity.r_number + 1)
            )
            ordinal = int(
                session.execute(
                    select(ApplicationEntity.r_number).where(ApplicationEntity.acronym == record.app_acronym)
                ).scalar_one()
            )
            now = datetime.now(timezone.utc)
            task = TaskEntity(
                task_id=format_task_id(record.app_acronym, ordinal),
                app_acronym=record.app_acronym,
                ordinal=ordinal,
                name=record.name,
                description=record.description,
                plan=record.plan,
                stage=TaskStage.OPEN.value,
                creator=record.creator,
                owner=None,
                created_at=now,
                updated_at=now,
            )
            session.add(task)
            session.flush()
            self._insert_notes(session, task.task_id, notes)
            session.flush()
            return self._task_to_dict(task, notes=self._load_notes(session, task.task_id))

    def list_tasks(self, app_acronym: str, *, stage: str | None = None) -> list[dict]:
        stmt = select(TaskEntity).where(TaskEntity.app_acronym == app_acronym)
        if stage is not None:
            stmt = stmt.where(TaskEntity.stage == stage)
        with self.db.session() as session:
            rows = session.execute(stmt.order_by(TaskEntity.ordinal)).scalars().all()
            return [self._task_to_dict(r) for r in rows]

    def get_task(self, task_id: str) -> dict | None:
        with self.db.session() as session:
            row = session.get(TaskEntity, task_id)
            if row is None:
                return None
            return self._task_to_dict(row, notes=self._load_notes(session, task_id))

    def mutate_task(self, task_id: str, mutation: TaskMutation) -> dict:
        for attempt in range(1, _STAGE_RACE_ATTEMPTS + 1):
            try:
                return self._run_with_lock_retry(
                    lambda: self._mutate_task_once(task_id, mutation),
                    name='mutate_task',
                )
            except _StageMoved:
                # The stage moved between read and write; re-run the unit on fresh state.
                _log.debug('task stage moved during mutation task_id=%s attempt=%s', task_id, attempt)
        raise StaleState('task was modified concurrently')

    def _mutate_task_once(self, task_id: str, mutation: TaskMutation) -> dict:
        with self.db.session() as session:
            row = session.execute(
                select(TaskEntity).where(TaskEntity.task_id == task_id).with_for_update()
            ).scalar_one_or_none()
            if row is None:
                raise NotFound(f'task {task_id} not found', field='task_id')
            app_row = session.get(ApplicationEntity, row.app_acronym)
            if app_row is None:
                raise NotFound(f'application {row.app_acronym} not found')

            read_stage = row.stage
            current = self._task_to_dict(row)
            change = mutation(current, self._application_to_dict(app_row))

            now = datetime.now(timezone.utc)
            result = session.execute(
                update(TaskEntity)
                .where(TaskEntity.task_id == task_id, TaskEntity.stage == read_stage)
                .values(stage=change.stage, owner=change.owner, plan=change.plan, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if int(result.rowcount or 0) == 0:
                raise _StageMoved(task_id)
            self._insert_notes(session, task_id, change.notes)
            session.flush()

            updated = dict(current)
            updated.update(
                {
                    'stage': change.stage,
                    'owner': change.owner,
                    'plan': change.plan,
                    'updated_at': _iso_utc(now),
                    'notes': self._load_notes(session, task_id),
                }
            )
            return updated

    @staticmethod
    def _insert_notes(session: Session, task_id: str, notes: list[NoteDraft]) -> None:
        if not notes:
            return
        last_seq = int(
            session.execute(
                select(func.coalesce(func.max(TaskNoteEntity.seq), 0)).where(TaskNoteEntity.task_id == task_id)
            ).scalar_one()
        )
        for offset, draft in enumerate(notes, start=1):
            session.add(
                TaskNoteEntity(
                    task_id=task_id,
                    seq=last_seq + offset,
                    author=draft.author,
                    stage=draft.stage.value,
                    text=draft.text,
                    created_at=draft.created_at,
                )
            )

    @classmethod
    def _load_notes(cls, session: Session, task_id: str) -> list[dict]:
        rows = session.execute(
            select(TaskNoteEntity).where(TaskNoteEntity.task_id == task_id).order_by(TaskNoteEntity.seq)
        ).scalars().all()
        return [cls._note_to_dict(r) for r in rows]

    @staticmethod
    def _application_to_dict(row: ApplicationEntity) -> dict:
        return {
            'acronym': row.acronym,
            'description': row.description,
            'start_date': row.start_date,
            'end_date': row.end_date,
            'r_number': row.r_number,
            **{name: _decode_groups(getattr(row, f'{name}_json')) for name in PERMIT_FIELDS},
            'created_at': _iso_utc(row.created_at),
            'updated_at': _iso_utc(row.updated_at),
        }

    @staticmethod
    def _plan_to_dict(row: PlanEntity) -> dict:
        return {
            'app_acronym': row.app_acronym,
            'name': row.name,
            'start_date': row.start_date,
            'end_date': row.end_date,
            'created_at': _iso_utc(row.created_at),
        }

    @staticmethod
    def _task_to_dict(row: TaskEntity, *, notes: list[dict] | None = None) -> dict:
        out = {
            'task_id': row.task_id,
            'app_acronym': row.app_acronym,
            'ordinal': row.ordinal,
            'name': row.name,
            'description': row.description,
            'plan': row.plan,
            'stage': row.stage,
            'creator': row.creator,
            'owner': row.owner,
            'created_at': _iso_utc(row.created_at),
            'updated_at': _iso_utc(row.updated_at),
        }
        if notes is not None:
            out['notes'] = notes
        return out

    @staticmethod
    def _note_to_dict(row: TaskNoteEntity) -> dict:
        return {
            'seq': row.seq,
            'task_id': row.task_id,
            'author': row.author,
            'stage': row.stage,
            'text': row.text,
            'created_at': _iso_utc(row.created_at),
        }


class SqlAccountDirectory:
    """Read side of the account store; account management lives elsewhere."""

    def __init__(self, db: Database):
        self.db = db

    def add_account(
        self,
        username: str,
        *,
        groups: Iterable[str],
        email: str | None = None,
        is_active: bool = True,
    ) -> None:
        with self.db.session() as session:
            row = session.get(AccountEntity, username)
            if row is None:
                row = AccountEntity(username=username)
            row.email = email
            row.user_groups_json = _encode_groups(groups)
            row.is_active = bool(is_active)
            session.add(row)

    def groups_for_user(self, username: str) -> frozenset[str]:
        with self.db.session() as session:
            row = session.get(AccountEntity, username)
            if row is None or not row.is_active:
                return frozenset()
            return normalize_groups(_decode_groups(row.user_groups_json))

    def emails_for_groups(self, groups: Iterable[str]) -> list[str]:
        wanted = normalize_groups(groups)
        with self.db.session() as session:
            rows = session.execute(select(AccountEntity).where(AccountEntity.is_active.is_(True))).scalars().all()
            emails = {
                str(r.email)
                for r in rows
                if r.email and not wanted.isdisjoint(normalize_groups(_decode_groups(r.user_groups_json)))
            }
        return sorted(emails)
