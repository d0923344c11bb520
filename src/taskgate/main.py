from __future__ import annotations

import logging

from taskgate.accounts import InMemoryAccountDirectory
from taskgate.api import create_app
from taskgate.config import Settings, load_settings
from taskgate.db import Database, SqlAccountDirectory, SqlTaskRepository
from taskgate.notifications import LoggingNotifier, Notifier, QueuedNotificationDispatcher, SmtpNotifier
from taskgate.observability import configure_observability
from taskgate.repository import InMemoryTaskRepository
from taskgate.service import LifecycleService

_log = logging.getLogger(__name__)


def build_notifier(settings: Settings) -> Notifier:
    if not settings.smtp_host:
        return LoggingNotifier()
    return SmtpNotifier(
        host=settings.smtp_host,
        port=settings.smtp_port,
        username=settings.smtp_username,
        password=settings.smtp_password,
        sender=settings.smtp_sender,
    )


def build_app(settings: Settings | None = None):
    settings = settings or load_settings()
    configure_observability(
        service_name=settings.service_name,
        otlp_endpoint=settings.otel_endpoint,
        level=settings.log_level,
    )

    try:
        db = Database(settings.database_url)
        db.create_schema()
        repo = SqlTaskRepository(db)
        accounts = SqlAccountDirectory(db)
    except Exception:
        _log.exception('database bootstrap failed; falling back to in-memory repository')
        repo = InMemoryTaskRepository()
        accounts = InMemoryAccountDirectory()

    dispatcher = QueuedNotificationDispatcher(
        accounts=accounts,
        notifier=build_notifier(settings),
        retries=settings.notify_retries,
        queue_size=settings.notify_queue_size,
    )
    dispatcher.start()
    service = LifecycleService(
        repository=repo,
        accounts=accounts,
        notifications=dispatcher,
        admin_group=settings.admin_group,
    )
    return create_app(service=service, user_header=settings.user_header)


app = build_app()
