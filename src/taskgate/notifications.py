from __future__ import annotations

from dataclasses import dataclass
from email.message import EmailMessage
from queue import Empty, Full, Queue
import smtplib
from threading import Event, Lock, Thread
import time
from typing import Callable, Protocol

from taskgate.accounts import AccountDirectory
from taskgate.observability import get_logger, request_context

_log = get_logger('taskgate.notifications')


@dataclass(frozen=True)
class ReviewMessage:
    recipients: list[str]
    subject: str
    body: str


def build_review_message(task: dict, application: dict, recipients: list[str]) -> ReviewMessage:
    subject = f"Task {task['task_id']} Ready for Review"
    body = (
        f"Task \"{task['name']}\" ({task['task_id']}) has been moved to \"Done\" and is ready for approval.\n"
        f"\n"
        f"Application: {application['acronym']}\n"
        f"Task Owner: {task.get('owner') or 'N/A'}\n"
        f"\n"
        f"Please review and approve or reject the task."
    )
    return ReviewMessage(recipients=list(recipients), subject=subject, body=body)


class Notifier(Protocol):
    def send(self, message: ReviewMessage) -> None:
        ...


class NotificationDispatcher(Protocol):
    def dispatch(self, task: dict, application: dict) -> None:
        """Hand off a review notification; must never raise into the caller."""
        ...


class LoggingNotifier:
    def send(self, message: ReviewMessage) -> None:
        _log.info('review notification to=%s subject=%s', ','.join(message.recipients), message.subject)


class SmtpNotifier:
    def __init__(
        self,
        *,
        host: str,
        port: int = 587,
        username: str | None = None,
        password: str | None = None,
        sender: str = 'taskgate@localhost',
        timeout_seconds: float = 10.0,
        smtp_factory: Callable[..., smtplib.SMTP] = smtplib.SMTP,
    ):
        self.host = host
        self.port = int(port)
        self.username = username
        self.password = password
        self.sender = sender
        self.timeout_seconds = float(timeout_seconds)
        self._smtp_factory = smtp_factory

    def send(self, message: ReviewMessage) -> None:
        email = EmailMessage()
        email['From'] = self.sender
        email['To'] = ', '.join(message.recipients)
        email['Subject'] = message.subject
        email.set_content(message.body)
        with self._smtp_factory(self.host, self.port, timeout=self.timeout_seconds) as smtp:
            if self.username:
                smtp.starttls()
                smtp.login(self.username, self.password or '')
            smtp.send_message(email)


class QueuedNotificationDispatcher:
    """Background delivery of review notifications with bounded retries."""

    def __init__(
        self,
        *,
        accounts: AccountDirectory,
        notifier: Notifier,
        retries: int = 3,
        queue_size: int = 256,
        backoff_seconds: float = 0.5,
        max_backoff_seconds: float = 8.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.accounts = accounts
        self.notifier = notifier
        self.retries = max(0, int(retries))
        self.backoff_seconds = max(0.0, float(backoff_seconds))
        self.max_backoff_seconds = max(self.backoff_seconds, float(max_backoff_seconds))
        self._sleep = sleep
        self._queue: Queue[tuple[dict, dict]] = Queue(maxsize=max(1, int(queue_size)))
        self._stop = Event()
        self._thread: Thread | None = None
        self._thread_lock = Lock()

    def start(self) -> None:
        with self._thread_lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stop.clear()
            self._thread = Thread(target=self._run, name='taskgate-notify', daemon=True)
            self._thread.start()

    def stop(self, *, timeout: float = 5.0) -> None:
        self._stop.set()
        with self._thread_lock:
            thread = self._thread
            self._thread = None
        if thread is not None:
            thread.join(timeout=timeout)

    def dispatch(self, task: dict, application: dict) -> None:
        try:
            self._queue.put_nowait((dict(task), dict(application)))
        except Full:
            _log.warning('notification queue full; dropping review notice task_id=%s', task.get('task_id'))

    def join(self) -> None:
        """Block until every queued notification has been handled."""
        self._queue.join()

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                task, application = self._queue.get(timeout=0.2)
            except Empty:
                continue
            try:
                self.deliver(task, application)
            finally:
                self._queue.task_done()

    def deliver(self, task: dict, application: dict) -> bool:
        with request_context(task_id=task.get('task_id')):
            return self._deliver(task, application)

    def _deliver(self, task: dict, application: dict) -> bool:
        task_id = task.get('task_id')
        try:
            recipients = self.accounts.emails_for_groups(application.get('permit_done') or [])
        except Exception:
            _log.exception('notification recipient lookup failed task_id=%s', task_id)
            return False
        if not recipients:
            _log.info('no review recipients task_id=%s', task_id)
            return False

        message = build_review_message(task, application, recipients)
        for attempt in range(1, self.retries + 2):
            try:
                self.notifier.send(message)
                return True
            except Exception:
                _log.warning('notification attempt failed task_id=%s attempt=%s', task_id, attempt, exc_info=True)
                if attempt > self.retries:
                    break
                self._sleep(min(self.max_backoff_seconds, self.backoff_seconds * (2 ** (attempt - 1))))
        _log.error('notification abandoned task_id=%s', task_id)
        return False
