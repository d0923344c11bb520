from __future__ import annotations

import json
import logging

from taskgate.observability import (
    _JsonFormatter,
    configure_observability,
    get_logger,
    get_task_id,
    get_username,
    request_context,
    set_request_context,
)


def test_configure_observability_no_endpoint_is_noop():
    configure_observability(service_name='taskgate', otlp_endpoint=None)


def test_configure_observability_is_idempotent_for_json_handler(monkeypatch):
    import taskgate.observability as observability

    root = logging.getLogger('taskgate')
    original_handlers = list(root.handlers)
    original_level = root.level

    try:
        for handler in list(root.handlers):
            if isinstance(handler, logging.StreamHandler) and isinstance(
                getattr(handler, 'formatter', None), _JsonFormatter
            ):
                root.removeHandler(handler)

        monkeypatch.setattr(observability, '_configured', False)
        monkeypatch.setattr(observability, '_configured_otlp_endpoint', None)

        configure_observability(service_name='taskgate', otlp_endpoint=None, level='DEBUG')
        configure_observability(service_name='taskgate', otlp_endpoint=None)

        json_handlers = [
            handler
            for handler in root.handlers
            if isinstance(handler, logging.StreamHandler)
            and isinstance(getattr(handler, 'formatter', None), _JsonFormatter)
        ]
        assert len(json_handlers) == 1
        assert root.level == logging.DEBUG
    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
        for handler in original_handlers:
            root.addHandler(handler)
        root.setLevel(original_level)


def test_set_and_get_request_context():
    set_request_context(task_id='APP1_1', username='alice')
    assert get_task_id() == 'APP1_1'
    assert get_username() == 'alice'
    set_request_context()
    assert get_task_id() is None
    assert get_username() is None


def test_request_context_restores_previous_values():
    set_request_context(task_id='APP1_1', username='alice')
    with request_context(task_id='APP1_9'):
        assert get_task_id() == 'APP1_9'
        assert get_username() is None
    assert get_task_id() == 'APP1_1'
    assert get_username() == 'alice'


def test_json_formatter_adds_service_and_lifecycle_extras():
    fmt = _JsonFormatter(service_name='taskgate')
    logger = get_logger('taskgate.test_fmt')
    record = logger.makeRecord(
        'taskgate.test_fmt', logging.INFO, 'test.py', 1,
        'moved', (), None, extra={'app': 'APP1', 'stage': 'Done'},
    )
    parsed = json.loads(fmt.format(record))
    assert parsed['service'] == 'taskgate'
    assert parsed['app'] == 'APP1'
    assert parsed['stage'] == 'Done'
    assert 'task_id' not in parsed


def test_json_formatter_includes_correlation_fields():
    fmt = _JsonFormatter()
    set_request_context(task_id='APP1_2', username='bob')
    try:
        logger = get_logger('taskgate.test_fmt')
        record = logger.makeRecord(
            'taskgate.test_fmt', logging.INFO, 'test.py', 1,
            'task %s', ('taken',), None,
        )
        parsed = json.loads(fmt.format(record))
        assert parsed['msg'] == 'task taken'
        assert parsed['task_id'] == 'APP1_2'
        assert parsed['user'] == 'bob'
        assert parsed['level'] == 'INFO'
    finally:
        set_request_context()
