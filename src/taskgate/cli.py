from __future__ import annotations

import argparse
import json
import os
import sys

import httpx

from taskgate.config import load_settings


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='taskgate', description='Drive tasks through the taskgate lifecycle')
    parser.add_argument('--api-base', default='http://127.0.0.1:8000', help='taskgate API base URL')
    parser.add_argument(
        '--user',
        default=os.getenv('TASKGATE_USER', ''),
        help='Acting username sent in the user header (default: $TASKGATE_USER)',
    )

    sub = parser.add_subparsers(dest='command', required=True)

    create = sub.add_parser('create', help='Create a task in the Open stage')
    create.add_argument('app_acronym', help='Application acronym')
    create.add_argument('--name', required=True, help='Task name')
    create.add_argument('--description', default='', help='Optional task description')
    create.add_argument('--plan', default='', help='Optional plan name')
    create.add_argument('--notes', default='', help='Optional note appended after the creation entry')

    tasks = sub.add_parser('tasks', help='List tasks of an application')
    tasks.add_argument('app_acronym', help='Application acronym')
    tasks.add_argument('--state', default='', help='Only tasks in this stage, e.g. Doing')

    show = sub.add_parser('show', help='Show one task with its notes')
    show.add_argument('task_id', help='Task id, e.g. APP1_3')

    for name, help_text in (('promote', 'Move a task forward one stage'), ('demote', 'Move a task back one stage')):
        move = sub.add_parser(name, help=help_text)
        move.add_argument('task_id', help='Task id')
        move.add_argument('--expected-state', required=True, help='Stage the task is believed to be in')
        move.add_argument('--notes', default='', help='Optional note recorded with the transition')

    note = sub.add_parser('note', help='Append a note to a task')
    note.add_argument('task_id', help='Task id')
    note.add_argument('--text', required=True, help='Note text')

    assign = sub.add_parser('assign-plan', help='Change or clear the plan of a task')
    assign.add_argument('task_id', help='Task id')
    assign.add_argument('--plan', default='', help='Plan name; omit to clear the plan')
    assign.add_argument('--notes', default='', help='Optional note recorded with the change')

    sub.add_parser('apps', help='List applications')

    plans = sub.add_parser('plans', help='List plans of an application')
    plans.add_argument('app_acronym', help='Application acronym')

    return parser


def _print_json(payload) -> None:
    print(json.dumps(payload, ensure_ascii=True, indent=2))


def _optional(value: str | None) -> str | None:
    text = str(value or '').strip()
    return text or None


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    base = args.api_base.rstrip('/')
    user = str(args.user or '').strip()
    if not user:
        parser.error('--user (or TASKGATE_USER) is required')
        return 2
    headers = {load_settings().user_header: user}

    with httpx.Client(timeout=30, headers=headers) as client:
        if args.command == 'create':
            response = client.post(
                f'{base}/tasks',
                json={
                    'Task_app_Acronym': args.app_acronym,
                    'Task_name': args.name,
                    'Task_description': args.description,
                    'Task_plan': _optional(args.plan),
                    'notes': _optional(args.notes),
                },
            )
        elif args.command == 'tasks':
            params = {'state': args.state} if _optional(args.state) else None
            response = client.get(f'{base}/tasks/{args.app_acronym}', params=params)
        elif args.command == 'show':
            response = client.get(f'{base}/task/{args.task_id}')
        elif args.command in {'promote', 'demote'}:
            response = client.post(
                f'{base}/tasks/{args.command}',
                json={
                    'task_id': args.task_id,
                    'expected_state': args.expected_state,
                    'notes': _optional(args.notes),
                },
            )
        elif args.command == 'note':
            response = client.put(f'{base}/tasks', json={'task_id': args.task_id, 'notes': args.text})
        elif args.command == 'assign-plan':
            payload = {'task_id': args.task_id, 'plan_name': _optional(args.plan)}
            notes = _optional(args.notes)
            if notes:
                payload['notes'] = notes
            response = client.put(f'{base}/tasks', json=payload)
        elif args.command == 'apps':
            response = client.get(f'{base}/applications')
        elif args.command == 'plans':
            response = client.get(f'{base}/plans/{args.app_acronym}')
        else:
            parser.error(f'unsupported command: {args.command}')
            return 2

    if response.status_code >= 400:
        print(f'HTTP {response.status_code}: {response.text}', file=sys.stderr)
        return 1

    _print_json(response.json())
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
