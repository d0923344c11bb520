from __future__ import annotations

from typing import Iterable, Mapping

from taskgate.domain.errors import Forbidden, ValidationError
from taskgate.domain.models import PermitKind


def normalize_group(value: str) -> str:
    return str(value or '').strip().casefold()


def normalize_groups(values: Iterable[str] | None) -> frozenset[str]:
    """Canonical group names for comparison; blanks are dropped."""
    out: set[str] = set()
    for raw in values or ():
        name = normalize_group(raw)
        if name:
            out.add(name)
    return frozenset(out)


def clean_group_list(values: Iterable[str] | None, *, field: str) -> list[str]:
    """Deduplicate a permit list for storage while keeping the caller's spelling."""
    out: list[str] = []
    seen: set[str] = set()
    for raw in values or ():
        text = str(raw or '').strip()
        key = text.casefold()
        if not text or key in seen:
            continue
        seen.add(key)
        out.append(text)
    if not out:
        raise ValidationError(f'{field} must contain at least one group', field=field)
    return out


def authorize(acting_groups: Iterable[str], required_groups: Iterable[str]) -> bool:
    return not normalize_groups(acting_groups).isdisjoint(normalize_groups(required_groups))


def permit_groups(application: Mapping, permit: PermitKind) -> list[str]:
    return list(application.get(permit.value) or [])


def require_permission(
    *,
    username: str,
    acting_groups: Iterable[str],
    application: Mapping,
    permit: PermitKind,
    action: str,
) -> None:
    if authorize(acting_groups, permit_groups(application, permit)):
        return
    raise Forbidden(
        f'user {username} is not permitted to {action} in application '
        f'{application.get("acronym")} ({permit.value})',
    )
