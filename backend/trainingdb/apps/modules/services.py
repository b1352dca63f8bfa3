from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, List

from ...errors import ValidationError, invalid
from ...utils.identifiers import generate_module_id
from . import schemas
from .documents import ModuleDocument, ModuleSession
from .scheduling import ModuleDuration, compute_duration, has_conflict, parse_range
from .store import ModuleStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Eviction:
    user_id: int
    from_module_id: str


@dataclass
class AssignmentOutcome:
    module: ModuleDocument
    added: List[int] = field(default_factory=list)
    evicted: List[Eviction] = field(default_factory=list)


def coerce_user_ids(values: Iterable[object], *, field_name: str = "user_ids") -> List[int]:
    """Normalise user ids to ints, rejecting anything non-numeric."""
    user_ids: List[int] = []
    failures = []
    for index, value in enumerate(values):
        if isinstance(value, bool):
            failures.append({"field": f"{field_name}[{index}]", "reason": "user id must be numeric"})
            continue
        try:
            user_ids.append(int(str(value).strip()))
        except (TypeError, ValueError):
            failures.append({"field": f"{field_name}[{index}]", "reason": "user id must be numeric"})
    if failures:
        raise ValidationError(code="invalid_user_id", detail=failures)
    return user_ids


def validate_sessions(sessions: Iterable[ModuleSession]) -> None:
    """Reject unparseable or empty date ranges before a module is saved."""
    failures = []
    for s_index, session in enumerate(sessions):
        for r_index, date_range in enumerate(session.date_ranges):
            where = f"sessions[{s_index}].date_ranges[{r_index}]"
            parsed = parse_range(date_range)
            if parsed is None:
                failures.append({"field": where, "reason": "invalid date format"})
                continue
            start, end = parsed
            if (start.tzinfo is None) != (end.tzinfo is None):
                failures.append({"field": where, "reason": "start and end must both carry an offset or neither"})
            elif start >= end:
                failures.append({"field": where, "reason": "start_time must be before end_time"})
    if failures:
        raise ValidationError(code="invalid_date_range", detail=failures)


def module_duration(module: ModuleDocument) -> ModuleDuration:
    return compute_duration(module.sessions, created_at=module.created_at, module_id=module.id)


def to_read(module: ModuleDocument) -> schemas.ModuleRead:
    duration = module_duration(module)
    return schemas.ModuleRead(
        **module.model_dump(),
        duration=schemas.DurationRead(count=duration.count, dates=duration.dates),
    )


# ---------------------------------------------------------------------------
# DOCUMENT LIFECYCLE
# ---------------------------------------------------------------------------


def create_module(store: ModuleStore, data: schemas.ModuleCreate) -> ModuleDocument:
    """
    Create a module document with no assigned users.

    Initial assignees are applied afterwards through the assignment path so
    that conflict eviction and synchronisation run for them too.
    """
    validate_sessions(data.sessions)
    document = ModuleDocument(
        id=generate_module_id(),
        title=data.title,
        description=data.description,
        location=data.location,
        delivery_mode=data.delivery_mode,
        sessions=data.sessions,
        cycle_program_id=data.cycle_program_id,
        cycle_program_title=data.cycle_program_title,
    )
    return store.create(document)


def update_module(store: ModuleStore, module_id: str, data: schemas.ModuleUpdate) -> ModuleDocument:
    """Apply non-assignment fields; `assigned_users` is handled by the caller."""
    module = store.get(module_id)
    changes = data.model_dump(exclude_unset=True, exclude={"assigned_users"})
    if "sessions" in changes:
        if data.sessions is None:
            raise invalid("sessions", "sessions cannot be null")
        validate_sessions(data.sessions)
        module.sessions = data.sessions
        changes.pop("sessions")
    for key, value in changes.items():
        setattr(module, key, value)
    return store.save(module)


def set_archived(store: ModuleStore, module_id: str, archived: bool) -> ModuleDocument:
    return store.set_archived(module_id, archived)


def request_join(store: ModuleStore, module_id: str, user_id: int) -> ModuleDocument:
    module = store.get(module_id)
    if user_id in module.assigned_users or user_id in module.interested_users:
        return module
    module.interested_users.append(user_id)
    return store.save(module)


# ---------------------------------------------------------------------------
# ASSIGNMENT + CONFLICT EVICTION
# ---------------------------------------------------------------------------


def evict_conflicting_assignments(
    store: ModuleStore,
    module: ModuleDocument,
    user_id: int,
) -> List[Eviction]:
    """
    Remove `user_id` from every other module whose schedule overlaps `module`.

    Last write wins: the module being assigned keeps the user. Reads and
    writes of the other modules are not locked against concurrent
    assignment requests.
    """
    evicted: List[Eviction] = []
    for other in store.list_assigned_to(user_id):
        if other.id == module.id:
            continue
        if not has_conflict(module.sessions, other.sessions):
            continue
        if store.pull_assigned_user(other.id, user_id):
            evicted.append(Eviction(user_id=user_id, from_module_id=other.id))
            logger.info(
                "Evicted user from conflicting module",
                extra={"user_id": user_id, "from_module_id": other.id, "to_module_id": module.id},
            )
    return evicted


def replace_assigned_users(
    store: ModuleStore,
    module_id: str,
    user_ids: Iterable[object],
) -> AssignmentOutcome:
    """
    Make `user_ids` the module's complete assigned-user list.

    Users not previously assigned are first evicted from any other module
    whose schedule conflicts with this one. Only the document store is
    touched; synchronising the relational side is the caller's job.
    """
    wanted = coerce_user_ids(user_ids)
    module = store.get(module_id)
    current = set(module.assigned_users)

    added: List[int] = []
    evicted: List[Eviction] = []
    for user_id in wanted:
        if user_id in current or user_id in added:
            continue
        added.append(user_id)
        evicted.extend(evict_conflicting_assignments(store, module, user_id))

    module.assigned_users = wanted
    saved = store.save(module)
    return AssignmentOutcome(module=saved, added=added, evicted=evicted)


def check_conflict(store: ModuleStore, module_id: str, other_module_id: str) -> bool:
    module = store.get(module_id)
    other = store.get(other_module_id)
    return has_conflict(module.sessions, other.sessions)


def modules_for_user(store: ModuleStore, user_id: int, *, include_archived: bool = False) -> List[ModuleDocument]:
    modules = store.list_assigned_to(user_id)
    if include_archived:
        return modules
    return [m for m in modules if not m.archived]
