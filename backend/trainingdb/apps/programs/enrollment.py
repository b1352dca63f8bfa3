# backend/trainingdb/apps/programs/enrollment.py
"""
Registration -> user module state machine.

User modules move `pending -> accepted | rejected` and never back. A
registration's status is always derived from its user modules:

- accepted iff every user module is accepted
- rejected iff every user module is rejected
- pending otherwise

Every status change is validated by the workflow engine and recorded in
the audit trail.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session, selectinload

from ...database import atomic
from ...errors import ConsistencyError, NotFoundError, ValidationError, invalid, not_found
from ..modules.store import ModuleStore
from ..workflow import apply_transition, check_transition
from . import models
from .sync import find_registration

logger = logging.getLogger(__name__)

Status = models.EnrollmentStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def aggregate_status(statuses: Iterable[Any]) -> models.EnrollmentStatus:
    values = [Status(s) for s in statuses]
    if not values:
        return Status.PENDING
    if all(v == Status.ACCEPTED for v in values):
        return Status.ACCEPTED
    if all(v == Status.REJECTED for v in values):
        return Status.REJECTED
    return Status.PENDING


def _coerce_status(value: Any, *, field_name: str) -> models.EnrollmentStatus:
    try:
        return Status(getattr(value, "value", value))
    except ValueError:
        raise invalid(
            field_name,
            f"status must be one of {', '.join(s.value for s in Status)}",
            code="invalid_status",
        ) from None


def get_registration(db: Session, registration_id: int) -> models.Registration:
    registration = db.get(models.Registration, registration_id)
    if registration is None:
        raise not_found("registration", registration_id)
    return registration


# ---------------------------------------------------------------------------
# REGISTRATION
# ---------------------------------------------------------------------------


def _modules_to_materialize(
    program: models.CycleProgram,
    selected_module_ids: Optional[Sequence[str]],
) -> List[str]:
    linked = program.module_ids
    if program.type == models.CycleProgramType.CYCLE:
        return list(linked)

    selected = list(dict.fromkeys(str(m) for m in (selected_module_ids or [])))
    if not selected:
        raise invalid("selected_module_ids", "select at least one module of the program")
    failures = [
        {"field": f"selected_module_ids[{i}]", "reason": f"Module {m} is not part of this program"}
        for i, m in enumerate(selected)
        if m not in linked
    ]
    if failures:
        raise ValidationError(code="module_not_in_program", detail=failures)
    return selected


def register_to_program(
    db: Session,
    store: ModuleStore,
    *,
    cycle_program_id: int,
    user_id: int,
    selected_module_ids: Optional[Sequence[str]] = None,
) -> models.Registration:
    """
    Enroll a learner in a cycle or program.

    A cycle materialises one pending user module per linked module; a
    program one per selected module. Registering again adds the missing
    modules; the registration status is then re-derived from its user
    modules, so a decided registration reopens only when a pending module
    was added.
    """
    program = db.get(models.CycleProgram, cycle_program_id)
    if program is None:
        raise not_found("cycle_program", cycle_program_id)
    if program.archived:
        raise invalid("cycle_program_id", "cycle/program is archived", code="cycle_program_archived")

    module_ids = _modules_to_materialize(program, selected_module_ids)
    known = store.existing_ids(module_ids)
    missing = [m for m in module_ids if m not in known]
    if missing:
        raise ConsistencyError(
            code="module_missing",
            detail=[{"field": "module_id", "reason": f"Module {m} is absent from the document store"} for m in missing],
        )

    with atomic(db, operation="register_to_program"):
        registration = find_registration(db, program.id, user_id)
        if registration is None:
            registration = models.Registration(
                cycle_program_id=program.id,
                user_id=user_id,
                status=Status.PENDING,
            )
            db.add(registration)
            db.flush()

        present = {um.module_id for um in registration.user_modules}
        added = [m for m in module_ids if m not in present]
        for module_id in added:
            registration.user_modules.append(
                models.UserModule(module_id=module_id, status=Status.PENDING)
            )
        db.flush()

        target = aggregate_status(um.status for um in registration.user_modules)
        if registration.status != target:
            apply_transition(
                db,
                actor_user_id=user_id,
                entity_type="registration",
                entity_id=str(registration.id),
                from_state=registration.status,
                to_state=target,
                after_obj={"actor_user_id": user_id, "reason": "re-registration", "added_module_ids": added},
            )
            registration.status = target
            if target == Status.PENDING:
                registration.decided_by_user_id = None
                registration.decided_at = None
            db.flush()

    logger.info(
        "Registered user to cycle/program",
        extra={"registration_id": registration.id, "cycle_program_id": program.id, "user_id": user_id},
    )
    return registration


# ---------------------------------------------------------------------------
# DECISIONS
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Decision:
    registration: models.Registration
    final_status: models.EnrollmentStatus


def _planned_module_statuses(
    registration: models.Registration,
    status: Optional[models.EnrollmentStatus],
    module_statuses: Optional[Sequence[Tuple[str, Any]]],
) -> Dict[int, models.EnrollmentStatus]:
    by_module = {um.module_id: um for um in registration.user_modules}

    if not module_statuses:
        return {um.id: status for um in registration.user_modules}

    plan: Dict[int, models.EnrollmentStatus] = {}
    failures = []
    seen = set()
    for index, (module_id, raw_status) in enumerate(module_statuses):
        target = _coerce_status(raw_status, field_name=f"module_statuses[{index}].status")
        module_id = str(module_id)
        if module_id in seen:
            failures.append({"field": f"module_statuses[{index}].module_id", "reason": "duplicate module"})
            continue
        seen.add(module_id)
        user_module = by_module.get(module_id)
        if user_module is None:
            raise _module_not_in_registration(module_id, registration.id)
        plan[user_module.id] = target
    if failures:
        raise ValidationError(code="duplicate_module_decision", detail=failures)
    return plan


def _module_not_in_registration(module_id: str, registration_id: int) -> NotFoundError:
    return NotFoundError(
        code="user_module_not_found",
        detail=[{"field": "module_id", "reason": f"Module {module_id} is not part of registration {registration_id}"}],
    )


def decide_registration(
    db: Session,
    *,
    registration_id: int,
    actor_user_id: int,
    status: Any = None,
    module_statuses: Optional[Sequence[Tuple[str, Any]]] = None,
    correlation_id: Optional[str] = None,
) -> Decision:
    """
    Apply an admin decision to a registration and its user modules.

    `module_statuses` decides modules one by one; otherwise `status`
    cascades to every module. The registration status is then re-derived.
    Every transition is checked before anything is written, and the whole
    decision commits as one transaction.
    """
    registration = get_registration(db, registration_id)
    if status is None and not module_statuses:
        raise invalid("status", "provide a status or per-module statuses")
    cascade = _coerce_status(status, field_name="status") if status is not None else None

    plan = _planned_module_statuses(registration, cascade, module_statuses)
    user_modules = {um.id: um for um in registration.user_modules}

    projected = [plan.get(um.id, um.status) for um in registration.user_modules]
    if projected:
        final_status = aggregate_status(projected)
    else:
        final_status = cascade or Status.PENDING

    after = {"actor_user_id": actor_user_id}
    for user_module_id, target in plan.items():
        check_transition(
            db,
            entity_type="user_module",
            from_state=user_modules[user_module_id].status,
            to_state=target,
            after_obj=after,
        )
    check_transition(
        db,
        entity_type="registration",
        from_state=registration.status,
        to_state=final_status,
        after_obj=after,
    )

    now = _utcnow()
    with atomic(db, operation="decide_registration"):
        for user_module_id, target in plan.items():
            user_module = user_modules[user_module_id]
            changed = apply_transition(
                db,
                actor_user_id=actor_user_id,
                entity_type="user_module",
                entity_id=str(user_module.id),
                from_state=user_module.status,
                to_state=target,
                after_obj={**after, "registration_id": registration.id, "module_id": user_module.module_id},
                correlation_id=correlation_id,
            )
            if changed:
                user_module.status = target
                user_module.decided_by_user_id = actor_user_id
                user_module.decided_at = now

        changed = apply_transition(
            db,
            actor_user_id=actor_user_id,
            entity_type="registration",
            entity_id=str(registration.id),
            from_state=registration.status,
            to_state=final_status,
            after_obj={**after, "cycle_program_id": registration.cycle_program_id},
            correlation_id=correlation_id,
        )
        if changed:
            registration.status = final_status
            registration.decided_by_user_id = actor_user_id
            registration.decided_at = now
        db.flush()

    return Decision(registration=registration, final_status=final_status)


# ---------------------------------------------------------------------------
# QUERIES
# ---------------------------------------------------------------------------


def _registrations_query(db: Session):
    return db.query(models.Registration).options(selectinload(models.Registration.user_modules))


def list_pending_registrations(db: Session, *, cycle_program_id: Optional[int] = None) -> List[models.Registration]:
    query = _registrations_query(db).filter(models.Registration.status == Status.PENDING)
    if cycle_program_id is not None:
        query = query.filter(models.Registration.cycle_program_id == cycle_program_id)
    return query.order_by(models.Registration.created_at.asc(), models.Registration.id.asc()).all()


def get_user_enrolled_modules(db: Session, user_id: int) -> List[models.UserModule]:
    """One user module per module across all of a user's registrations, newest wins."""
    rows = (
        db.query(models.UserModule)
        .join(models.Registration, models.Registration.id == models.UserModule.registration_id)
        .filter(models.Registration.user_id == user_id)
        .order_by(models.UserModule.created_at.asc(), models.UserModule.id.asc())
        .all()
    )
    latest: Dict[str, models.UserModule] = {}
    for row in rows:
        latest[row.module_id] = row
    return list(latest.values())


def get_user_program_registrations(
    db: Session,
    *,
    cycle_program_id: int,
    user_id: int,
) -> Tuple[List[models.Registration], Dict[str, models.EnrollmentStatus]]:
    registrations = (
        _registrations_query(db)
        .filter(
            models.Registration.cycle_program_id == cycle_program_id,
            models.Registration.user_id == user_id,
        )
        .order_by(models.Registration.id.asc())
        .all()
    )
    statuses: Dict[str, models.EnrollmentStatus] = {}
    user_modules = sorted(
        (um for r in registrations for um in r.user_modules),
        key=lambda um: (um.created_at, um.id),
    )
    for user_module in user_modules:
        statuses[user_module.module_id] = user_module.status
    return registrations, statuses


def list_accepted_registrations(
    db: Session,
    cycle_program_id: int,
) -> List[Tuple[models.Registration, List[str]]]:
    registrations = (
        _registrations_query(db)
        .filter(
            models.Registration.cycle_program_id == cycle_program_id,
            models.Registration.status == Status.ACCEPTED,
        )
        .order_by(models.Registration.id.asc())
        .all()
    )
    return [
        (r, [um.module_id for um in r.user_modules if um.status == Status.ACCEPTED])
        for r in registrations
    ]
