# backend/trainingdb/apps/programs/sync.py
"""
Module -> program synchronisation across the two stores.

Two named operations:

- reset_and_sync: find-or-create one registration per assigned user, then
  delete and re-insert this module's user modules as `pending`. Decided
  statuses are reset on every run.
- reconcile: find-or-create registrations and create only the missing
  user modules. Running it twice changes nothing.

Both only flush; callers own the relational transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from ...database import atomic
from ...errors import ConsistencyError, not_found
from ..audit import services as audit_services
from ..modules.documents import ModuleDocument
from ..modules.services import coerce_user_ids
from ..modules.store import ModuleStore
from . import models

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncResult:
    module_id: str
    cycle_program_id: int
    mode: models.SyncMode
    registrations_created: int = 0
    user_modules_created: int = 0
    user_modules_reset: int = 0


# ---------------------------------------------------------------------------
# PROGRAM LINK
# ---------------------------------------------------------------------------


def resolve_program_link(db: Session, module: ModuleDocument) -> Optional[models.CycleProgram]:
    """
    The cycle/program a module belongs to, if any.

    The explicit `cycle_program_id` wins. Without it the legacy title is
    matched against program titles; titles are not unique, so the lowest
    id wins and the ambiguity is logged.
    """
    if module.cycle_program_id is not None:
        program = db.get(models.CycleProgram, module.cycle_program_id)
        if program is None:
            raise ConsistencyError(
                code="unknown_cycle_program",
                detail=[
                    {
                        "field": "cycle_program_id",
                        "reason": f"Module {module.id} links to missing cycle/program {module.cycle_program_id}",
                    }
                ],
            )
        return program

    title = (module.cycle_program_title or "").strip()
    if not title:
        return None

    matches = (
        db.query(models.CycleProgram)
        .filter(models.CycleProgram.title == title)
        .order_by(models.CycleProgram.id.asc())
        .all()
    )
    if not matches:
        return None
    if len(matches) > 1:
        logger.warning(
            "Ambiguous title link between module and cycle/program",
            extra={
                "module_id": module.id,
                "cycle_program_title": title,
                "candidate_ids": [p.id for p in matches],
                "chosen_id": matches[0].id,
            },
        )
    return matches[0]


def _ensure_module_link(db: Session, program: models.CycleProgram, module_id: str) -> None:
    if module_id not in program.module_ids:
        program.module_links.append(models.CycleProgramModule(module_id=module_id))


# ---------------------------------------------------------------------------
# REGISTRATIONS
# ---------------------------------------------------------------------------


def find_registration(db: Session, cycle_program_id: int, user_id: int) -> Optional[models.Registration]:
    # Oldest first: duplicates can exist when callers bypass find-or-create.
    return (
        db.query(models.Registration)
        .filter(
            models.Registration.cycle_program_id == cycle_program_id,
            models.Registration.user_id == user_id,
        )
        .order_by(models.Registration.id.asc())
        .first()
    )


def _find_or_create_registrations(
    db: Session,
    cycle_program_id: int,
    user_ids: Iterable[int],
) -> Tuple[Dict[int, models.Registration], int]:
    wanted = list(dict.fromkeys(user_ids))
    by_user: Dict[int, models.Registration] = {}
    if wanted:
        rows = (
            db.query(models.Registration)
            .filter(
                models.Registration.cycle_program_id == cycle_program_id,
                models.Registration.user_id.in_(wanted),
            )
            .order_by(models.Registration.id.asc())
            .all()
        )
        for row in rows:
            by_user.setdefault(row.user_id, row)

    created = 0
    for user_id in wanted:
        if user_id in by_user:
            continue
        registration = models.Registration(
            cycle_program_id=cycle_program_id,
            user_id=user_id,
            status=models.EnrollmentStatus.PENDING,
        )
        db.add(registration)
        by_user[user_id] = registration
        created += 1
    db.flush()
    return by_user, created


def _load_context(
    db: Session,
    store: ModuleStore,
    *,
    module_id: str,
    user_ids: Iterable[object],
    cycle_program_id: int,
) -> Tuple[models.CycleProgram, List[int]]:
    program = db.get(models.CycleProgram, cycle_program_id)
    if program is None:
        raise not_found("cycle_program", cycle_program_id)
    if store.find(module_id) is None:
        raise ConsistencyError(
            code="module_missing",
            detail=[{"field": "module_id", "reason": f"Module {module_id} is absent from the document store"}],
        )
    return program, list(dict.fromkeys(coerce_user_ids(user_ids)))


# ---------------------------------------------------------------------------
# OPERATIONS
# ---------------------------------------------------------------------------


def reset_and_sync(
    db: Session,
    store: ModuleStore,
    *,
    module_id: str,
    user_ids: Iterable[object],
    cycle_program_id: int,
    actor_user_id: Optional[int] = None,
) -> SyncResult:
    """
    Rebuild this module's user modules for every assigned user.

    Existing registrations keep their aggregate status. Their user module
    for this module is replaced by a fresh `pending` row, even when it was
    already accepted or rejected. Users no longer assigned are left alone.
    """
    program, wanted = _load_context(
        db,
        store,
        module_id=module_id,
        user_ids=user_ids,
        cycle_program_id=cycle_program_id,
    )
    _ensure_module_link(db, program, module_id)
    registrations, created = _find_or_create_registrations(db, program.id, wanted)

    reset = 0
    for registration in registrations.values():
        for user_module in list(registration.user_modules):
            if user_module.module_id != module_id:
                continue
            if user_module.status != models.EnrollmentStatus.PENDING:
                reset += 1
            registration.user_modules.remove(user_module)
    # Deletes must reach the database before the re-inserts hit the unique key.
    db.flush()

    for registration in registrations.values():
        registration.user_modules.append(
            models.UserModule(module_id=module_id, status=models.EnrollmentStatus.PENDING)
        )
    db.flush()

    if reset:
        logger.info(
            "Resync reset decided user modules to pending",
            extra={"module_id": module_id, "cycle_program_id": program.id, "reset": reset},
        )

    result = SyncResult(
        module_id=module_id,
        cycle_program_id=program.id,
        mode=models.SyncMode.RESET_AND_SYNC,
        registrations_created=created,
        user_modules_created=len(registrations),
        user_modules_reset=reset,
    )
    audit_services.log_event(
        db,
        actor_user_id=actor_user_id,
        entity_type="module",
        entity_id=module_id,
        action="reset_and_sync",
        after={"cycle_program_id": program.id, "user_ids": wanted},
        metadata={"registrations_created": created, "user_modules_reset": reset},
    )
    return result


def reconcile(
    db: Session,
    store: ModuleStore,
    *,
    module_id: str,
    user_ids: Iterable[object],
    cycle_program_id: int,
    actor_user_id: Optional[int] = None,
) -> SyncResult:
    """Create missing registrations and user modules without touching decisions."""
    program, wanted = _load_context(
        db,
        store,
        module_id=module_id,
        user_ids=user_ids,
        cycle_program_id=cycle_program_id,
    )
    _ensure_module_link(db, program, module_id)
    registrations, created = _find_or_create_registrations(db, program.id, wanted)

    added = 0
    for registration in registrations.values():
        if any(um.module_id == module_id for um in registration.user_modules):
            continue
        registration.user_modules.append(
            models.UserModule(module_id=module_id, status=models.EnrollmentStatus.PENDING)
        )
        added += 1
    db.flush()

    if created or added:
        audit_services.log_event(
            db,
            actor_user_id=actor_user_id,
            entity_type="module",
            entity_id=module_id,
            action="reconcile",
            after={"cycle_program_id": program.id, "user_ids": wanted},
            metadata={"registrations_created": created, "user_modules_created": added},
        )
    return SyncResult(
        module_id=module_id,
        cycle_program_id=program.id,
        mode=models.SyncMode.RECONCILE,
        registrations_created=created,
        user_modules_created=added,
    )


SYNC_OPERATIONS = {
    models.SyncMode.RESET_AND_SYNC: reset_and_sync,
    models.SyncMode.RECONCILE: reconcile,
}


def sync_assigned_users(
    db: Session,
    store: ModuleStore,
    *,
    module_id: str,
    user_ids: Iterable[object],
    cycle_program_id: int,
    mode: models.SyncMode = models.SyncMode.RESET_AND_SYNC,
    actor_user_id: Optional[int] = None,
) -> SyncResult:
    """Run one synchronisation as a single relational transaction."""
    operation = SYNC_OPERATIONS[models.SyncMode(mode)]
    with atomic(db, operation=f"sync:{models.SyncMode(mode).value}"):
        return operation(
            db,
            store,
            module_id=module_id,
            user_ids=user_ids,
            cycle_program_id=cycle_program_id,
            actor_user_id=actor_user_id,
        )
