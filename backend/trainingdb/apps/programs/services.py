from __future__ import annotations

import logging
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from ...database import atomic
from ...errors import ConsistencyError, invalid, not_found
from ..audit import services as audit_services
from ..modules.documents import ModuleDocument
from ..modules.store import ModuleStore
from . import models, schemas

logger = logging.getLogger(__name__)


def _check_dates(start_date, end_date) -> None:
    if start_date and end_date and start_date > end_date:
        raise invalid("end_date", "end_date must not be before start_date", code="invalid_date_range")


def _check_program_type(
    container: models.CycleProgramType,
    program_type: Optional[models.ProgramKind],
) -> None:
    if container == models.CycleProgramType.CYCLE and program_type is not None:
        raise invalid("program_type", "program_type only applies to programs")


def _check_modules_exist(store: ModuleStore, module_ids: Iterable[str]) -> List[str]:
    ids = list(dict.fromkeys(str(m) for m in module_ids))
    known = store.existing_ids(ids)
    missing = [m for m in ids if m not in known]
    if missing:
        raise ConsistencyError(
            code="module_missing",
            detail=[{"field": "module_ids", "reason": f"Module {m} is absent from the document store"} for m in missing],
        )
    return ids


def _replace_links(program: models.CycleProgram, module_ids: List[str]) -> None:
    wanted = set(module_ids)
    for link in list(program.module_links):
        if link.module_id not in wanted:
            program.module_links.remove(link)
    present = set(program.module_ids)
    for module_id in module_ids:
        if module_id not in present:
            program.module_links.append(models.CycleProgramModule(module_id=module_id))


def get_cycle_program(db: Session, cycle_program_id: int) -> models.CycleProgram:
    program = db.get(models.CycleProgram, cycle_program_id)
    if program is None:
        raise not_found("cycle_program", cycle_program_id)
    return program


def linked_modules(store: ModuleStore, program: models.CycleProgram) -> List[ModuleDocument]:
    return store.get_many(program.module_ids)


def list_cycle_programs(db: Session, *, archived: Optional[bool] = None) -> List[models.CycleProgram]:
    query = db.query(models.CycleProgram)
    if archived is not None:
        query = query.filter(models.CycleProgram.archived.is_(archived))
    return query.order_by(models.CycleProgram.start_date.desc(), models.CycleProgram.id.desc()).all()


def create_cycle_program(
    db: Session,
    store: ModuleStore,
    *,
    data: schemas.CycleProgramCreate,
    actor_user_id: Optional[int] = None,
) -> models.CycleProgram:
    _check_dates(data.start_date, data.end_date)
    _check_program_type(data.type, data.program_type)
    module_ids = _check_modules_exist(store, data.module_ids)

    with atomic(db, operation="create_cycle_program"):
        program = models.CycleProgram(**data.model_dump(exclude={"module_ids"}))
        db.add(program)
        _replace_links(program, module_ids)
        db.flush()
        audit_services.log_event(
            db,
            actor_user_id=actor_user_id,
            entity_type="cycle_program",
            entity_id=str(program.id),
            action="create",
            after={"title": program.title, "type": program.type.value, "module_ids": module_ids},
        )
    return program


def update_cycle_program(
    db: Session,
    store: ModuleStore,
    cycle_program_id: int,
    *,
    data: schemas.CycleProgramUpdate,
    actor_user_id: Optional[int] = None,
) -> models.CycleProgram:
    program = get_cycle_program(db, cycle_program_id)
    changes = data.model_dump(exclude_unset=True, exclude={"module_ids"})
    _check_dates(changes.get("start_date", program.start_date), changes.get("end_date", program.end_date))
    _check_program_type(program.type, changes.get("program_type", program.program_type))
    module_ids = None
    if data.module_ids is not None:
        module_ids = _check_modules_exist(store, data.module_ids)

    with atomic(db, operation="update_cycle_program"):
        for key, value in changes.items():
            setattr(program, key, value)
        if module_ids is not None:
            _replace_links(program, module_ids)
        db.flush()
        audit_services.log_event(
            db,
            actor_user_id=actor_user_id,
            entity_type="cycle_program",
            entity_id=str(program.id),
            action="update",
            after={"fields": sorted(changes), "module_ids": module_ids},
        )
    return program


def set_cycle_program_archived(
    db: Session,
    cycle_program_id: int,
    archived: bool,
    *,
    actor_user_id: Optional[int] = None,
) -> models.CycleProgram:
    program = get_cycle_program(db, cycle_program_id)
    with atomic(db, operation="archive_cycle_program"):
        program.archived = archived
        audit_services.log_event(
            db,
            actor_user_id=actor_user_id,
            entity_type="cycle_program",
            entity_id=str(program.id),
            action="archive" if archived else "unarchive",
        )
    return program


def delete_cycle_program(
    db: Session,
    cycle_program_id: int,
    *,
    actor_user_id: Optional[int] = None,
) -> None:
    """Delete an archived cycle/program with its links, registrations and presence."""
    program = get_cycle_program(db, cycle_program_id)
    if not program.archived:
        raise invalid("cycle_program_id", "archive the cycle/program before deleting it", code="cycle_program_not_archived")

    with atomic(db, operation="delete_cycle_program"):
        registration_ids = [r.id for r in program.registrations]
        if registration_ids:
            (
                db.query(models.PresenceRecord)
                .filter(models.PresenceRecord.registration_id.in_(registration_ids))
                .delete(synchronize_session=False)
            )
        db.query(models.SyncJob).filter(models.SyncJob.cycle_program_id == program.id).delete(
            synchronize_session=False
        )
        db.delete(program)
        audit_services.log_event(
            db,
            actor_user_id=actor_user_id,
            entity_type="cycle_program",
            entity_id=str(cycle_program_id),
            action="delete",
            metadata={"registrations": len(registration_ids)},
        )
    logger.info("Deleted cycle/program", extra={"cycle_program_id": cycle_program_id})


# ---------------------------------------------------------------------------
# MODULE DELETION
# ---------------------------------------------------------------------------


def module_references(db: Session, module_id: str) -> List[str]:
    reasons = []
    user_modules = db.query(models.UserModule.id).filter(models.UserModule.module_id == module_id).count()
    if user_modules:
        reasons.append(f"{user_modules} registration module(s)")
    links = (
        db.query(models.CycleProgramModule.id)
        .filter(models.CycleProgramModule.module_id == module_id)
        .count()
    )
    if links:
        reasons.append(f"{links} cycle/program link(s)")
    return reasons


def delete_module(
    db: Session,
    store: ModuleStore,
    module_id: str,
    *,
    actor_user_id: Optional[int] = None,
) -> None:
    """Remove a module document that nothing relational points at."""
    module = store.get(module_id)
    references = module_references(db, module.id)
    if references:
        raise ConsistencyError(
            code="module_referenced",
            detail=[{"field": "module_id", "reason": f"Module {module.id} is referenced by {r}"} for r in references],
        )
    with atomic(store.db, operation="delete_module"):
        store.delete(module.id)
    audit_services.log_event(
        db,
        actor_user_id=actor_user_id,
        entity_type="module",
        entity_id=module.id,
        action="delete",
        before={"title": module.title},
    )
    db.commit()
