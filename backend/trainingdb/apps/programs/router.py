from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from trainingdb.apps.modules.router import get_module_store
from trainingdb.apps.modules.store import ModuleStore
from trainingdb.database import get_db
from trainingdb.security import Principal, get_current_principal, require_admin

from . import enrollment, models, presence, reconciliation, schemas, services, sync


router = APIRouter(
    prefix="/cycle-programs",
    tags=["cycle-programs"],
)

registrations_router = APIRouter(
    prefix="/registrations",
    tags=["registrations"],
)

module_enrollment_router = APIRouter(
    prefix="/modules",
    tags=["presence", "sync"],
)

sync_jobs_router = APIRouter(
    prefix="/sync-jobs",
    tags=["sync"],
)


def _require_self_or_admin(principal: Principal, user_id: int) -> None:
    if principal.user_id != user_id and not principal.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient privileges")


def _program_detail(store: ModuleStore, program: models.CycleProgram) -> schemas.CycleProgramDetail:
    detail = schemas.CycleProgramDetail.model_validate(program)
    detail.modules = services.linked_modules(store, program)
    return detail


# ---------------------------------------------------------------------------
# CYCLES / PROGRAMS
# ---------------------------------------------------------------------------


@router.get("", response_model=List[schemas.CycleProgramRead])
def list_cycle_programs(
    archived: Optional[bool] = Query(None),
    db: Session = Depends(get_db),
    _: Principal = Depends(get_current_principal),
):
    return services.list_cycle_programs(db, archived=archived)


@router.post("", response_model=schemas.CycleProgramDetail, status_code=status.HTTP_201_CREATED)
def create_cycle_program(
    payload: schemas.CycleProgramCreate,
    db: Session = Depends(get_db),
    store: ModuleStore = Depends(get_module_store),
    admin: Principal = Depends(require_admin),
):
    program = services.create_cycle_program(db, store, data=payload, actor_user_id=admin.user_id)
    return _program_detail(store, program)


@router.get("/{cycle_program_id}", response_model=schemas.CycleProgramDetail)
def get_cycle_program(
    cycle_program_id: int,
    db: Session = Depends(get_db),
    store: ModuleStore = Depends(get_module_store),
    _: Principal = Depends(get_current_principal),
):
    return _program_detail(store, services.get_cycle_program(db, cycle_program_id))


@router.put("/{cycle_program_id}", response_model=schemas.CycleProgramDetail)
def update_cycle_program(
    cycle_program_id: int,
    payload: schemas.CycleProgramUpdate,
    db: Session = Depends(get_db),
    store: ModuleStore = Depends(get_module_store),
    admin: Principal = Depends(require_admin),
):
    program = services.update_cycle_program(
        db,
        store,
        cycle_program_id,
        data=payload,
        actor_user_id=admin.user_id,
    )
    return _program_detail(store, program)


@router.post("/{cycle_program_id}/archive", response_model=schemas.CycleProgramRead)
def archive_cycle_program(
    cycle_program_id: int,
    db: Session = Depends(get_db),
    admin: Principal = Depends(require_admin),
):
    return services.set_cycle_program_archived(db, cycle_program_id, True, actor_user_id=admin.user_id)


@router.post("/{cycle_program_id}/unarchive", response_model=schemas.CycleProgramRead)
def unarchive_cycle_program(
    cycle_program_id: int,
    db: Session = Depends(get_db),
    admin: Principal = Depends(require_admin),
):
    return services.set_cycle_program_archived(db, cycle_program_id, False, actor_user_id=admin.user_id)


@router.delete("/{cycle_program_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_cycle_program(
    cycle_program_id: int,
    db: Session = Depends(get_db),
    admin: Principal = Depends(require_admin),
):
    services.delete_cycle_program(db, cycle_program_id, actor_user_id=admin.user_id)
    return None


@router.post(
    "/{cycle_program_id}/registrations",
    response_model=schemas.RegistrationRead,
    status_code=status.HTTP_201_CREATED,
)
def register_to_program(
    cycle_program_id: int,
    payload: schemas.RegisterRequest,
    db: Session = Depends(get_db),
    store: ModuleStore = Depends(get_module_store),
    principal: Principal = Depends(get_current_principal),
):
    user_id = payload.user_id if payload.user_id is not None else principal.user_id
    _require_self_or_admin(principal, user_id)
    return enrollment.register_to_program(
        db,
        store,
        cycle_program_id=cycle_program_id,
        user_id=user_id,
        selected_module_ids=payload.selected_module_ids,
    )


@router.get("/{cycle_program_id}/registrations/accepted", response_model=List[schemas.AcceptedRegistrationRead])
def list_accepted_registrations(
    cycle_program_id: int,
    db: Session = Depends(get_db),
    _: Principal = Depends(require_admin),
):
    services.get_cycle_program(db, cycle_program_id)
    return [
        schemas.AcceptedRegistrationRead(
            registration_id=registration.id,
            user_id=registration.user_id,
            accepted_module_ids=module_ids,
        )
        for registration, module_ids in enrollment.list_accepted_registrations(db, cycle_program_id)
    ]


@router.get("/{cycle_program_id}/users/{user_id}", response_model=schemas.UserProgramRegistrations)
def get_user_program_registrations(
    cycle_program_id: int,
    user_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    _require_self_or_admin(principal, user_id)
    registrations, statuses = enrollment.get_user_program_registrations(
        db,
        cycle_program_id=cycle_program_id,
        user_id=user_id,
    )
    return schemas.UserProgramRegistrations(
        cycle_program_id=cycle_program_id,
        user_id=user_id,
        registrations=[schemas.RegistrationRead.model_validate(r) for r in registrations],
        module_statuses=statuses,
    )


# ---------------------------------------------------------------------------
# REGISTRATIONS
# ---------------------------------------------------------------------------


@registrations_router.get("/pending", response_model=List[schemas.RegistrationRead])
def list_pending_registrations(
    cycle_program_id: Optional[int] = Query(None),
    db: Session = Depends(get_db),
    _: Principal = Depends(require_admin),
):
    return enrollment.list_pending_registrations(db, cycle_program_id=cycle_program_id)


@registrations_router.get("/users/{user_id}/modules", response_model=List[schemas.UserModuleRead])
def get_user_enrolled_modules(
    user_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    _require_self_or_admin(principal, user_id)
    return enrollment.get_user_enrolled_modules(db, user_id)


@registrations_router.post("/{registration_id}/decision", response_model=schemas.DecisionResult)
def decide_registration(
    registration_id: int,
    payload: schemas.DecisionRequest,
    db: Session = Depends(get_db),
    admin: Principal = Depends(require_admin),
):
    module_statuses = None
    if payload.module_statuses:
        module_statuses = [(d.module_id, d.status) for d in payload.module_statuses]
    decision = enrollment.decide_registration(
        db,
        registration_id=registration_id,
        actor_user_id=admin.user_id,
        status=payload.status,
        module_statuses=module_statuses,
    )
    return schemas.DecisionResult(
        registration_id=decision.registration.id,
        final_status=decision.final_status,
        registration=schemas.RegistrationRead.model_validate(decision.registration),
    )


# ---------------------------------------------------------------------------
# PRESENCE + SYNC (per module)
# ---------------------------------------------------------------------------


@module_enrollment_router.post("/{module_id}/presence", response_model=schemas.PresenceSubmitResult)
def submit_presence(
    module_id: str,
    payload: schemas.PresenceSubmitRequest,
    db: Session = Depends(get_db),
    store: ModuleStore = Depends(get_module_store),
    admin: Principal = Depends(require_admin),
):
    written = presence.submit_presence(
        db,
        store,
        module_id=module_id,
        entries=payload.entries,
        recorded_by_user_id=admin.user_id,
    )
    return schemas.PresenceSubmitResult(module_id=module_id, written=written)


@module_enrollment_router.get("/{module_id}/presence", response_model=schemas.PresenceSheetRead)
def get_presence_sheet(
    module_id: str,
    db: Session = Depends(get_db),
    store: ModuleStore = Depends(get_module_store),
    _: Principal = Depends(require_admin),
):
    sheet = presence.get_presence_sheet(db, store, module_id)
    return schemas.PresenceSheetRead(
        module_id=sheet.module_id,
        dates=sheet.dates,
        rows=[
            schemas.PresenceRowRead(
                user_id=row.seat.user_id,
                registration_id=row.seat.registration_id,
                user_module_id=row.seat.user_module_id,
                statuses=row.statuses,
                days_present=row.days_present,
            )
            for row in sheet.rows
        ],
    )


@module_enrollment_router.post("/{module_id}/presence/import-legacy", response_model=schemas.LegacyImportResult)
def import_legacy_presence(
    module_id: str,
    db: Session = Depends(get_db),
    store: ModuleStore = Depends(get_module_store),
    admin: Principal = Depends(require_admin),
):
    imported, skipped = presence.import_legacy_presence(db, store, module_id, recorded_by_user_id=admin.user_id)
    return schemas.LegacyImportResult(module_id=module_id, imported=imported, skipped=skipped)


@module_enrollment_router.post("/{module_id}/sync", response_model=schemas.SyncResultRead)
def sync_module(
    module_id: str,
    payload: schemas.SyncRequest,
    db: Session = Depends(get_db),
    store: ModuleStore = Depends(get_module_store),
    admin: Principal = Depends(require_admin),
):
    module = store.get(module_id)
    cycle_program_id = payload.cycle_program_id
    if cycle_program_id is None:
        program = sync.resolve_program_link(db, module)
        if program is None:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="Module is not linked to a cycle/program",
            )
        cycle_program_id = program.id
    user_ids = payload.user_ids if payload.user_ids is not None else module.assigned_users
    result = sync.sync_assigned_users(
        db,
        store,
        module_id=module.id,
        user_ids=user_ids,
        cycle_program_id=cycle_program_id,
        mode=payload.mode,
        actor_user_id=admin.user_id,
    )
    return schemas.SyncResultRead(
        module_id=result.module_id,
        cycle_program_id=result.cycle_program_id,
        mode=result.mode,
        registrations_created=result.registrations_created,
        user_modules_created=result.user_modules_created,
        user_modules_reset=result.user_modules_reset,
    )


# ---------------------------------------------------------------------------
# SYNC JOBS
# ---------------------------------------------------------------------------


@sync_jobs_router.get("", response_model=List[schemas.SyncJobRead])
def list_sync_jobs(
    module_id: Optional[str] = Query(None),
    job_status: Optional[models.SyncJobStatus] = Query(None, alias="status"),
    db: Session = Depends(get_db),
    _: Principal = Depends(require_admin),
):
    return reconciliation.list_sync_jobs(db, module_id=module_id, status=job_status)


@sync_jobs_router.post("/dispatch", response_model=schemas.DispatchResult)
def dispatch_sync_jobs(
    db: Session = Depends(get_db),
    store: ModuleStore = Depends(get_module_store),
    _: Principal = Depends(require_admin),
):
    return schemas.DispatchResult(dispatched=reconciliation.dispatch_due_jobs(db, store))


@sync_jobs_router.post("/{job_id}/retry", response_model=schemas.SyncJobRead)
def retry_sync_job(
    job_id: str,
    db: Session = Depends(get_db),
    store: ModuleStore = Depends(get_module_store),
    _: Principal = Depends(require_admin),
):
    return reconciliation.retry_sync_job(db, store, job_id)
