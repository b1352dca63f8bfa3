from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from trainingdb.apps.programs import reconciliation
from trainingdb.apps.programs import services as program_services
from trainingdb.database import atomic, get_db, get_document_db
from trainingdb.security import Principal, get_current_principal, require_admin

from . import schemas, services
from .store import ModuleStore


router = APIRouter(
    prefix="/modules",
    tags=["modules"],
)


def get_module_store(doc_db: Session = Depends(get_document_db)) -> ModuleStore:
    return ModuleStore(doc_db)


def _assignment_result(result) -> schemas.AssignUsersResult:
    return schemas.AssignUsersResult(
        module_id=result.module.id,
        assigned_users=result.module.assigned_users,
        evicted=[schemas.EvictionRead(user_id=e.user_id, from_module_id=e.from_module_id) for e in result.evicted],
        cycle_program_id=result.cycle_program_id,
        sync_job=schemas.SyncJobSummary.model_validate(result.sync_job) if result.sync_job is not None else None,
    )


@router.get("", response_model=List[schemas.ModuleRead])
def list_modules(
    archived: Optional[bool] = Query(None),
    store: ModuleStore = Depends(get_module_store),
    _: Principal = Depends(get_current_principal),
):
    return [services.to_read(m) for m in store.list(archived=archived)]


@router.post("", response_model=schemas.ModuleRead, status_code=status.HTTP_201_CREATED)
def create_module(
    payload: schemas.ModuleCreate,
    db: Session = Depends(get_db),
    store: ModuleStore = Depends(get_module_store),
    admin: Principal = Depends(require_admin),
):
    with atomic(store.db, operation="create_module"):
        module = services.create_module(store, payload)
    if payload.assigned_users:
        module = reconciliation.assign_users(
            db,
            store,
            module_id=module.id,
            user_ids=payload.assigned_users,
            actor_user_id=admin.user_id,
        ).module
    return services.to_read(module)


@router.post("/conflicts", response_model=schemas.ConflictCheckResult)
def check_conflict(
    payload: schemas.ConflictCheckRequest,
    store: ModuleStore = Depends(get_module_store),
    _: Principal = Depends(get_current_principal),
):
    return schemas.ConflictCheckResult(
        module_id=payload.module_id,
        other_module_id=payload.other_module_id,
        conflict=services.check_conflict(store, payload.module_id, payload.other_module_id),
        checked_at=datetime.now(timezone.utc),
    )


@router.get("/users/{user_id}", response_model=List[schemas.ModuleRead])
def list_modules_for_user(
    user_id: int,
    include_archived: bool = Query(False),
    store: ModuleStore = Depends(get_module_store),
    principal: Principal = Depends(get_current_principal),
):
    if principal.user_id != user_id and not principal.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient privileges")
    modules = services.modules_for_user(store, user_id, include_archived=include_archived)
    return [services.to_read(m) for m in modules]


@router.get("/{module_id}", response_model=schemas.ModuleRead)
def get_module(
    module_id: str,
    store: ModuleStore = Depends(get_module_store),
    _: Principal = Depends(get_current_principal),
):
    return services.to_read(store.get(module_id))


@router.get("/{module_id}/duration", response_model=schemas.DurationRead)
def get_module_duration(
    module_id: str,
    store: ModuleStore = Depends(get_module_store),
    _: Principal = Depends(get_current_principal),
):
    duration = services.module_duration(store.get(module_id))
    return schemas.DurationRead(count=duration.count, dates=duration.dates)


@router.put("/{module_id}", response_model=schemas.ModuleRead)
def update_module(
    module_id: str,
    payload: schemas.ModuleUpdate,
    db: Session = Depends(get_db),
    store: ModuleStore = Depends(get_module_store),
    admin: Principal = Depends(require_admin),
):
    with atomic(store.db, operation="update_module"):
        module = services.update_module(store, module_id, payload)
    if payload.assigned_users is not None:
        module = reconciliation.assign_users(
            db,
            store,
            module_id=module.id,
            user_ids=payload.assigned_users,
            actor_user_id=admin.user_id,
        ).module
    return services.to_read(module)


@router.put("/{module_id}/assigned-users", response_model=schemas.AssignUsersResult)
def assign_module_users(
    module_id: str,
    payload: schemas.AssignUsersRequest,
    db: Session = Depends(get_db),
    store: ModuleStore = Depends(get_module_store),
    admin: Principal = Depends(require_admin),
):
    result = reconciliation.assign_users(
        db,
        store,
        module_id=module_id,
        user_ids=payload.user_ids,
        actor_user_id=admin.user_id,
    )
    return _assignment_result(result)


@router.post("/{module_id}/join", response_model=schemas.ModuleRead)
def request_join(
    module_id: str,
    store: ModuleStore = Depends(get_module_store),
    principal: Principal = Depends(get_current_principal),
):
    with atomic(store.db, operation="request_join"):
        module = services.request_join(store, module_id, principal.user_id)
    return services.to_read(module)


@router.post("/{module_id}/interested/{user_id}/accept", response_model=schemas.AssignUsersResult)
def accept_interested_user(
    module_id: str,
    user_id: int,
    db: Session = Depends(get_db),
    store: ModuleStore = Depends(get_module_store),
    admin: Principal = Depends(require_admin),
):
    result = reconciliation.accept_interested_user(
        db,
        store,
        module_id=module_id,
        user_id=user_id,
        actor_user_id=admin.user_id,
    )
    return _assignment_result(result)


@router.post("/{module_id}/archive", response_model=schemas.ModuleRead)
def archive_module(
    module_id: str,
    store: ModuleStore = Depends(get_module_store),
    _: Principal = Depends(require_admin),
):
    with atomic(store.db, operation="archive_module"):
        module = services.set_archived(store, module_id, True)
    return services.to_read(module)


@router.post("/{module_id}/unarchive", response_model=schemas.ModuleRead)
def unarchive_module(
    module_id: str,
    store: ModuleStore = Depends(get_module_store),
    _: Principal = Depends(require_admin),
):
    with atomic(store.db, operation="unarchive_module"):
        module = services.set_archived(store, module_id, False)
    return services.to_read(module)


@router.delete("/{module_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_module(
    module_id: str,
    db: Session = Depends(get_db),
    store: ModuleStore = Depends(get_module_store),
    admin: Principal = Depends(require_admin),
):
    program_services.delete_module(db, store, module_id, actor_user_id=admin.user_id)
    return None
