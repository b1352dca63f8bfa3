# backend/trainingdb/apps/programs/reconciliation.py
"""
Outbox for the document -> relational synchronisation.

Assigning users commits the module document first. When the module is
linked to a cycle/program, a SyncJob row is then written and run right
away. A failed run leaves the job FAILED with a backoff so the dispatcher
can retry it; after MAX_ATTEMPTS it is dead-lettered until an admin
requeues it.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ...database import DocumentSessionLocal, WriteSessionLocal, atomic
from ...errors import EnrollmentError, not_found
from ..audit import services as audit_services
from ..modules.documents import ModuleDocument
from ..modules.services import Eviction, replace_assigned_users
from ..modules.store import ModuleStore
from . import models
from .sync import SYNC_OPERATIONS, resolve_program_link

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = int(os.getenv("SYNC_DISPATCH_LIMIT", "50"))
DEFAULT_INTERVAL_SEC = int(os.getenv("SYNC_DISPATCH_INTERVAL_SEC", "5"))
MAX_ATTEMPTS = int(os.getenv("SYNC_DISPATCH_MAX_ATTEMPTS", "5"))
BASE_BACKOFF_SEC = int(os.getenv("SYNC_DISPATCH_BACKOFF_SEC", "5"))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _compute_next_attempt(now: datetime, attempt: int) -> datetime:
    backoff = BASE_BACKOFF_SEC * (2 ** max(attempt - 1, 0))
    return now + timedelta(seconds=backoff)


@dataclass
class AssignmentResult:
    module: ModuleDocument
    evicted: List[Eviction] = field(default_factory=list)
    cycle_program_id: Optional[int] = None
    sync_job: Optional[models.SyncJob] = None


def enqueue_sync_job(
    db: Session,
    *,
    module_id: str,
    cycle_program_id: int,
    user_ids: Iterable[int],
    mode: models.SyncMode = models.SyncMode.RESET_AND_SYNC,
    created_by_user_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> models.SyncJob:
    job = models.SyncJob(
        module_id=module_id,
        cycle_program_id=cycle_program_id,
        mode=mode,
        assigned_user_ids=list(user_ids),
        status=models.SyncJobStatus.PENDING,
        attempt_count=0,
        next_attempt_at=now or _utcnow(),
        created_by_user_id=created_by_user_id,
    )
    db.add(job)
    db.flush()
    return job


def _mark_failed(job: models.SyncJob, *, now: datetime, attempt: int, error: str) -> None:
    job.status = models.SyncJobStatus.FAILED
    job.last_error = error[:500]
    job.attempt_count = attempt
    job.next_attempt_at = _compute_next_attempt(now, attempt)
    if attempt >= MAX_ATTEMPTS:
        job.status = models.SyncJobStatus.DEAD_LETTER
        job.next_attempt_at = None


def run_sync_job(
    db: Session,
    store: ModuleStore,
    job_id: str,
    *,
    now: Optional[datetime] = None,
) -> models.SyncJob:
    """
    Run one job in its own transaction.

    The synchronisation and the SUCCEEDED mark commit together. On a
    domain or store error that work is rolled back and only the failure
    bookkeeping is committed.
    """
    now = now or _utcnow()
    job = db.get(models.SyncJob, job_id)
    if job is None:
        raise not_found("sync_job", job_id)
    if job.status in (models.SyncJobStatus.SUCCEEDED, models.SyncJobStatus.DEAD_LETTER):
        return job

    attempt = job.attempt_count + 1
    operation = SYNC_OPERATIONS[models.SyncMode(job.mode)]
    try:
        with atomic(db, operation="sync_job"):
            operation(
                db,
                store,
                module_id=job.module_id,
                user_ids=job.assigned_user_ids or [],
                cycle_program_id=job.cycle_program_id,
                actor_user_id=job.created_by_user_id,
            )
            job.status = models.SyncJobStatus.SUCCEEDED
            job.attempt_count = attempt
            job.last_error = None
            job.next_attempt_at = None
            job.completed_at = now
    except EnrollmentError as exc:
        _mark_failed(job, now=now, attempt=attempt, error=str(exc))
        db.commit()
        logger.warning(
            "Sync job failed",
            extra={
                "sync_job_id": job.id,
                "module_id": job.module_id,
                "cycle_program_id": job.cycle_program_id,
                "attempt": attempt,
                "status": job.status.value,
                "error_code": exc.code,
            },
        )
    return job


def requeue_sync_job(
    db: Session,
    job_id: str,
    *,
    now: Optional[datetime] = None,
) -> models.SyncJob:
    """
    Make a FAILED or DEAD_LETTER job due again for a manual retry.

    A dead-lettered job gets a fresh attempt budget. SUCCEEDED and PENDING
    jobs are returned unchanged.
    """
    job = db.get(models.SyncJob, job_id)
    if job is None:
        raise not_found("sync_job", job_id)
    if job.status not in (models.SyncJobStatus.FAILED, models.SyncJobStatus.DEAD_LETTER):
        return job

    previous = job.status
    with atomic(db, operation="requeue_sync_job"):
        if previous == models.SyncJobStatus.DEAD_LETTER:
            job.attempt_count = 0
        job.status = models.SyncJobStatus.PENDING
        job.next_attempt_at = now or _utcnow()
    logger.info(
        "Sync job requeued",
        extra={"sync_job_id": job.id, "module_id": job.module_id, "previous_status": previous.value},
    )
    return job


def retry_sync_job(db: Session, store: ModuleStore, job_id: str) -> models.SyncJob:
    now = _utcnow()
    requeue_sync_job(db, job_id, now=now)
    return run_sync_job(db, store, job_id, now=now)


def dispatch_due_jobs(
    db: Session,
    store: ModuleStore,
    *,
    now: Optional[datetime] = None,
    limit: int = DEFAULT_LIMIT,
) -> int:
    now = now or _utcnow()
    rows = (
        db.query(models.SyncJob.id)
        .filter(
            models.SyncJob.status.in_(
                [
                    models.SyncJobStatus.PENDING,
                    models.SyncJobStatus.FAILED,
                ]
            ),
            or_(models.SyncJob.next_attempt_at.is_(None), models.SyncJob.next_attempt_at <= now),
        )
        .order_by(models.SyncJob.next_attempt_at.asc(), models.SyncJob.created_at.asc())
        .limit(limit)
        .all()
    )
    # Release the read transaction; every job commits on its own.
    db.commit()
    for (job_id,) in rows:
        run_sync_job(db, store, job_id, now=now)
    return len(rows)


def list_sync_jobs(
    db: Session,
    *,
    module_id: Optional[str] = None,
    status: Optional[models.SyncJobStatus] = None,
    limit: int = 200,
) -> List[models.SyncJob]:
    query = db.query(models.SyncJob)
    if module_id:
        query = query.filter(models.SyncJob.module_id == module_id)
    if status is not None:
        query = query.filter(models.SyncJob.status == status)
    return query.order_by(models.SyncJob.created_at.desc()).limit(limit).all()


# ---------------------------------------------------------------------------
# ASSIGNMENT
# ---------------------------------------------------------------------------


def assign_users(
    db: Session,
    store: ModuleStore,
    *,
    module_id: str,
    user_ids: Iterable[object],
    actor_user_id: Optional[int] = None,
) -> AssignmentResult:
    """
    Replace a module's assigned users and propagate the change.

    1. Conflicting assignments elsewhere are evicted and the module
       document is committed.
    2. If the module belongs to a cycle/program, a sync job is written and
       run. Its failure does not undo step 1; the job stays retryable.
    """
    module = store.get(module_id)
    program = resolve_program_link(db, module)

    with atomic(store.db, operation="assign_users"):
        outcome = replace_assigned_users(store, module.id, user_ids)

    result = AssignmentResult(
        module=outcome.module,
        evicted=outcome.evicted,
        cycle_program_id=program.id if program is not None else None,
    )

    with atomic(db, operation="enqueue_sync_job"):
        audit_services.log_event(
            db,
            actor_user_id=actor_user_id,
            entity_type="module",
            entity_id=module.id,
            action="assign_users",
            before={"assigned_users": module.assigned_users},
            after={"assigned_users": outcome.module.assigned_users},
            metadata={"evicted": [{"user_id": e.user_id, "from_module_id": e.from_module_id} for e in outcome.evicted]},
        )
        if program is not None:
            result.sync_job = enqueue_sync_job(
                db,
                module_id=module.id,
                cycle_program_id=program.id,
                user_ids=outcome.module.assigned_users,
                created_by_user_id=actor_user_id,
            )

    if result.sync_job is not None:
        result.sync_job = run_sync_job(db, store, result.sync_job.id)
    return result


def accept_interested_user(
    db: Session,
    store: ModuleStore,
    *,
    module_id: str,
    user_id: int,
    actor_user_id: Optional[int] = None,
) -> AssignmentResult:
    module = store.get(module_id)
    if user_id not in module.interested_users and user_id not in module.assigned_users:
        raise not_found("interested_user", user_id)
    return assign_users(
        db,
        store,
        module_id=module.id,
        user_ids=[*module.assigned_users, user_id],
        actor_user_id=actor_user_id,
    )


def run_dispatch_loop() -> None:
    while True:
        db = WriteSessionLocal()
        doc_db = DocumentSessionLocal()
        try:
            dispatched = dispatch_due_jobs(db, ModuleStore(doc_db))
        except Exception:
            logger.exception("Sync dispatch cycle failed")
            db.rollback()
            dispatched = 0
        finally:
            doc_db.close()
            db.close()
        time.sleep(DEFAULT_INTERVAL_SEC if dispatched == 0 else 0)


if __name__ == "__main__":
    run_dispatch_loop()
