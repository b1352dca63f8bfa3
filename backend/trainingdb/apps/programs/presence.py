# backend/trainingdb/apps/programs/presence.py
"""
Per-date attendance for accepted user modules.

A presence record is only ever written for a date that belongs to the
module's computed calendar, for a user whose user module is accepted.
Batches are all-or-nothing: one bad entry rejects the whole submission.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from ...database import atomic
from ...errors import ValidationError
from ..modules.scheduling import ModuleDuration
from ..modules.services import module_duration
from ..modules.store import ModuleStore
from . import models

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AcceptedSeat:
    user_id: int
    registration_id: int
    user_module_id: int


@dataclass
class PresenceRow:
    seat: AcceptedSeat
    statuses: Dict[date, models.PresenceStatus] = field(default_factory=dict)
    days_present: int = 0


@dataclass
class PresenceSheet:
    module_id: str
    dates: List[date]
    rows: List[PresenceRow]


def _value(entry: Any, key: str) -> Any:
    if isinstance(entry, dict):
        return entry.get(key)
    return getattr(entry, key, None)


def accepted_seats(db: Session, module_id: str) -> Dict[int, AcceptedSeat]:
    """Accepted user modules for a module keyed by user; the newest one wins."""
    rows = (
        db.query(models.UserModule, models.Registration.user_id)
        .join(models.Registration, models.Registration.id == models.UserModule.registration_id)
        .filter(
            models.UserModule.module_id == module_id,
            models.UserModule.status == models.EnrollmentStatus.ACCEPTED,
        )
        .order_by(models.UserModule.created_at.asc(), models.UserModule.id.asc())
        .all()
    )
    seats: Dict[int, AcceptedSeat] = {}
    for user_module, user_id in rows:
        seats[user_id] = AcceptedSeat(
            user_id=user_id,
            registration_id=user_module.registration_id,
            user_module_id=user_module.id,
        )
    return seats


def _resolve_date(entry: Any, duration: ModuleDuration, where: str) -> Tuple[Optional[date], Optional[dict]]:
    raw_date = _value(entry, "date")
    raw_day = _value(entry, "day")
    if (raw_date is None) == (raw_day is None):
        return None, {"field": where, "reason": "provide exactly one of date or day"}

    if raw_day is not None:
        if isinstance(raw_day, bool) or not isinstance(raw_day, int):
            return None, {"field": f"{where}.day", "reason": "day must be an integer"}
        if raw_day < 1 or raw_day > len(duration.dates):
            return None, {"field": f"{where}.day", "reason": f"day {raw_day} is outside the module's {duration.count} days"}
        return duration.dates[raw_day - 1], None

    if isinstance(raw_date, date):
        on = raw_date
    else:
        try:
            on = date.fromisoformat(str(raw_date).strip())
        except ValueError:
            return None, {"field": f"{where}.date", "reason": "invalid date format"}
    if on not in duration.dates:
        return None, {"field": f"{where}.date", "reason": f"{on.isoformat()} is not a day of this module"}
    return on, None


def _upsert(
    db: Session,
    *,
    module_id: str,
    writes: Dict[Tuple[int, date], models.PresenceStatus],
    recorded_by_user_id: Optional[int],
) -> int:
    registration_ids = {registration_id for registration_id, _ in writes}
    existing = {}
    if registration_ids:
        rows = (
            db.query(models.PresenceRecord)
            .filter(
                models.PresenceRecord.module_id == module_id,
                models.PresenceRecord.registration_id.in_(registration_ids),
            )
            .all()
        )
        existing = {(r.registration_id, r.date): r for r in rows}

    for (registration_id, on), status in writes.items():
        record = existing.get((registration_id, on))
        if record is None:
            db.add(
                models.PresenceRecord(
                    registration_id=registration_id,
                    module_id=module_id,
                    date=on,
                    status=status,
                    recorded_by_user_id=recorded_by_user_id,
                )
            )
        else:
            record.status = status
            record.recorded_by_user_id = recorded_by_user_id
    db.flush()
    return len(writes)


def submit_presence(
    db: Session,
    store: ModuleStore,
    *,
    module_id: str,
    entries: Iterable[Any],
    recorded_by_user_id: Optional[int] = None,
) -> int:
    """
    Upsert one presence record per (user, date) of the batch.

    Every entry is validated first; if any fails, a ValidationError listing
    all failures is raised and nothing is written.
    """
    module = store.get(module_id)
    duration = module_duration(module)
    seats = accepted_seats(db, module.id)

    failures: List[Dict[str, str]] = []
    writes: Dict[Tuple[int, date], models.PresenceStatus] = {}
    for index, entry in enumerate(entries):
        where = f"entries[{index}]"

        raw_user = _value(entry, "user_id")
        try:
            if isinstance(raw_user, bool):
                raise ValueError
            user_id = int(str(raw_user).strip())
        except (TypeError, ValueError):
            failures.append({"field": f"{where}.user_id", "reason": "user id must be numeric"})
            continue

        raw_status = _value(entry, "status")
        try:
            status = models.PresenceStatus(getattr(raw_status, "value", raw_status))
        except ValueError:
            failures.append({"field": f"{where}.status", "reason": "status must be present or absent"})
            continue

        on, failure = _resolve_date(entry, duration, where)
        if failure:
            failures.append(failure)
            continue

        seat = seats.get(user_id)
        if seat is None:
            failures.append({"field": f"{where}.user_id", "reason": f"User {user_id} has no accepted enrollment in this module"})
            continue

        key = (seat.registration_id, on)
        if key in writes:
            failures.append({"field": where, "reason": f"duplicate entry for user {user_id} on {on.isoformat()}"})
            continue
        writes[key] = status

    if failures:
        raise ValidationError(code="invalid_presence_batch", detail=failures)

    with atomic(db, operation="submit_presence"):
        written = _upsert(db, module_id=module.id, writes=writes, recorded_by_user_id=recorded_by_user_id)

    logger.info("Presence batch recorded", extra={"module_id": module.id, "written": written})
    return written


def days_present(db: Session, *, registration_id: int, module_id: str) -> int:
    return (
        db.query(func.count(models.PresenceRecord.id))
        .filter(
            models.PresenceRecord.registration_id == registration_id,
            models.PresenceRecord.module_id == module_id,
            models.PresenceRecord.status == models.PresenceStatus.PRESENT,
        )
        .scalar()
        or 0
    )


def get_presence_sheet(db: Session, store: ModuleStore, module_id: str) -> PresenceSheet:
    module = store.get(module_id)
    duration = module_duration(module)
    seats = accepted_seats(db, module.id)

    registration_ids = [s.registration_id for s in seats.values()]
    records: List[models.PresenceRecord] = []
    counts: Dict[int, int] = {}
    if registration_ids:
        records = (
            db.query(models.PresenceRecord)
            .filter(
                models.PresenceRecord.module_id == module.id,
                models.PresenceRecord.registration_id.in_(registration_ids),
            )
            .all()
        )
        counts = dict(
            db.query(models.PresenceRecord.registration_id, func.count(models.PresenceRecord.id))
            .filter(
                models.PresenceRecord.module_id == module.id,
                models.PresenceRecord.registration_id.in_(registration_ids),
                models.PresenceRecord.status == models.PresenceStatus.PRESENT,
            )
            .group_by(models.PresenceRecord.registration_id)
            .all()
        )

    by_registration: Dict[int, Dict[date, models.PresenceStatus]] = {}
    for record in records:
        by_registration.setdefault(record.registration_id, {})[record.date] = record.status

    rows = []
    for user_id in sorted(seats):
        seat = seats[user_id]
        recorded = by_registration.get(seat.registration_id, {})
        rows.append(
            PresenceRow(
                seat=seat,
                statuses={d: recorded.get(d, models.PresenceStatus.ABSENT) for d in duration.dates},
                days_present=counts.get(seat.registration_id, 0),
            )
        )
    return PresenceSheet(module_id=module.id, dates=list(duration.dates), rows=rows)


def import_legacy_presence(
    db: Session,
    store: ModuleStore,
    module_id: str,
    *,
    recorded_by_user_id: Optional[int] = None,
) -> Tuple[int, int]:
    """
    Copy the document's legacy day-indexed presence into presence records.

    Users without an accepted enrollment and day indexes outside the
    module's calendar are skipped. Returns (imported, skipped).
    """
    module = store.get(module_id)
    duration = module_duration(module)
    seats = accepted_seats(db, module.id)

    writes: Dict[Tuple[int, date], models.PresenceStatus] = {}
    skipped = 0
    for entry in module.presence:
        seat = seats.get(entry.user_id)
        for daily in entry.daily_statuses:
            if seat is None or daily.day > len(duration.dates):
                skipped += 1
                continue
            writes[(seat.registration_id, duration.dates[daily.day - 1])] = models.PresenceStatus(daily.status)

    with atomic(db, operation="import_legacy_presence"):
        imported = _upsert(db, module_id=module.id, writes=writes, recorded_by_user_id=recorded_by_user_id)

    if skipped:
        logger.warning(
            "Skipped legacy presence entries",
            extra={"module_id": module.id, "skipped": skipped, "imported": imported},
        )
    return imported, skipped
