# backend/trainingdb/apps/modules/store.py
"""
Persistence interface for module documents.

Callers own the transaction: the store only flushes, and the session is
bound to the document engine, never to the relational one.
"""

from __future__ import annotations

from typing import Iterable, List, Optional, Set

from sqlalchemy.orm import Session

from ...errors import not_found
from ...utils.identifiers import generate_module_id
from . import models
from .documents import ModuleDocument


def _to_document(record: models.ModuleRecord) -> ModuleDocument:
    body = dict(record.document or {})
    body.update(
        id=record.id,
        archived=bool(record.archived),
        created_at=record.created_at,
        updated_at=record.updated_at,
    )
    return ModuleDocument.model_validate(body)


def _dedupe(user_ids: Iterable[int]) -> List[int]:
    seen: Set[int] = set()
    ordered: List[int] = []
    for user_id in user_ids:
        if user_id not in seen:
            seen.add(user_id)
            ordered.append(user_id)
    return ordered


class ModuleStore:
    def __init__(self, db: Session):
        self.db = db

    # -- reads ------------------------------------------------------------

    def _record(self, module_id: str) -> Optional[models.ModuleRecord]:
        return self.db.get(models.ModuleRecord, str(module_id))

    def find(self, module_id: str) -> Optional[ModuleDocument]:
        record = self._record(module_id)
        return _to_document(record) if record else None

    def get(self, module_id: str) -> ModuleDocument:
        document = self.find(module_id)
        if document is None:
            raise not_found("module", module_id)
        return document

    def list(self, *, archived: Optional[bool] = None) -> List[ModuleDocument]:
        query = self.db.query(models.ModuleRecord)
        if archived is not None:
            query = query.filter(models.ModuleRecord.archived.is_(archived))
        return [_to_document(r) for r in query.order_by(models.ModuleRecord.created_at.asc()).all()]

    def get_many(self, module_ids: Iterable[str]) -> List[ModuleDocument]:
        ids = list(dict.fromkeys(str(m) for m in module_ids))
        if not ids:
            return []
        records = (
            self.db.query(models.ModuleRecord)
            .filter(models.ModuleRecord.id.in_(ids))
            .all()
        )
        by_id = {r.id: r for r in records}
        return [_to_document(by_id[m]) for m in ids if m in by_id]

    def existing_ids(self, module_ids: Iterable[str]) -> Set[str]:
        ids = {str(m) for m in module_ids}
        if not ids:
            return set()
        rows = (
            self.db.query(models.ModuleRecord.id)
            .filter(models.ModuleRecord.id.in_(ids))
            .all()
        )
        return {row[0] for row in rows}

    def list_assigned_to(self, user_id: int) -> List[ModuleDocument]:
        records = (
            self.db.query(models.ModuleRecord)
            .join(models.ModuleAssignment, models.ModuleAssignment.module_id == models.ModuleRecord.id)
            .filter(models.ModuleAssignment.user_id == user_id)
            .order_by(models.ModuleRecord.created_at.asc())
            .all()
        )
        return [_to_document(r) for r in records]

    def list_program_linked(self) -> List[ModuleDocument]:
        records = (
            self.db.query(models.ModuleRecord)
            .filter(
                (models.ModuleRecord.cycle_program_id.isnot(None))
                | (models.ModuleRecord.cycle_program_title.isnot(None))
            )
            .order_by(models.ModuleRecord.created_at.asc())
            .all()
        )
        return [_to_document(r) for r in records]

    # -- writes -----------------------------------------------------------

    def create(self, document: ModuleDocument) -> ModuleDocument:
        record = models.ModuleRecord(id=document.id or generate_module_id())
        if document.created_at is not None:
            record.created_at = document.created_at
        self.db.add(record)
        self._write(record, document)
        return _to_document(record)

    def save(self, document: ModuleDocument) -> ModuleDocument:
        record = self._record(document.id)
        if record is None:
            raise not_found("module", document.id)
        self._write(record, document)
        return _to_document(record)

    def pull_assigned_user(self, module_id: str, user_id: int) -> bool:
        """Remove one user from a module's assigned users, if present."""
        record = self._record(module_id)
        if record is None:
            return False
        document = _to_document(record)
        if user_id not in document.assigned_users:
            return False
        document.assigned_users = [u for u in document.assigned_users if u != user_id]
        self._write(record, document)
        return True

    def set_archived(self, module_id: str, archived: bool) -> ModuleDocument:
        record = self._record(module_id)
        if record is None:
            raise not_found("module", module_id)
        record.archived = archived
        self.db.flush()
        return _to_document(record)

    def delete(self, module_id: str) -> None:
        record = self._record(module_id)
        if record is None:
            raise not_found("module", module_id)
        self.db.delete(record)
        self.db.flush()

    def _write(self, record: models.ModuleRecord, document: ModuleDocument) -> None:
        document.assigned_users = _dedupe(document.assigned_users)
        wanted = set(document.assigned_users)
        document.interested_users = _dedupe(u for u in document.interested_users if u not in wanted)
        record.title = document.title
        record.cycle_program_id = document.cycle_program_id
        record.cycle_program_title = document.cycle_program_title
        record.archived = document.archived
        record.document = document.storage_payload()

        current = {a.user_id: a for a in record.assignments}
        for user_id, assignment in current.items():
            if user_id not in wanted:
                record.assignments.remove(assignment)
        for user_id in document.assigned_users:
            if user_id not in current:
                record.assignments.append(models.ModuleAssignment(user_id=user_id))
        self.db.flush()
