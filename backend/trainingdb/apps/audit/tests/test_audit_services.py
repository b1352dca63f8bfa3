from __future__ import annotations

import pytest

from trainingdb.apps.audit import schemas
from trainingdb.apps.audit import services as audit_services


def test_log_event_writes_record(db_session):
    event = audit_services.log_event(
        db_session,
        actor_user_id=7,
        entity_type="registration",
        entity_id="42",
        action="transition",
        after={"status": "ACCEPTED"},
        metadata={"workflow": "registration"},
    )

    db_session.commit()
    assert event is not None
    read = schemas.AuditEventRead.model_validate(event)
    assert read.entity_type == "registration"
    assert read.metadata == {"workflow": "registration"}


def test_list_audit_events_filters_by_entity(db_session):
    for entity_id in ("1", "2", "2"):
        audit_services.log_event(
            db_session,
            actor_user_id=None,
            entity_type="module",
            entity_id=entity_id,
            action="assign_users",
        )
    audit_services.log_event(db_session, actor_user_id=None, entity_type="registration", entity_id="2", action="create")
    db_session.commit()

    assert len(audit_services.list_audit_events(db_session, entity_type="module")) == 3
    assert len(audit_services.list_audit_events(db_session, entity_type="module", entity_id="2")) == 2
    assert len(audit_services.list_audit_events(db_session, limit=1)) == 1


def test_log_event_failure_only_raises_when_critical(db_session, monkeypatch):
    def _broken(db, *, data):
        raise RuntimeError("audit table unavailable")

    monkeypatch.setattr(audit_services, "create_audit_event", _broken)

    assert (
        audit_services.log_event(
            db_session,
            actor_user_id=None,
            entity_type="module",
            entity_id="1",
            action="assign_users",
        )
        is None
    )
    with pytest.raises(RuntimeError):
        audit_services.log_event(
            db_session,
            actor_user_id=None,
            entity_type="registration",
            entity_id="1",
            action="transition",
            critical=True,
        )
