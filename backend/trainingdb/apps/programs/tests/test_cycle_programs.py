from __future__ import annotations

from datetime import date

import pytest

from trainingdb.apps.audit import models as audit_models
from trainingdb.apps.modules.documents import DateRange, ModuleDocument, ModuleSession
from trainingdb.apps.programs import enrollment, models, presence, reconciliation, schemas, services
from trainingdb.errors import ConsistencyError, NotFoundError, ValidationError
from trainingdb.utils.identifiers import generate_module_id

ADMIN_ID = 900


def _create_module(store, title: str = "Finance basics"):
    module = store.create(
        ModuleDocument(
            id=generate_module_id(),
            title=title,
            sessions=[
                ModuleSession(
                    date_ranges=[DateRange(start_time="2024-04-08T09:00", end_time="2024-04-09T17:00")]
                )
            ],
        )
    )
    store.db.commit()
    return module


def _program_payload(module_ids=(), **overrides) -> schemas.CycleProgramCreate:
    values = {
        "title": "Managers",
        "type": models.CycleProgramType.PROGRAM,
        "program_type": models.ProgramKind.BATI_PRO,
        "start_date": date(2024, 4, 1),
        "end_date": date(2024, 4, 30),
        "module_ids": list(module_ids),
    }
    values.update(overrides)
    return schemas.CycleProgramCreate(**values)


def test_create_links_existing_modules(db_session, module_store):
    modules = [_create_module(module_store, "A"), _create_module(module_store, "B")]

    program = services.create_cycle_program(
        db_session,
        module_store,
        data=_program_payload([m.id for m in modules]),
        actor_user_id=ADMIN_ID,
    )

    assert program.module_ids == [m.id for m in modules]
    assert [m.title for m in services.linked_modules(module_store, program)] == ["A", "B"]
    assert schemas.CycleProgramRead.model_validate(program).module_ids == program.module_ids


def test_create_validates_input(db_session, module_store):
    with pytest.raises(ConsistencyError) as missing:
        services.create_cycle_program(db_session, module_store, data=_program_payload(["nope"]))
    with pytest.raises(ValidationError) as cycle_kind:
        services.create_cycle_program(
            db_session,
            module_store,
            data=_program_payload(type=models.CycleProgramType.CYCLE),
        )
    with pytest.raises(ValidationError) as dates:
        services.create_cycle_program(
            db_session,
            module_store,
            data=_program_payload(start_date=date(2024, 5, 1), end_date=date(2024, 4, 1)),
        )

    assert missing.value.code == "module_missing"
    assert cycle_kind.value.detail[0]["field"] == "program_type"
    assert dates.value.code == "invalid_date_range"
    assert services.list_cycle_programs(db_session) == []


def test_update_replaces_links(db_session, module_store):
    first, second = _create_module(module_store, "A"), _create_module(module_store, "B")
    program = services.create_cycle_program(db_session, module_store, data=_program_payload([first.id]))

    updated = services.update_cycle_program(
        db_session,
        module_store,
        program.id,
        data=schemas.CycleProgramUpdate(title="Managers 2024", module_ids=[second.id]),
    )

    assert updated.title == "Managers 2024"
    assert updated.module_ids == [second.id]
    assert db_session.query(models.CycleProgramModule).count() == 1


def test_list_filters_archived(db_session, module_store):
    active = services.create_cycle_program(db_session, module_store, data=_program_payload(title="Active"))
    archived = services.create_cycle_program(db_session, module_store, data=_program_payload(title="Old"))
    services.set_cycle_program_archived(db_session, archived.id, True)

    assert [p.id for p in services.list_cycle_programs(db_session, archived=False)] == [active.id]
    assert [p.id for p in services.list_cycle_programs(db_session, archived=True)] == [archived.id]


def test_delete_requires_archived_program(db_session, module_store):
    program = services.create_cycle_program(db_session, module_store, data=_program_payload())

    with pytest.raises(ValidationError) as excinfo:
        services.delete_cycle_program(db_session, program.id)

    assert excinfo.value.code == "cycle_program_not_archived"
    assert services.get_cycle_program(db_session, program.id) is program


def test_delete_removes_enrollment_data(db_session, module_store):
    module = _create_module(module_store)
    program = services.create_cycle_program(db_session, module_store, data=_program_payload([module.id]))
    registration = enrollment.register_to_program(
        db_session,
        module_store,
        cycle_program_id=program.id,
        user_id=3,
        selected_module_ids=[module.id],
    )
    enrollment.decide_registration(db_session, registration_id=registration.id, actor_user_id=ADMIN_ID, status="accepted")
    presence.submit_presence(
        db_session,
        module_store,
        module_id=module.id,
        entries=[{"user_id": 3, "day": 1, "status": "present"}],
    )
    reconciliation.enqueue_sync_job(db_session, module_id=module.id, cycle_program_id=program.id, user_ids=[3])
    db_session.commit()
    services.set_cycle_program_archived(db_session, program.id, True)

    services.delete_cycle_program(db_session, program.id, actor_user_id=ADMIN_ID)

    for model in (
        models.CycleProgram,
        models.CycleProgramModule,
        models.Registration,
        models.UserModule,
        models.PresenceRecord,
        models.SyncJob,
    ):
        assert db_session.query(model).count() == 0, model.__name__
    with pytest.raises(NotFoundError):
        services.get_cycle_program(db_session, program.id)
    assert module_store.find(module.id) is not None


def test_delete_module_refused_while_referenced(db_session, module_store):
    linked = _create_module(module_store, "Linked")
    loose = _create_module(module_store, "Loose")
    services.create_cycle_program(db_session, module_store, data=_program_payload([linked.id]))

    with pytest.raises(ConsistencyError) as excinfo:
        services.delete_module(db_session, module_store, linked.id, actor_user_id=ADMIN_ID)
    services.delete_module(db_session, module_store, loose.id, actor_user_id=ADMIN_ID)

    assert excinfo.value.code == "module_referenced"
    assert module_store.find(linked.id) is not None
    assert module_store.find(loose.id) is None
    event = (
        db_session.query(audit_models.AuditEvent)
        .filter(audit_models.AuditEvent.entity_type == "module", audit_models.AuditEvent.action == "delete")
        .one()
    )
    assert event.entity_id == loose.id
