from __future__ import annotations

import itertools
from datetime import date

import pytest

from trainingdb.apps.audit import models as audit_models
from trainingdb.apps.audit import services as audit_services
from trainingdb.apps.modules.documents import DateRange, ModuleDocument, ModuleSession
from trainingdb.apps.programs import enrollment, models, schemas, services
from trainingdb.errors import ConsistencyError, NotFoundError, TransitionError, ValidationError
from trainingdb.utils.identifiers import generate_module_id

Status = models.EnrollmentStatus
ADMIN_ID = 900


def _create_module(store, title: str, day: int = 1):
    module = store.create(
        ModuleDocument(
            id=generate_module_id(),
            title=title,
            sessions=[
                ModuleSession(
                    date_ranges=[
                        DateRange(start_time=f"2024-01-{day:02d}T09:00", end_time=f"2024-01-{day:02d}T17:00")
                    ]
                )
            ],
        )
    )
    store.db.commit()
    return module


def _create_program(db_session, store, module_ids, *, kind=models.CycleProgramType.CYCLE, title="Leadership"):
    return services.create_cycle_program(
        db_session,
        store,
        data=schemas.CycleProgramCreate(
            title=title,
            type=kind,
            start_date=date(2024, 1, 1),
            end_date=date(2024, 12, 31),
            module_ids=module_ids,
        ),
        actor_user_id=ADMIN_ID,
    )


def _cycle_with_modules(db_session, store, count: int = 3):
    modules = [_create_module(store, f"Module {i}", day=i + 1) for i in range(count)]
    program = _create_program(db_session, store, [m.id for m in modules])
    return program, modules


def test_aggregate_status_matches_rule():
    assert enrollment.aggregate_status([]) == Status.PENDING
    for size in (1, 2, 3):
        for combo in itertools.product(list(Status), repeat=size):
            result = enrollment.aggregate_status(combo)
            if all(s == Status.ACCEPTED for s in combo):
                assert result == Status.ACCEPTED
            elif all(s == Status.REJECTED for s in combo):
                assert result == Status.REJECTED
            else:
                assert result == Status.PENDING


def test_cycle_registration_materializes_every_module(db_session, module_store):
    program, modules = _cycle_with_modules(db_session, module_store)

    registration = enrollment.register_to_program(
        db_session,
        module_store,
        cycle_program_id=program.id,
        user_id=11,
        selected_module_ids=[modules[0].id],
    )

    assert registration.status == Status.PENDING
    assert [um.module_id for um in registration.user_modules] == [m.id for m in modules]
    assert all(um.status == Status.PENDING for um in registration.user_modules)


def test_program_registration_uses_selection(db_session, module_store):
    modules = [_create_module(module_store, f"Module {i}", day=i + 1) for i in range(3)]
    program = _create_program(
        db_session,
        module_store,
        [m.id for m in modules],
        kind=models.CycleProgramType.PROGRAM,
    )

    registration = enrollment.register_to_program(
        db_session,
        module_store,
        cycle_program_id=program.id,
        user_id=12,
        selected_module_ids=[modules[2].id, modules[0].id],
    )

    assert sorted(um.module_id for um in registration.user_modules) == sorted([modules[0].id, modules[2].id])


def test_program_registration_requires_linked_selection(db_session, module_store):
    modules = [_create_module(module_store, "Linked"), _create_module(module_store, "Loose", day=2)]
    program = _create_program(
        db_session,
        module_store,
        [modules[0].id],
        kind=models.CycleProgramType.PROGRAM,
    )

    with pytest.raises(ValidationError) as empty:
        enrollment.register_to_program(db_session, module_store, cycle_program_id=program.id, user_id=12)
    with pytest.raises(ValidationError) as unlinked:
        enrollment.register_to_program(
            db_session,
            module_store,
            cycle_program_id=program.id,
            user_id=12,
            selected_module_ids=[modules[1].id],
        )

    assert empty.value.code == "validation_error"
    assert unlinked.value.code == "module_not_in_program"
    assert db_session.query(models.Registration).count() == 0


def test_registration_rejects_archived_program(db_session, module_store):
    program, _ = _cycle_with_modules(db_session, module_store, count=1)
    services.set_cycle_program_archived(db_session, program.id, True)

    with pytest.raises(ValidationError) as excinfo:
        enrollment.register_to_program(db_session, module_store, cycle_program_id=program.id, user_id=5)

    assert excinfo.value.code == "cycle_program_archived"


def test_registration_rejects_missing_module_document(db_session, module_store):
    program, modules = _cycle_with_modules(db_session, module_store, count=2)
    module_store.delete(modules[1].id)
    module_store.db.commit()

    with pytest.raises(ConsistencyError) as excinfo:
        enrollment.register_to_program(db_session, module_store, cycle_program_id=program.id, user_id=5)

    assert excinfo.value.code == "module_missing"
    assert db_session.query(models.Registration).count() == 0


def test_registration_for_unknown_program(db_session, module_store):
    with pytest.raises(NotFoundError) as excinfo:
        enrollment.register_to_program(db_session, module_store, cycle_program_id=404, user_id=5)

    assert excinfo.value.code == "cycle_program_not_found"


def test_mixed_module_decisions_keep_registration_pending(db_session, module_store):
    program, modules = _cycle_with_modules(db_session, module_store)
    registration = enrollment.register_to_program(db_session, module_store, cycle_program_id=program.id, user_id=21)

    decision = enrollment.decide_registration(
        db_session,
        registration_id=registration.id,
        actor_user_id=ADMIN_ID,
        module_statuses=[
            (modules[0].id, "accepted"),
            (modules[1].id, "accepted"),
            (modules[2].id, "rejected"),
        ],
    )

    assert decision.final_status == Status.PENDING
    assert registration.status == Status.PENDING
    assert [um.status for um in registration.user_modules] == [Status.ACCEPTED, Status.ACCEPTED, Status.REJECTED]
    assert all(um.decided_by_user_id == ADMIN_ID for um in registration.user_modules)


def test_all_accepted_modules_accept_registration(db_session, module_store):
    program, modules = _cycle_with_modules(db_session, module_store)
    registration = enrollment.register_to_program(db_session, module_store, cycle_program_id=program.id, user_id=22)

    decision = enrollment.decide_registration(
        db_session,
        registration_id=registration.id,
        actor_user_id=ADMIN_ID,
        module_statuses=[(m.id, Status.ACCEPTED) for m in modules],
    )

    assert decision.final_status == Status.ACCEPTED
    assert registration.status == Status.ACCEPTED
    assert registration.decided_by_user_id == ADMIN_ID
    assert registration.decided_at is not None


def test_partial_decisions_accumulate(db_session, module_store):
    program, modules = _cycle_with_modules(db_session, module_store, count=2)
    registration = enrollment.register_to_program(db_session, module_store, cycle_program_id=program.id, user_id=23)

    first = enrollment.decide_registration(
        db_session,
        registration_id=registration.id,
        actor_user_id=ADMIN_ID,
        module_statuses=[(modules[0].id, "rejected")],
    )
    second = enrollment.decide_registration(
        db_session,
        registration_id=registration.id,
        actor_user_id=ADMIN_ID,
        module_statuses=[(modules[1].id, "rejected")],
    )

    assert first.final_status == Status.PENDING
    assert second.final_status == Status.REJECTED


def test_cascade_status_decides_every_module(db_session, module_store):
    program, _ = _cycle_with_modules(db_session, module_store)
    registration = enrollment.register_to_program(db_session, module_store, cycle_program_id=program.id, user_id=24)

    decision = enrollment.decide_registration(
        db_session,
        registration_id=registration.id,
        actor_user_id=ADMIN_ID,
        status="rejected",
        correlation_id="batch-1",
    )

    assert decision.final_status == Status.REJECTED
    assert {um.status for um in registration.user_modules} == {Status.REJECTED}
    events = (
        db_session.query(audit_models.AuditEvent)
        .filter(audit_models.AuditEvent.correlation_id == "batch-1")
        .all()
    )
    assert len(events) == 4


def test_module_statuses_take_precedence_over_status(db_session, module_store):
    program, modules = _cycle_with_modules(db_session, module_store, count=2)
    registration = enrollment.register_to_program(db_session, module_store, cycle_program_id=program.id, user_id=25)

    enrollment.decide_registration(
        db_session,
        registration_id=registration.id,
        actor_user_id=ADMIN_ID,
        status="rejected",
        module_statuses=[(modules[0].id, "accepted")],
    )

    assert [um.status for um in registration.user_modules] == [Status.ACCEPTED, Status.PENDING]


def test_decided_module_cannot_change(db_session, module_store):
    program, _ = _cycle_with_modules(db_session, module_store, count=2)
    registration = enrollment.register_to_program(db_session, module_store, cycle_program_id=program.id, user_id=26)
    enrollment.decide_registration(db_session, registration_id=registration.id, actor_user_id=ADMIN_ID, status="accepted")

    with pytest.raises(TransitionError) as excinfo:
        enrollment.decide_registration(
            db_session,
            registration_id=registration.id,
            actor_user_id=ADMIN_ID,
            status="rejected",
        )

    assert excinfo.value.code == "invalid_transition"
    assert registration.status == Status.ACCEPTED
    assert {um.status for um in registration.user_modules} == {Status.ACCEPTED}


def test_decision_input_errors(db_session, module_store):
    program, modules = _cycle_with_modules(db_session, module_store, count=1)
    registration = enrollment.register_to_program(db_session, module_store, cycle_program_id=program.id, user_id=27)

    with pytest.raises(NotFoundError) as unknown_module:
        enrollment.decide_registration(
            db_session,
            registration_id=registration.id,
            actor_user_id=ADMIN_ID,
            module_statuses=[("not-in-registration", "accepted")],
        )
    with pytest.raises(ValidationError) as duplicate:
        enrollment.decide_registration(
            db_session,
            registration_id=registration.id,
            actor_user_id=ADMIN_ID,
            module_statuses=[(modules[0].id, "accepted"), (modules[0].id, "rejected")],
        )
    with pytest.raises(ValidationError) as bad_status:
        enrollment.decide_registration(
            db_session,
            registration_id=registration.id,
            actor_user_id=ADMIN_ID,
            status="maybe",
        )
    with pytest.raises(ValidationError) as no_shape:
        enrollment.decide_registration(db_session, registration_id=registration.id, actor_user_id=ADMIN_ID)
    with pytest.raises(NotFoundError) as unknown_registration:
        enrollment.decide_registration(db_session, registration_id=999, actor_user_id=ADMIN_ID, status="accepted")

    assert unknown_module.value.code == "user_module_not_found"
    assert duplicate.value.code == "duplicate_module_decision"
    assert bad_status.value.code == "invalid_status"
    assert no_shape.value.code == "validation_error"
    assert unknown_registration.value.code == "registration_not_found"
    assert registration.user_modules[0].status == Status.PENDING


def test_reregistration_reopens_decided_registration(db_session, module_store):
    modules = [_create_module(module_store, f"Module {i}", day=i + 1) for i in range(2)]
    program = _create_program(
        db_session,
        module_store,
        [m.id for m in modules],
        kind=models.CycleProgramType.PROGRAM,
    )
    registration = enrollment.register_to_program(
        db_session,
        module_store,
        cycle_program_id=program.id,
        user_id=31,
        selected_module_ids=[modules[0].id],
    )
    enrollment.decide_registration(db_session, registration_id=registration.id, actor_user_id=ADMIN_ID, status="accepted")

    again = enrollment.register_to_program(
        db_session,
        module_store,
        cycle_program_id=program.id,
        user_id=31,
        selected_module_ids=[modules[0].id, modules[1].id],
    )

    assert again.id == registration.id
    assert again.status == Status.PENDING
    assert again.decided_by_user_id is None
    assert [(um.module_id, um.status) for um in again.user_modules] == [
        (modules[0].id, Status.ACCEPTED),
        (modules[1].id, Status.PENDING),
    ]
    assert db_session.query(models.Registration).count() == 1


def test_reregistration_without_new_modules_keeps_decision(db_session, module_store):
    program, modules = _cycle_with_modules(db_session, module_store, count=2)
    registration = enrollment.register_to_program(db_session, module_store, cycle_program_id=program.id, user_id=32)
    enrollment.decide_registration(db_session, registration_id=registration.id, actor_user_id=ADMIN_ID, status="accepted")

    again = enrollment.register_to_program(db_session, module_store, cycle_program_id=program.id, user_id=32)

    assert again.id == registration.id
    assert again.status == Status.ACCEPTED
    assert again.decided_by_user_id == ADMIN_ID
    assert [um.status for um in again.user_modules] == [Status.ACCEPTED, Status.ACCEPTED]
    assert enrollment.aggregate_status(um.status for um in again.user_modules) == again.status
    transitions = (
        db_session.query(audit_models.AuditEvent)
        .filter(
            audit_models.AuditEvent.entity_type == "registration",
            audit_models.AuditEvent.action == "transition",
        )
        .count()
    )
    assert transitions == 1


def test_decision_failing_midway_leaves_nothing_decided(db_session, module_store, monkeypatch):
    program, modules = _cycle_with_modules(db_session, module_store, count=2)
    registration = enrollment.register_to_program(db_session, module_store, cycle_program_id=program.id, user_id=33)
    original = audit_services.log_event

    def _fail_on_registration(db, **kwargs):
        if kwargs["entity_type"] == "registration":
            raise RuntimeError("audit store unavailable")
        return original(db, **kwargs)

    monkeypatch.setattr(audit_services, "log_event", _fail_on_registration)

    with pytest.raises(RuntimeError):
        enrollment.decide_registration(db_session, registration_id=registration.id, actor_user_id=ADMIN_ID, status="accepted")

    monkeypatch.undo()
    user_modules = (
        db_session.query(models.UserModule)
        .filter(models.UserModule.registration_id == registration.id)
        .all()
    )
    assert len(user_modules) == 2
    assert [um.status for um in user_modules] == [Status.PENDING, Status.PENDING]
    assert all(um.decided_by_user_id is None for um in user_modules)
    assert enrollment.get_registration(db_session, registration.id).status == Status.PENDING
    assert (
        db_session.query(audit_models.AuditEvent)
        .filter(audit_models.AuditEvent.action == "transition")
        .count()
        == 0
    )


def test_enrollment_queries(db_session, module_store):
    program, modules = _cycle_with_modules(db_session, module_store, count=2)
    accepted = enrollment.register_to_program(db_session, module_store, cycle_program_id=program.id, user_id=41)
    pending = enrollment.register_to_program(db_session, module_store, cycle_program_id=program.id, user_id=42)
    enrollment.decide_registration(db_session, registration_id=accepted.id, actor_user_id=ADMIN_ID, status="accepted")

    assert [r.id for r in enrollment.list_pending_registrations(db_session)] == [pending.id]
    assert enrollment.list_pending_registrations(db_session, cycle_program_id=program.id + 1) == []

    enrolled = enrollment.get_user_enrolled_modules(db_session, 41)
    assert sorted(um.module_id for um in enrolled) == sorted(m.id for m in modules)

    registrations, statuses = enrollment.get_user_program_registrations(
        db_session,
        cycle_program_id=program.id,
        user_id=41,
    )
    assert [r.id for r in registrations] == [accepted.id]
    assert statuses == {m.id: Status.ACCEPTED for m in modules}

    rows = enrollment.list_accepted_registrations(db_session, program.id)
    assert [(r.user_id, sorted(ids)) for r, ids in rows] == [(41, sorted(m.id for m in modules))]
