from __future__ import annotations

from datetime import date

from trainingdb.apps.modules.documents import ModuleDocument
from trainingdb.apps.programs import models, schemas, services
from trainingdb.scripts.migrate_assigned_users import migrate
from trainingdb.utils.identifiers import generate_module_id


def _create_module(store, title_link: str, assigned):
    module = store.create(
        ModuleDocument(
            id=generate_module_id(),
            title=f"Module for {title_link}",
            assigned_users=list(assigned),
            cycle_program_title=title_link,
        )
    )
    store.db.commit()
    return module


def _create_program(db_session, store, title: str):
    return services.create_cycle_program(
        db_session,
        store,
        data=schemas.CycleProgramCreate(
            title=title,
            type=models.CycleProgramType.CYCLE,
            start_date=date(2024, 1, 1),
            end_date=date(2024, 12, 31),
        ),
    )


def test_migrate_backfills_links_and_resyncs(db_session, module_store):
    program = _create_program(db_session, module_store, "Sales")
    linked = _create_module(module_store, "Sales", [1, 2])
    orphan = _create_module(module_store, "Ghost", [3])

    report = migrate(db_session, module_store)

    assert report.linked == [linked.id]
    assert report.unresolved == [orphan.id]
    assert report.failed == []
    assert module_store.get(linked.id).cycle_program_id == program.id
    assert program.module_ids == [linked.id]
    users = sorted(r.user_id for r in db_session.query(models.Registration).all())
    assert users == [1, 2]

    assert migrate(db_session, module_store).linked == []


def test_migrate_dry_run_writes_nothing(db_session, module_store):
    _create_program(db_session, module_store, "Sales")
    linked = _create_module(module_store, "Sales", [1])

    report = migrate(db_session, module_store, dry_run=True)

    assert report.linked == [linked.id]
    assert module_store.get(linked.id).cycle_program_id is None
    assert db_session.query(models.Registration).count() == 0
