from __future__ import annotations

from datetime import date

import pytest
from sqlalchemy.exc import OperationalError

from trainingdb.apps.programs import models
from trainingdb.database import atomic
from trainingdb.errors import StoreError, ValidationError, invalid


def _program(title: str) -> models.CycleProgram:
    return models.CycleProgram(
        title=title,
        type=models.CycleProgramType.CYCLE,
        start_date=date(2024, 1, 1),
        end_date=date(2024, 1, 31),
    )


def test_atomic_commits_on_success(db_session):
    with atomic(db_session):
        db_session.add(_program("Committed"))

    db_session.rollback()
    assert db_session.query(models.CycleProgram).count() == 1


def test_atomic_rolls_back_domain_errors(db_session):
    with pytest.raises(ValidationError):
        with atomic(db_session, operation="create"):
            db_session.add(_program("Discarded"))
            db_session.flush()
            raise invalid("title", "nope")

    assert db_session.query(models.CycleProgram).count() == 0


def test_atomic_wraps_store_failures(db_session):
    with pytest.raises(StoreError) as excinfo:
        with atomic(db_session, operation="create"):
            db_session.add(_program("Discarded"))
            db_session.flush()
            raise OperationalError("INSERT", {}, Exception("disk full"))

    assert excinfo.value.status_code == 500
    assert excinfo.value.to_payload()["code"] == "internal_error"
    assert "disk full" not in str(excinfo.value.to_payload())
    assert db_session.query(models.CycleProgram).count() == 0
