from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

ROOT = Path(__file__).resolve().parent
sys.path.append(str(ROOT))

os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["DATABASE_WRITE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["DOCUMENT_DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["SECRET_KEY"] = "test-secret-key"

from trainingdb.database import Base, DocumentBase  # noqa: E402
from trainingdb.apps.audit import models as audit_models  # noqa: E402,F401
from trainingdb.apps.modules import models as module_models  # noqa: E402,F401
from trainingdb.apps.modules.store import ModuleStore  # noqa: E402
from trainingdb.apps.programs import models as program_models  # noqa: E402,F401


def _session_factory(engine):
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
    )


@pytest.fixture()
def db_session():
    """Relational store: programs, registrations, presence, sync jobs, audit."""
    engine = create_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    session = _session_factory(engine)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture()
def doc_session():
    """Document store: module documents on their own engine."""
    engine = create_engine("sqlite+pysqlite:///:memory:")
    DocumentBase.metadata.create_all(bind=engine)
    session = _session_factory(engine)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture()
def module_store(doc_session):
    return ModuleStore(doc_session)
