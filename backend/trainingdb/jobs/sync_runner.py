"""Sync job runner.

Intended for cron (e.g. every minute) to retry module -> program
synchronisations that failed or were never run. Use
`python -m trainingdb.apps.programs.reconciliation` for a long-running
dispatcher instead.
"""

from __future__ import annotations

import logging

from trainingdb.apps.modules.store import ModuleStore
from trainingdb.apps.programs.reconciliation import DEFAULT_LIMIT, dispatch_due_jobs
from trainingdb.database import DocumentSessionLocal, WriteSessionLocal

logger = logging.getLogger(__name__)


def run_once(limit: int = DEFAULT_LIMIT) -> int:
    db = WriteSessionLocal()
    doc_db = DocumentSessionLocal()
    try:
        return dispatch_due_jobs(db, ModuleStore(doc_db), limit=limit)
    finally:
        doc_db.close()
        db.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    count = run_once()
    print(f"Sync runner dispatched {count} jobs")
