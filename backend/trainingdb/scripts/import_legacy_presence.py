"""
Convert legacy day-indexed presence stored on module documents into
presence records.

Usage:
    python -m trainingdb.scripts.import_legacy_presence [MODULE_ID ...]
"""

from __future__ import annotations

import argparse
import logging

from trainingdb.apps.modules.store import ModuleStore
from trainingdb.apps.programs.presence import import_legacy_presence
from trainingdb.database import DocumentSessionLocal, WriteSessionLocal


def main() -> None:
    ap = argparse.ArgumentParser()
    ap.add_argument("module_ids", nargs="*", help="Defaults to every module carrying legacy presence.")
    args = ap.parse_args()
    logging.basicConfig(level=logging.INFO)

    db = WriteSessionLocal()
    doc_db = DocumentSessionLocal()
    try:
        store = ModuleStore(doc_db)
        module_ids = args.module_ids or [m.id for m in store.list() if m.presence]
        for module_id in module_ids:
            imported, skipped = import_legacy_presence(db, store, module_id)
            print(f"{module_id}: imported={imported} skipped={skipped}")
    finally:
        doc_db.close()
        db.close()


if __name__ == "__main__":
    main()
