"""
Backfill explicit module -> cycle/program links.

Older module documents only carry the program title. For each of them the
title is resolved to a cycle/program id, stored on the document, and the
module's assigned users are re-synchronised against that program.

Usage:
    python -m trainingdb.scripts.migrate_assigned_users [--dry-run] [--mode reconcile]
"""

from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass, field
from typing import List

from sqlalchemy.orm import Session

from trainingdb.apps.modules.store import ModuleStore
from trainingdb.apps.programs.models import SyncMode
from trainingdb.apps.programs.sync import resolve_program_link, sync_assigned_users
from trainingdb.database import DocumentSessionLocal, WriteSessionLocal, atomic
from trainingdb.errors import EnrollmentError

logger = logging.getLogger(__name__)


@dataclass
class MigrationReport:
    linked: List[str] = field(default_factory=list)
    unresolved: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


def migrate(
    db: Session,
    store: ModuleStore,
    *,
    mode: SyncMode = SyncMode.RESET_AND_SYNC,
    dry_run: bool = False,
) -> MigrationReport:
    report = MigrationReport()
    for module in store.list_program_linked():
        if module.cycle_program_id is not None:
            continue
        program = resolve_program_link(db, module)
        if program is None:
            logger.warning(
                "No cycle/program matches module title link",
                extra={"module_id": module.id, "cycle_program_title": module.cycle_program_title},
            )
            report.unresolved.append(module.id)
            continue
        if dry_run:
            report.linked.append(module.id)
            continue

        with atomic(store.db, operation="backfill_cycle_program_id"):
            module.cycle_program_id = program.id
            store.save(module)
        try:
            sync_assigned_users(
                db,
                store,
                module_id=module.id,
                user_ids=module.assigned_users,
                cycle_program_id=program.id,
                mode=mode,
            )
        except EnrollmentError as exc:
            logger.warning(
                "Resync after backfill failed",
                extra={"module_id": module.id, "cycle_program_id": program.id, "error_code": exc.code},
            )
            report.failed.append(module.id)
            continue
        report.linked.append(module.id)
    return report


def main() -> None:
    ap = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    ap.add_argument("--dry-run", action="store_true", help="Resolve links without writing anything.")
    ap.add_argument(
        "--mode",
        choices=[m.value for m in SyncMode],
        default=SyncMode.RESET_AND_SYNC.value,
        help="Synchronisation applied after each backfill.",
    )
    args = ap.parse_args()
    logging.basicConfig(level=logging.INFO)

    db = WriteSessionLocal()
    doc_db = DocumentSessionLocal()
    try:
        report = migrate(db, ModuleStore(doc_db), mode=SyncMode(args.mode), dry_run=args.dry_run)
    finally:
        doc_db.close()
        db.close()

    print(f"Linked: {len(report.linked)}")
    print(f"Unresolved: {len(report.unresolved)}")
    for module_id in report.unresolved:
        print("  -", module_id)
    print(f"Failed: {len(report.failed)}")
    for module_id in report.failed:
        print("  -", module_id)


if __name__ == "__main__":
    main()
