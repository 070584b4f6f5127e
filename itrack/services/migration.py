"""One-time rewrite of attendance ids into the ``{intern_id}_{YYYY-MM-DD}`` form.

Deterministic ids hold at most one event per intern per day. Two events
of the same intern on the same UTC day cannot both move: the first one (in
``created_at`` order) takes the id and the rest stay where they are and are
reported as conflicts. Records already in the target form are skipped, so
running the migration again is a no-op.

Naive ``created_at`` values are read as local time and converted to UTC
before the date is taken.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from itrack.services.errors import BackendUnavailable, MigrationConflict
from itrack.services.store import AttendanceStore, BatchOp, Record

logger = logging.getLogger(__name__)

LEGACY_ID_RE = re.compile(r"^[A-Za-z0-9]+_\d{4}-\d{2}-\d{2}$")


@dataclass
class MigrationPlan:
    moves: list[tuple[str, str, Record]] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    conflicts: list[MigrationConflict] = field(default_factory=list)


def _utc_date(created_at: Optional[datetime]) -> str:
    moment = (created_at or datetime.now(timezone.utc)).astimezone(timezone.utc)
    return moment.date().isoformat()


def target_id(record: Record) -> str:
    return f"{record['intern_id']}_{_utc_date(record.get('created_at'))}"


def plan_migration(records: list[Record]) -> MigrationPlan:
    plan = MigrationPlan()
    taken = {r["id"] for r in records}
    ordered = sorted(records, key=lambda r: r.get("created_at") or datetime.min)
    for record in ordered:
        current_id = record["id"]
        if LEGACY_ID_RE.match(current_id) or not record.get("intern_id"):
            plan.skipped.append(current_id)
            continue
        new_id = target_id(record)
        if new_id == current_id:
            plan.skipped.append(current_id)
            continue
        if new_id in taken:
            plan.conflicts.append(MigrationConflict(current_id, new_id))
            continue
        taken.add(new_id)
        taken.discard(current_id)
        content = {k: v for k, v in record.items() if k != "id"}
        plan.moves.append((current_id, new_id, content))
    return plan


async def migrate_attendance_records(store: AttendanceStore) -> bool:
    """Run the id migration; True once the run completed, False on backend failure."""
    logger.info("Starting attendance records migration...")
    try:
        records = await store.query()
        plan = plan_migration(records)
        for conflict in plan.conflicts:
            logger.warning(f"Not migrating {conflict.record_id}: {conflict.target_id} is already taken")

        ops: list[BatchOp] = []
        for old_id, new_id, content in plan.moves:
            logger.info(f"Migrating: {old_id} -> {new_id}")
            # Delete first: the copy may carry the intern's single pending status.
            ops.append(BatchOp("delete", old_id))
            ops.append(BatchOp("set", new_id, content))

        if ops:
            await store.atomic_batch(ops)
            logger.info(f"Migration completed! Migrated {len(plan.moves)} records.")
        else:
            logger.info("No records needed migration.")
    except BackendUnavailable:
        logger.exception("Attendance migration failed")
        return False
    return True
