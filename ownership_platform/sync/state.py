"""Durable bookkeeping for incremental and bulk syncs.

`sync_state` holds one row per feed source (resume point + run status).
`backfill_progress` holds one row per (form family, quarter) for bulk imports.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from ownership_platform.errors import ValidationError
from ownership_platform.util.time import utcnow_iso
from ownership_platform.validators import validate_quarter


SYNC_STATUSES = ("pending", "running", "success", "failed")
QUARTER_STATUSES = ("pending", "downloading", "extracting", "processing", "complete", "failed")
FORM_FAMILIES = ("13F", "13D", "13G", "345")


@dataclass(frozen=True)
class SyncState:
    source: str
    last_processed_date: str | None
    last_accession_number: str | None
    last_run_at: str | None
    status: str
    error_message: str | None


@dataclass(frozen=True)
class QuarterProgress:
    form_family: str
    quarter: str
    status: str
    files_processed: int
    total_files: int
    error: str | None
    started_at: str | None
    completed_at: str | None


def _family(form_family: str) -> str:
    f = str(form_family or "").upper()
    if f not in FORM_FAMILIES:
        raise ValidationError(f"Unknown form family: {form_family!r}")
    return f


def _existing_row(gateway: Any, source: str) -> Dict[str, Any]:
    row = gateway.query_one("SELECT * FROM sync_state WHERE source=?", (source,))
    if row is not None:
        return dict(row)
    return {
        "source": source,
        "last_processed_date": None,
        "last_accession_number": None,
        "last_run_at": None,
        "status": "pending",
        "error_message": None,
    }


def _set_state(gateway: Any, source: str, **changes: Any) -> None:
    if "status" in changes and changes["status"] not in SYNC_STATUSES:
        raise ValidationError(f"Unknown sync status: {changes['status']!r}")
    row = _existing_row(gateway, source)
    row.update(changes)
    row["source"] = source
    row["updated_at"] = utcnow_iso()
    gateway.upsert_rows("sync_state", [row], "source")


def get_sync_state(gateway: Any, source: str) -> Optional[SyncState]:
    row = gateway.query_one("SELECT * FROM sync_state WHERE source=?", (source,))
    if row is None:
        return None
    return SyncState(
        source=row["source"],
        last_processed_date=row["last_processed_date"],
        last_accession_number=row["last_accession_number"],
        last_run_at=row["last_run_at"],
        status=row["status"],
        error_message=row["error_message"],
    )


def mark_sync_started(gateway: Any, source: str) -> None:
    _set_state(gateway, source, status="running", last_run_at=utcnow_iso(), error_message=None)


def mark_sync_complete(
    gateway: Any,
    source: str,
    last_processed_date: str | None = None,
    last_accession_number: str | None = None,
) -> None:
    _set_state(
        gateway,
        source,
        status="success",
        last_processed_date=last_processed_date,
        last_accession_number=last_accession_number,
        error_message=None,
    )


def mark_sync_failed(gateway: Any, source: str, message: str) -> None:
    _set_state(gateway, source, status="failed", error_message=str(message)[:2000])


# -----------------
# Backfill progress
# -----------------
def _progress_from_row(row: Dict[str, Any]) -> QuarterProgress:
    return QuarterProgress(
        form_family=row["form_family"],
        quarter=row["quarter"],
        status=row["status"],
        files_processed=int(row["files_processed"] or 0),
        total_files=int(row["total_files"] or 0),
        error=row["error"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
    )


def init_backfill_progress(gateway: Any, form_family: str, quarters: Sequence[str]) -> List[QuarterProgress]:
    """Add any new quarters as pending; quarters already tracked keep their status."""
    fam = _family(form_family)
    now = utcnow_iso()
    rows = [
        {"form_family": fam, "quarter": validate_quarter(q), "status": "pending", "updated_at": now}
        for q in quarters
    ]
    gateway.insert_or_ignore("backfill_progress", rows)
    return get_backfill_progress(gateway, fam)


def update_quarter_progress(
    gateway: Any,
    form_family: str,
    quarter: str,
    *,
    status: str | None = None,
    files_processed: int | None = None,
    total_files: int | None = None,
    error: str | None = None,
) -> QuarterProgress:
    fam = _family(form_family)
    q = validate_quarter(quarter)
    row = gateway.query_one("SELECT * FROM backfill_progress WHERE form_family=? AND quarter=?", (fam, q))
    if row is None:
        raise ValidationError(f"Quarter {q} is not tracked for {fam}")

    updated = dict(row)
    now = utcnow_iso()
    if status is not None:
        if status not in QUARTER_STATUSES:
            raise ValidationError(f"Unknown quarter status: {status!r}")
        updated["status"] = status
        if status == "downloading":
            updated["started_at"] = now
            updated["completed_at"] = None
            updated["error"] = None
        elif status in ("complete", "failed"):
            updated["completed_at"] = now
    if files_processed is not None:
        updated["files_processed"] = int(files_processed)
    if total_files is not None:
        updated["total_files"] = int(total_files)
    if error is not None:
        updated["error"] = str(error)[:2000]
    updated["updated_at"] = now

    gateway.upsert_rows("backfill_progress", [updated], ["form_family", "quarter"])
    return _progress_from_row(updated)


def get_backfill_progress(gateway: Any, form_family: str) -> List[QuarterProgress]:
    rows = gateway.query(
        "SELECT * FROM backfill_progress WHERE form_family=? ORDER BY quarter",
        (_family(form_family),),
    )
    return [_progress_from_row(r) for r in rows]


def get_next_pending_quarter(gateway: Any, form_family: str) -> Optional[str]:
    row = gateway.query_one(
        "SELECT quarter FROM backfill_progress WHERE form_family=? AND status='pending' ORDER BY quarter LIMIT 1",
        (_family(form_family),),
    )
    return row["quarter"] if row else None


def is_backfill_complete(gateway: Any, form_family: str) -> bool:
    progress = get_backfill_progress(gateway, form_family)
    return bool(progress) and all(p.status == "complete" for p in progress)
