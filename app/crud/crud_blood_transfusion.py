# FILE: app/crud/crud_blood_transfusion.py
"""
Record store for transfusions and their insert-only history.

Every query on ``blood_transfusions`` carries the caregiver id so a row owned
by someone else is indistinguishable from a missing one. Nothing here commits;
the service layer owns the transaction.
"""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from app.models.blood_transfusion import (
    ACTIVE_STATUSES,
    BloodTransfusion,
    BloodTransfusionAlert,
    BloodTransfusionNote,
    BloodTransfusionProgress,
    TransfusionStatus,
)


# =========================================================
# TRANSFUSION ROW
# =========================================================
def insert_transfusion(db: Session, **values: Any) -> BloodTransfusion:
    rec = BloodTransfusion(**values)
    db.add(rec)
    db.flush()  # rec.id
    return rec


def get_owned(db: Session, transfusion_id: int, caregiver_id: int) -> Optional[BloodTransfusion]:
    return (
        db.query(BloodTransfusion)
        .filter(
            BloodTransfusion.id == transfusion_id,
            BloodTransfusion.caregiver_id == caregiver_id,
        )
        .first()
    )


def get_owned_with_history(db: Session, transfusion_id: int, caregiver_id: int) -> Optional[BloodTransfusion]:
    return (
        db.query(BloodTransfusion)
        .options(
            selectinload(BloodTransfusion.progress),
            selectinload(BloodTransfusion.note_entries),
            selectinload(BloodTransfusion.alerts),
        )
        .filter(
            BloodTransfusion.id == transfusion_id,
            BloodTransfusion.caregiver_id == caregiver_id,
        )
        .first()
    )


def update_where(
    db: Session,
    transfusion_id: int,
    caregiver_id: int,
    *,
    expected_status: TransfusionStatus,
    observed_pause_ms: int,
    patch: Dict[str, Any],
) -> bool:
    """
    Compare-and-swap write. Matches id + owner + the status and pause total
    read by the caller; False means another writer got there first.
    """
    n = (
        db.query(BloodTransfusion)
        .filter(
            BloodTransfusion.id == transfusion_id,
            BloodTransfusion.caregiver_id == caregiver_id,
            BloodTransfusion.status == expected_status,
            BloodTransfusion.pause_duration_ms == observed_pause_ms,
        )
        .update(patch, synchronize_session=False)
    )
    return n == 1


def list_active(db: Session, caregiver_id: int) -> List[BloodTransfusion]:
    return (
        db.query(BloodTransfusion)
        .filter(
            BloodTransfusion.caregiver_id == caregiver_id,
            BloodTransfusion.status.in_(list(ACTIVE_STATUSES)),
        )
        .order_by(BloodTransfusion.start_time.desc(), BloodTransfusion.id.desc())
        .all()
    )


def list_history(
    db: Session,
    caregiver_id: int,
    *,
    limit: int,
    offset: int,
) -> Tuple[List[BloodTransfusion], int]:
    q = db.query(BloodTransfusion).filter(BloodTransfusion.caregiver_id == caregiver_id)
    total = q.count()
    rows = (
        q.order_by(BloodTransfusion.start_time.desc(), BloodTransfusion.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return rows, total


def history_counts(db: Session, transfusion_ids: Iterable[int]) -> Dict[int, Dict[str, Any]]:
    """Per-transfusion counts and last reported percentage for list views."""
    ids = list(transfusion_ids)
    out: Dict[int, Dict[str, Any]] = {
        i: {"progressCount": 0, "noteCount": 0, "alertCount": 0, "latestProgressPercentage": None}
        for i in ids
    }
    if not ids:
        return out

    for model, key in (
        (BloodTransfusionProgress, "progressCount"),
        (BloodTransfusionNote, "noteCount"),
        (BloodTransfusionAlert, "alertCount"),
    ):
        rows = (
            db.query(model.transfusion_id, func.count(model.id))
            .filter(model.transfusion_id.in_(ids))
            .group_by(model.transfusion_id)
            .all()
        )
        for tid, n in rows:
            out[tid][key] = int(n)

    latest_ids = (
        select(func.max(BloodTransfusionProgress.id))
        .where(BloodTransfusionProgress.transfusion_id.in_(ids))
        .group_by(BloodTransfusionProgress.transfusion_id)
    )
    for tid, pct in (
        db.query(BloodTransfusionProgress.transfusion_id, BloodTransfusionProgress.progress_percentage)
        .filter(BloodTransfusionProgress.id.in_(latest_ids))
        .all()
    ):
        out[tid]["latestProgressPercentage"] = pct

    return out


# =========================================================
# HISTORY (insert-only)
# =========================================================
def append_progress(db: Session, transfusion_id: int, **values: Any) -> BloodTransfusionProgress:
    row = BloodTransfusionProgress(transfusion_id=transfusion_id, **values)
    db.add(row)
    db.flush()
    return row


def append_note(db: Session, transfusion_id: int, note: str, note_type: str = "GENERAL") -> BloodTransfusionNote:
    row = BloodTransfusionNote(transfusion_id=transfusion_id, note=note, note_type=note_type or "GENERAL")
    db.add(row)
    db.flush()
    return row


def append_alert(db: Session, transfusion_id: int, alert_type: str, alert_message: str) -> BloodTransfusionAlert:
    row = BloodTransfusionAlert(transfusion_id=transfusion_id, alert_type=alert_type, alert_message=alert_message)
    db.add(row)
    db.flush()
    return row


def list_progress(db: Session, transfusion_id: int) -> List[BloodTransfusionProgress]:
    return (
        db.query(BloodTransfusionProgress)
        .filter(BloodTransfusionProgress.transfusion_id == transfusion_id)
        .order_by(BloodTransfusionProgress.created_at.asc(), BloodTransfusionProgress.id.asc())
        .all()
    )


def latest_progress(db: Session, transfusion_id: int) -> Optional[BloodTransfusionProgress]:
    return (
        db.query(BloodTransfusionProgress)
        .filter(BloodTransfusionProgress.transfusion_id == transfusion_id)
        .order_by(BloodTransfusionProgress.created_at.desc(), BloodTransfusionProgress.id.desc())
        .first()
    )


def list_notes(db: Session, transfusion_id: int) -> List[BloodTransfusionNote]:
    return (
        db.query(BloodTransfusionNote)
        .filter(BloodTransfusionNote.transfusion_id == transfusion_id)
        .order_by(BloodTransfusionNote.created_at.asc(), BloodTransfusionNote.id.asc())
        .all()
    )


def list_alerts(db: Session, transfusion_id: int) -> List[BloodTransfusionAlert]:
    return (
        db.query(BloodTransfusionAlert)
        .filter(BloodTransfusionAlert.transfusion_id == transfusion_id)
        .order_by(BloodTransfusionAlert.created_at.asc(), BloodTransfusionAlert.id.asc())
        .all()
    )
