# FILE: app/services/transfusion_service.py
"""
Lifecycle operations for a blood transfusion.

Each operation reads the caller's row, asks ``transfusion_state`` whether the
action is allowed, derives the new timing fields with ``transfusion_calc`` and
writes them back with a conditional update. History (snapshots, notes,
alerts) is append-only.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.crud import crud_blood_transfusion as crud
from app.models.blood_transfusion import (
    BloodTransfusion,
    BloodTransfusionAlert,
    BloodTransfusionNote,
    BloodTransfusionProgress,
    TransfusionStatus,
)
from app.services import transfusion_alerts, transfusion_calc as calc
from app.services.transfusion_errors import (
    ConcurrentUpdate,
    StorageFailure,
    TransfusionNotFound,
    TransfusionValidationError,
)
from app.services.transfusion_state import TransfusionAction, check_transition
from app.utils.timezone import ms_between, to_db_utc, utcnow

log = logging.getLogger(__name__)

MIN_POUCH_ML, MAX_POUCH_ML = 100, 1000
MIN_DROP_RATE, MAX_DROP_RATE = 20, 100

GENERAL_NOTE = "GENERAL"
STATUS_NOTE = "STATUS_CHANGE"


# =========================================================
# HELPERS
# =========================================================
def _commit(db: Session, msg: str = "Database error") -> None:
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        log.exception(msg)
        raise StorageFailure(msg)


def _owned_or_404(db: Session, transfusion_id: int, caregiver_id: int) -> BloodTransfusion:
    try:
        rec = crud.get_owned(db, transfusion_id, caregiver_id)
    except SQLAlchemyError:
        db.rollback()
        log.exception("Failed to load transfusion %s", transfusion_id)
        raise StorageFailure("Failed to load transfusion")
    if not rec:
        raise TransfusionNotFound("Transfusion not found")
    return rec


def _blank(v: Optional[str]) -> bool:
    return v is None or not str(v).strip()


def planned_ms_for(rec: BloodTransfusion) -> int:
    return calc.planned_duration_ms(rec.pouch_volume_ml, rec.drop_factor, rec.drop_rate_per_minute)


def _fold_open_pause(rec: BloodTransfusion, at: datetime) -> Dict[str, Any]:
    """Closing a transfusion while PAUSED: the open pause becomes part of the total."""
    if rec.paused_at is None:
        return {}
    total = (rec.pause_duration_ms or 0) + max(0, ms_between(rec.paused_at, at))
    return {
        "paused_at": None,
        "pause_duration_ms": total,
        "expected_end_time": calc.projected_end_time(rec.start_time, planned_ms_for(rec), total),
    }


def _record_status_note(db: Session, transfusion_id: int, text: str) -> None:
    # the transition is already committed; a lost note must not undo it
    try:
        crud.append_note(db, transfusion_id, text, STATUS_NOTE)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        log.warning("Could not append status note to transfusion %s", transfusion_id, exc_info=True)


def _write_transition(
    db: Session,
    rec: BloodTransfusion,
    caregiver_id: int,
    target: TransfusionStatus,
    patch: Dict[str, Any],
    status_note: str,
) -> BloodTransfusion:
    transfusion_id = rec.id
    expected_status = rec.status
    patch = dict(patch, status=target, updated_at=utcnow())

    try:
        swapped = crud.update_where(
            db,
            transfusion_id,
            caregiver_id,
            expected_status=expected_status,
            observed_pause_ms=rec.pause_duration_ms or 0,
            patch=patch,
        )
    except SQLAlchemyError:
        db.rollback()
        log.exception("Failed to update transfusion %s", transfusion_id)
        raise StorageFailure("Failed to update transfusion")

    if not swapped:
        db.rollback()
        log.warning(
            "Transfusion %s changed under caregiver %s (expected %s)",
            transfusion_id, caregiver_id, expected_status.value,
        )
        raise ConcurrentUpdate("Transfusion was modified by another request; reload and retry")

    _commit(db, "Failed to update transfusion")
    log.info("Transfusion %s %s -> %s by caregiver %s",
             transfusion_id, expected_status.value, target.value, caregiver_id)

    _record_status_note(db, transfusion_id, status_note)
    return _owned_or_404(db, transfusion_id, caregiver_id)


# =========================================================
# START
# =========================================================
def start_transfusion(
    db: Session,
    caregiver_id: int,
    *,
    task_id: Optional[int],
    patient_id: Optional[int],
    pouch_volume_ml: Optional[int],
    drop_factor: Optional[int],
    drop_rate_per_minute: Optional[int],
    start_time: Optional[datetime] = None,
    alert_threshold_minutes: Optional[int] = None,
    notes: Optional[str] = None,
) -> BloodTransfusion:
    required = (
        ("taskId", task_id),
        ("patientId", patient_id),
        ("pouchVolumeMl", pouch_volume_ml),
        ("dropFactor", drop_factor),
        ("dropRatePerMinute", drop_rate_per_minute),
    )
    missing = [name for name, v in required if v is None]
    if missing:
        raise TransfusionValidationError(f"Missing required fields: {', '.join(missing)}")

    if not MIN_POUCH_ML <= pouch_volume_ml <= MAX_POUCH_ML:
        raise TransfusionValidationError(f"Volume must be between {MIN_POUCH_ML}-{MAX_POUCH_ML} ml")
    if not MIN_DROP_RATE <= drop_rate_per_minute <= MAX_DROP_RATE:
        raise TransfusionValidationError(
            f"Drop rate must be between {MIN_DROP_RATE}-{MAX_DROP_RATE} drops/min")

    if alert_threshold_minutes is None:
        alert_threshold_minutes = settings.TRANSFUSION_ALERT_THRESHOLD_MINUTES
    if alert_threshold_minutes <= 0:
        raise TransfusionValidationError("Alert threshold must be greater than 0 minutes")

    planned = calc.planned_duration_ms(pouch_volume_ml, drop_factor, drop_rate_per_minute)
    started = to_db_utc(start_time) or utcnow()

    try:
        rec = crud.insert_transfusion(
            db,
            task_id=task_id,
            patient_id=patient_id,
            caregiver_id=caregiver_id,
            pouch_volume_ml=pouch_volume_ml,
            drop_factor=drop_factor,
            drop_rate_per_minute=drop_rate_per_minute,
            alert_threshold_minutes=alert_threshold_minutes,
            start_time=started,
            expected_end_time=calc.projected_end_time(started, planned, 0),
            status=TransfusionStatus.IN_PROGRESS,
            paused_at=None,
            pause_duration_ms=0,
            notes=notes,
            created_at=utcnow(),
        )
        transfusion_id = rec.id
    except SQLAlchemyError:
        db.rollback()
        log.exception("Failed to start transfusion")
        raise StorageFailure("Failed to start transfusion")

    _commit(db, "Failed to start transfusion")
    log.info("Transfusion %s started by caregiver %s (%s ml @ %s drops/min, planned %s ms)",
             transfusion_id, caregiver_id, pouch_volume_ml, drop_rate_per_minute, planned)

    _record_status_note(db, transfusion_id, "Transfusion started")
    return _owned_or_404(db, transfusion_id, caregiver_id)


# =========================================================
# PAUSE / RESUME
# =========================================================
def pause_transfusion(
    db: Session,
    caregiver_id: int,
    transfusion_id: int,
    *,
    paused_at: Optional[datetime] = None,
) -> BloodTransfusion:
    rec = _owned_or_404(db, transfusion_id, caregiver_id)
    target = check_transition(rec.status, TransfusionAction.PAUSE)

    at = to_db_utc(paused_at) or utcnow()
    return _write_transition(db, rec, caregiver_id, target, {"paused_at": at}, "Transfusion paused")


def resume_transfusion(
    db: Session,
    caregiver_id: int,
    transfusion_id: int,
    *,
    pause_duration_ms: Optional[int] = None,
    resumed_at: Optional[datetime] = None,
) -> BloodTransfusion:
    if pause_duration_ms is not None and pause_duration_ms < 0:
        raise TransfusionValidationError("pauseDurationMs cannot be negative")

    rec = _owned_or_404(db, transfusion_id, caregiver_id)
    target = check_transition(rec.status, TransfusionAction.RESUME)

    if pause_duration_ms is not None:
        interval = pause_duration_ms
    elif rec.paused_at is not None:
        interval = max(0, ms_between(rec.paused_at, to_db_utc(resumed_at) or utcnow()))
    else:
        interval = 0

    total = (rec.pause_duration_ms or 0) + interval
    patch = {
        "paused_at": None,
        "pause_duration_ms": total,
        "expected_end_time": calc.projected_end_time(rec.start_time, planned_ms_for(rec), total),
    }
    return _write_transition(
        db, rec, caregiver_id, target, patch,
        f"Transfusion resumed after {interval // 1000} s pause",
    )


# =========================================================
# TERMINATION
# =========================================================
def complete_transfusion(
    db: Session,
    caregiver_id: int,
    transfusion_id: int,
    *,
    actual_end_time: Optional[datetime] = None,
    notes: Optional[str] = None,
    complications: Optional[str] = None,
) -> BloodTransfusion:
    rec = _owned_or_404(db, transfusion_id, caregiver_id)
    target = check_transition(rec.status, TransfusionAction.COMPLETE)

    ended = to_db_utc(actual_end_time) or utcnow()
    patch: Dict[str, Any] = {"actual_end_time": ended, **_fold_open_pause(rec, ended)}
    if notes is not None:
        patch["notes"] = notes
    if complications is not None:
        patch["complications"] = complications

    return _write_transition(db, rec, caregiver_id, target, patch, "Transfusion completed")


def stop_transfusion_early(
    db: Session,
    caregiver_id: int,
    transfusion_id: int,
    *,
    reason: Optional[str],
    actual_end_time: Optional[datetime] = None,
) -> BloodTransfusion:
    if _blank(reason):
        raise TransfusionValidationError("Reason is required")

    rec = _owned_or_404(db, transfusion_id, caregiver_id)
    target = check_transition(rec.status, TransfusionAction.STOP_EARLY)

    ended = to_db_utc(actual_end_time) or utcnow()
    patch = {"actual_end_time": ended, "complications": reason, **_fold_open_pause(rec, ended)}
    return _write_transition(
        db, rec, caregiver_id, target, patch,
        f"Transfusion stopped early: {reason}"[:1000],
    )


# =========================================================
# HISTORY APPENDS
# =========================================================
def record_progress(
    db: Session,
    caregiver_id: int,
    transfusion_id: int,
    *,
    elapsed_time_ms: Optional[int],
    remaining_time_ms: Optional[int],
    drops_administered: Optional[int],
    volume_administered_ml: Optional[float],
    progress_percentage: Optional[float],
) -> BloodTransfusionProgress:
    values = {
        "elapsedTimeMs": elapsed_time_ms,
        "remainingTimeMs": remaining_time_ms,
        "dropsAdministered": drops_administered,
        "volumeAdministeredMl": volume_administered_ml,
        "progressPercentage": progress_percentage,
    }
    missing = [k for k, v in values.items() if v is None]
    if missing:
        raise TransfusionValidationError(f"Missing required fields: {', '.join(missing)}")
    negative = [k for k, v in values.items() if v < 0]
    if negative:
        raise TransfusionValidationError(f"Values cannot be negative: {', '.join(negative)}")
    if progress_percentage > 100:
        raise TransfusionValidationError("progressPercentage cannot exceed 100")

    rec = _owned_or_404(db, transfusion_id, caregiver_id)
    check_transition(rec.status, TransfusionAction.RECORD_PROGRESS)

    try:
        row = crud.append_progress(
            db,
            rec.id,
            elapsed_time_ms=elapsed_time_ms,
            remaining_time_ms=remaining_time_ms,
            drops_administered=drops_administered,
            volume_administered_ml=volume_administered_ml,
            progress_percentage=progress_percentage,
            created_at=utcnow(),
        )
    except SQLAlchemyError:
        db.rollback()
        log.exception("Failed to record progress for transfusion %s", transfusion_id)
        raise StorageFailure("Failed to record progress")

    _commit(db, "Failed to record progress")
    db.refresh(row)
    return row


def record_note(
    db: Session,
    caregiver_id: int,
    transfusion_id: int,
    *,
    note: Optional[str],
    note_type: Optional[str] = None,
) -> BloodTransfusionNote:
    if _blank(note):
        raise TransfusionValidationError("Note is required")

    rec = _owned_or_404(db, transfusion_id, caregiver_id)
    try:
        row = crud.append_note(db, rec.id, note, (note_type or "").strip() or GENERAL_NOTE)
    except SQLAlchemyError:
        db.rollback()
        log.exception("Failed to add note to transfusion %s", transfusion_id)
        raise StorageFailure("Failed to add note")

    _commit(db, "Failed to add note")
    db.refresh(row)
    return row


def record_alert(
    db: Session,
    caregiver_id: int,
    transfusion_id: int,
    *,
    alert_type: Optional[str],
    alert_message: Optional[str],
) -> BloodTransfusionAlert:
    if _blank(alert_type) or _blank(alert_message):
        raise TransfusionValidationError("Alert type and message are required")

    rec = _owned_or_404(db, transfusion_id, caregiver_id)
    try:
        row = crud.append_alert(db, rec.id, alert_type.strip(), alert_message)
    except SQLAlchemyError:
        db.rollback()
        log.exception("Failed to record alert for transfusion %s", transfusion_id)
        raise StorageFailure("Failed to record alert")

    _commit(db, "Failed to record alert")
    log.info("Alert %s recorded for transfusion %s", row.alert_type, transfusion_id)
    db.refresh(row)
    return row


# =========================================================
# READS
# =========================================================
def get_transfusion_detail(db: Session, caregiver_id: int, transfusion_id: int) -> BloodTransfusion:
    try:
        rec = crud.get_owned_with_history(db, transfusion_id, caregiver_id)
    except SQLAlchemyError:
        db.rollback()
        log.exception("Failed to load transfusion %s", transfusion_id)
        raise StorageFailure("Failed to load transfusion")
    if not rec:
        raise TransfusionNotFound("Transfusion not found")
    return rec


def get_timeline(db: Session, caregiver_id: int, transfusion_id: int) -> Dict[str, List[Any]]:
    rec = _owned_or_404(db, transfusion_id, caregiver_id)
    return {
        "progress": crud.list_progress(db, rec.id),
        "notes": crud.list_notes(db, rec.id),
        "alerts": crud.list_alerts(db, rec.id),
    }


def list_history(
    db: Session,
    caregiver_id: int,
    *,
    limit: Optional[int] = None,
    offset: int = 0,
) -> Tuple[List[Tuple[BloodTransfusion, Dict[str, Any]]], int]:
    if limit is None:
        limit = settings.TRANSFUSION_HISTORY_LIMIT
    if limit < 1 or offset < 0:
        raise TransfusionValidationError("limit must be >= 1 and offset >= 0")
    limit = min(limit, settings.TRANSFUSION_HISTORY_MAX_LIMIT)

    try:
        rows, total = crud.list_history(db, caregiver_id, limit=limit, offset=offset)
        counts = crud.history_counts(db, [r.id for r in rows])
    except SQLAlchemyError:
        db.rollback()
        log.exception("Failed to fetch transfusion history")
        raise StorageFailure("Failed to fetch history")
    return [(r, counts[r.id]) for r in rows], total


def list_active(db: Session, caregiver_id: int) -> List[BloodTransfusion]:
    try:
        return crud.list_active(db, caregiver_id)
    except SQLAlchemyError:
        db.rollback()
        log.exception("Failed to fetch active transfusions")
        raise StorageFailure("Failed to fetch active transfusions")


def monitor_transfusion(
    db: Session,
    caregiver_id: int,
    transfusion_id: int,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Live derived view plus advisory alerts. Nothing is written; a client that
    wants an alert on record posts it through record_alert.
    """
    rec = _owned_or_404(db, transfusion_id, caregiver_id)
    planned = planned_ms_for(rec)

    at = rec.actual_end_time if rec.is_terminal else (to_db_utc(now) or utcnow())
    elapsed = calc.elapsed_active_ms(rec.start_time, at, rec.pause_duration_ms or 0, rec.paused_at)

    last = crud.latest_progress(db, rec.id)
    drops = last.drops_administered if last else None
    # drops and the elapsed time they were counted at come from the same snapshot
    drops_at_ms = last.elapsed_time_ms if last else None

    alerts: List[transfusion_alerts.AlertEvent] = []
    if not rec.is_terminal:
        alerts = transfusion_alerts.evaluate(
            elapsed,
            planned,
            rec.alert_threshold_minutes,
            drops_administered=drops,
            drop_rate_per_minute=rec.drop_rate_per_minute,
            tolerance_pct=settings.TRANSFUSION_RATE_TOLERANCE_PCT,
            min_sample_ms=settings.TRANSFUSION_RATE_MIN_SAMPLE_MS,
            rate_elapsed_ms=drops_at_ms,
        )

    expected_drops = calc.expected_drops(elapsed, rec.drop_rate_per_minute)
    return {
        "transfusionId": rec.id,
        "status": rec.status,
        "plannedDurationMs": planned,
        "elapsedActiveMs": elapsed,
        "remainingTimeMs": calc.remaining_ms(elapsed, planned),
        "progressPercentage": round(calc.progress_percentage(elapsed, planned), 2),
        "expectedDropsAdministered": expected_drops,
        "expectedVolumeAdministeredMl": calc.volume_for_drops(expected_drops, rec.drop_factor),
        "reportedDropsAdministered": drops,
        "pauseDurationMs": rec.pause_duration_ms or 0,
        "expectedEndTime": rec.expected_end_time,
        "alerts": [a.to_json() for a in alerts],
    }
