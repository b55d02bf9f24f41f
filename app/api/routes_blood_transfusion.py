# FILE: app/api/routes_blood_transfusion.py
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.api.deps import CurrentUser, current_user, get_db
from app.schemas.blood_transfusion import (
    AlertCreate,
    AlertOut,
    MonitorOut,
    NoteCreate,
    NoteOut,
    ProgressCreate,
    ProgressOut,
    TransfusionComplete,
    TransfusionDetailOut,
    TransfusionOut,
    TransfusionPause,
    TransfusionResume,
    TransfusionStart,
    TransfusionStopEarly,
    TransfusionSummaryOut,
)
from app.services import transfusion_service as svc
from app.services.error_logger import format_exception, log_error
from app.services.transfusion_errors import TransfusionError
from app.utils.resp import err, ok

router = APIRouter(prefix="/blood-transfusion", tags=["Blood Transfusion"])
log = logging.getLogger(__name__)


# =========================================================
# HELPERS
# =========================================================
def _fail(
    e: TransfusionError,
    db: Session,
    user: CurrentUser,
    where: str,
    transfusion_id: Optional[int] = None,
):
    if e.status_code >= 500:
        log.error("%s failed for caregiver %s: %s", where, user.id, e.msg)
        log_error(
            db,
            description=e.msg,
            module=__name__,
            function=where,
            http_status=e.status_code,
            caller_id=user.id,
            transfusion_id=transfusion_id,
            stack_trace=format_exception(e),
        )
    return err(e.msg, e.status_code)


# =========================================================
# START
# =========================================================
@router.post("/start")
def start_transfusion(
    payload: TransfusionStart,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(current_user),
):
    try:
        rec = svc.start_transfusion(
            db,
            user.id,
            task_id=payload.task_id,
            patient_id=payload.patient_id,
            pouch_volume_ml=payload.pouch_volume_ml,
            drop_factor=payload.drop_factor,
            drop_rate_per_minute=payload.drop_rate_per_minute,
            start_time=payload.start_time,
            alert_threshold_minutes=payload.alert_threshold_minutes,
            notes=payload.notes,
        )
    except TransfusionError as e:
        return _fail(e, db, user, "start_transfusion")
    return ok(transfusion=TransfusionOut.model_validate(rec))


# =========================================================
# LISTS (static paths before /{transfusion_id})
# =========================================================
@router.get("/history/all")
def transfusion_history(
    limit: Optional[int] = Query(None),
    offset: int = Query(0),
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(current_user),
):
    try:
        rows, total = svc.list_history(db, user.id, limit=limit, offset=offset)
    except TransfusionError as e:
        return _fail(e, db, user, "transfusion_history")
    return ok(
        transfusions=[TransfusionSummaryOut.from_row(r, counts) for r, counts in rows],
        total=total,
    )


@router.get("/active/all")
def active_transfusions(
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(current_user),
):
    try:
        rows = svc.list_active(db, user.id)
    except TransfusionError as e:
        return _fail(e, db, user, "active_transfusions")
    return ok(transfusions=[TransfusionOut.model_validate(r) for r in rows])


# =========================================================
# TRANSITIONS
# =========================================================
@router.patch("/{transfusion_id}/pause")
def pause_transfusion(
    transfusion_id: int,
    payload: Optional[TransfusionPause] = None,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(current_user),
):
    payload = payload or TransfusionPause()
    try:
        rec = svc.pause_transfusion(db, user.id, transfusion_id, paused_at=payload.paused_at)
    except TransfusionError as e:
        return _fail(e, db, user, "pause_transfusion", transfusion_id)
    return ok(transfusion=TransfusionOut.model_validate(rec))


@router.patch("/{transfusion_id}/resume")
def resume_transfusion(
    transfusion_id: int,
    payload: Optional[TransfusionResume] = None,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(current_user),
):
    payload = payload or TransfusionResume()
    try:
        rec = svc.resume_transfusion(
            db,
            user.id,
            transfusion_id,
            pause_duration_ms=payload.pause_duration_ms,
            resumed_at=payload.resumed_at,
        )
    except TransfusionError as e:
        return _fail(e, db, user, "resume_transfusion", transfusion_id)
    return ok(transfusion=TransfusionOut.model_validate(rec))


@router.patch("/{transfusion_id}/complete")
def complete_transfusion(
    transfusion_id: int,
    payload: Optional[TransfusionComplete] = None,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(current_user),
):
    payload = payload or TransfusionComplete()
    try:
        rec = svc.complete_transfusion(
            db,
            user.id,
            transfusion_id,
            actual_end_time=payload.actual_end_time,
            notes=payload.notes,
            complications=payload.complications,
        )
    except TransfusionError as e:
        return _fail(e, db, user, "complete_transfusion", transfusion_id)
    return ok(transfusion=TransfusionOut.model_validate(rec))


@router.patch("/{transfusion_id}/stop-early")
def stop_transfusion_early(
    transfusion_id: int,
    payload: TransfusionStopEarly,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(current_user),
):
    try:
        rec = svc.stop_transfusion_early(
            db,
            user.id,
            transfusion_id,
            reason=payload.reason,
            actual_end_time=payload.actual_end_time,
        )
    except TransfusionError as e:
        return _fail(e, db, user, "stop_transfusion_early", transfusion_id)
    return ok(transfusion=TransfusionOut.model_validate(rec))


# =========================================================
# HISTORY APPENDS
# =========================================================
@router.post("/{transfusion_id}/progress")
def record_progress(
    transfusion_id: int,
    payload: ProgressCreate,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(current_user),
):
    try:
        row = svc.record_progress(
            db,
            user.id,
            transfusion_id,
            elapsed_time_ms=payload.elapsed_time_ms,
            remaining_time_ms=payload.remaining_time_ms,
            drops_administered=payload.drops_administered,
            volume_administered_ml=payload.volume_administered_ml,
            progress_percentage=payload.progress_percentage,
        )
    except TransfusionError as e:
        return _fail(e, db, user, "record_progress", transfusion_id)
    return ok(progress=ProgressOut.model_validate(row))


@router.post("/{transfusion_id}/note")
def add_note(
    transfusion_id: int,
    payload: NoteCreate,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(current_user),
):
    try:
        row = svc.record_note(db, user.id, transfusion_id, note=payload.note, note_type=payload.note_type)
    except TransfusionError as e:
        return _fail(e, db, user, "add_note", transfusion_id)
    return ok(note=NoteOut.model_validate(row))


@router.post("/{transfusion_id}/alert")
def record_alert(
    transfusion_id: int,
    payload: AlertCreate,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(current_user),
):
    try:
        row = svc.record_alert(
            db,
            user.id,
            transfusion_id,
            alert_type=payload.alert_type,
            alert_message=payload.alert_message,
        )
    except TransfusionError as e:
        return _fail(e, db, user, "record_alert", transfusion_id)
    return ok(alert=AlertOut.model_validate(row))


# =========================================================
# READS
# =========================================================
@router.get("/{transfusion_id}/monitor")
def monitor_transfusion(
    transfusion_id: int,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(current_user),
):
    try:
        data = svc.monitor_transfusion(db, user.id, transfusion_id)
    except TransfusionError as e:
        return _fail(e, db, user, "monitor_transfusion", transfusion_id)
    return ok(monitor=MonitorOut.model_validate(data))


@router.get("/{transfusion_id}/timeline")
def transfusion_timeline(
    transfusion_id: int,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(current_user),
):
    try:
        tl = svc.get_timeline(db, user.id, transfusion_id)
    except TransfusionError as e:
        return _fail(e, db, user, "transfusion_timeline", transfusion_id)
    return ok(
        progress=[ProgressOut.model_validate(r) for r in tl["progress"]],
        notes=[NoteOut.model_validate(r) for r in tl["notes"]],
        alerts=[AlertOut.model_validate(r) for r in tl["alerts"]],
    )


@router.get("/{transfusion_id}")
def get_transfusion(
    transfusion_id: int,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(current_user),
):
    try:
        rec = svc.get_transfusion_detail(db, user.id, transfusion_id)
    except TransfusionError as e:
        return _fail(e, db, user, "get_transfusion", transfusion_id)
    return ok(transfusion=TransfusionDetailOut.model_validate(rec))
