from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from app.crud import crud_blood_transfusion as crud
from app.models.blood_transfusion import TransfusionStatus
from app.services import transfusion_service as svc
from app.services.transfusion_errors import (
    ConcurrentUpdate,
    InvalidRate,
    InvalidTransition,
    TransfusionNotFound,
    TransfusionValidationError,
)

from conftest import CAREGIVER, OTHER_CAREGIVER, T0

PLANNED_END = T0 + timedelta(minutes=250)


def _start(db, **over):
    kw = dict(task_id=1, patient_id=2, pouch_volume_ml=500, drop_factor=15,
              drop_rate_per_minute=30, start_time=T0)
    kw.update(over)
    return svc.start_transfusion(db, CAREGIVER, **kw)


# -------------------------
# START
# -------------------------
def test_start_derives_expected_end(started):
    assert started.status == TransfusionStatus.IN_PROGRESS
    assert started.start_time == T0
    assert started.expected_end_time == PLANNED_END
    assert started.pause_duration_ms == 0
    assert started.paused_at is None
    assert started.actual_end_time is None
    assert started.caregiver_id == CAREGIVER
    assert started.alert_threshold_minutes == 15


def test_start_normalises_aware_start_time(db):
    aware = datetime(2026, 1, 1, 13, 30, tzinfo=timezone(timedelta(hours=5, minutes=30)))
    rec = _start(db, start_time=aware)
    assert rec.start_time == T0


@pytest.mark.parametrize("over,msg", [
    ({"pouch_volume_ml": 99}, "Volume"),
    ({"pouch_volume_ml": 1001}, "Volume"),
    ({"drop_rate_per_minute": 19}, "Drop rate"),
    ({"drop_rate_per_minute": 101}, "Drop rate"),
    ({"task_id": None}, "taskId"),
    ({"drop_factor": None}, "dropFactor"),
    ({"alert_threshold_minutes": 0}, "threshold"),
])
def test_start_validation(db, over, msg):
    with pytest.raises(TransfusionValidationError, match=msg):
        _start(db, **over)


def test_start_rejects_zero_drop_factor(db):
    with pytest.raises(InvalidRate):
        _start(db, drop_factor=0)


def test_start_appends_status_note(db, started):
    notes = crud.list_notes(db, started.id)
    assert [(n.note_type, n.note) for n in notes] == [("STATUS_CHANGE", "Transfusion started")]


# -------------------------
# PAUSE / RESUME
# -------------------------
def test_pause_resume_shifts_expected_end_by_pause(db, started):
    paused = svc.pause_transfusion(db, CAREGIVER, started.id, paused_at=T0 + timedelta(minutes=10))
    assert paused.status == TransfusionStatus.PAUSED
    assert paused.paused_at == T0 + timedelta(minutes=10)

    resumed = svc.resume_transfusion(db, CAREGIVER, started.id, resumed_at=T0 + timedelta(minutes=25))
    assert resumed.status == TransfusionStatus.IN_PROGRESS
    assert resumed.paused_at is None
    assert resumed.pause_duration_ms == 900_000
    assert resumed.expected_end_time == PLANNED_END + timedelta(milliseconds=900_000)


def test_resume_accumulates_reported_durations(db, started):
    svc.pause_transfusion(db, CAREGIVER, started.id, paused_at=T0 + timedelta(minutes=5))
    svc.resume_transfusion(db, CAREGIVER, started.id, pause_duration_ms=60_000)
    svc.pause_transfusion(db, CAREGIVER, started.id, paused_at=T0 + timedelta(minutes=30))
    rec = svc.resume_transfusion(db, CAREGIVER, started.id, pause_duration_ms=120_000)

    assert rec.pause_duration_ms == 180_000
    assert rec.expected_end_time == PLANNED_END + timedelta(minutes=3)


def test_resume_rejects_negative_duration(db, started):
    svc.pause_transfusion(db, CAREGIVER, started.id)
    with pytest.raises(TransfusionValidationError):
        svc.resume_transfusion(db, CAREGIVER, started.id, pause_duration_ms=-1)


def test_pause_twice_rejected(db, started):
    svc.pause_transfusion(db, CAREGIVER, started.id)
    with pytest.raises(InvalidTransition):
        svc.pause_transfusion(db, CAREGIVER, started.id)


def test_resume_when_running_rejected(db, started):
    with pytest.raises(InvalidTransition):
        svc.resume_transfusion(db, CAREGIVER, started.id)


# -------------------------
# TERMINATION
# -------------------------
def test_complete_sets_end_and_notes(db, started):
    end = T0 + timedelta(minutes=251)
    rec = svc.complete_transfusion(db, CAREGIVER, started.id, actual_end_time=end,
                                   notes="Uneventful", complications="None")
    assert rec.status == TransfusionStatus.COMPLETED
    assert rec.actual_end_time == end
    assert rec.notes == "Uneventful"
    assert rec.complications == "None"


def test_complete_keeps_start_notes_when_omitted(db):
    rec = _start(db, notes="Pre-check done")
    rec = svc.complete_transfusion(db, CAREGIVER, rec.id)
    assert rec.notes == "Pre-check done"


def test_complete_from_paused_folds_open_pause(db, started):
    svc.pause_transfusion(db, CAREGIVER, started.id, paused_at=T0 + timedelta(minutes=100))
    rec = svc.complete_transfusion(db, CAREGIVER, started.id,
                                   actual_end_time=T0 + timedelta(minutes=110))
    assert rec.status == TransfusionStatus.COMPLETED
    assert rec.paused_at is None
    assert rec.pause_duration_ms == 600_000


def test_stop_early_requires_reason(db, started):
    for reason in (None, "", "   "):
        with pytest.raises(TransfusionValidationError):
            svc.stop_transfusion_early(db, CAREGIVER, started.id, reason=reason)


def test_stop_early_stores_reason(db, started):
    rec = svc.stop_transfusion_early(db, CAREGIVER, started.id, reason="Patient reaction")
    assert rec.status == TransfusionStatus.STOPPED_EARLY
    assert rec.complications == "Patient reaction"
    assert rec.actual_end_time is not None


@pytest.mark.parametrize("finish", ["complete", "stop"])
def test_no_transition_after_terminal(db, started, finish):
    if finish == "complete":
        svc.complete_transfusion(db, CAREGIVER, started.id)
    else:
        svc.stop_transfusion_early(db, CAREGIVER, started.id, reason="Chills")

    with pytest.raises(InvalidTransition):
        svc.pause_transfusion(db, CAREGIVER, started.id)
    with pytest.raises(InvalidTransition):
        svc.resume_transfusion(db, CAREGIVER, started.id)
    with pytest.raises(InvalidTransition):
        svc.complete_transfusion(db, CAREGIVER, started.id)
    with pytest.raises(InvalidTransition):
        svc.stop_transfusion_early(db, CAREGIVER, started.id, reason="again")


# -------------------------
# HISTORY
# -------------------------
def _progress(db, tid, pct, caregiver=CAREGIVER):
    return svc.record_progress(
        db, caregiver, tid,
        elapsed_time_ms=int(pct * 150_000),
        remaining_time_ms=int((100 - pct) * 150_000),
        drops_administered=int(pct * 75),
        volume_administered_ml=pct * 5,
        progress_percentage=pct,
    )


def test_progress_snapshots_keep_call_order(db, started):
    for pct in (10, 20, 30, 40):
        _progress(db, started.id, pct)
    rows = crud.list_progress(db, started.id)
    assert [r.progress_percentage for r in rows] == [10, 20, 30, 40]


def test_progress_validation(db, started):
    with pytest.raises(TransfusionValidationError):
        svc.record_progress(db, CAREGIVER, started.id, elapsed_time_ms=1, remaining_time_ms=1,
                            drops_administered=1, volume_administered_ml=None, progress_percentage=1)
    with pytest.raises(TransfusionValidationError):
        _progress(db, started.id, 101)


def test_progress_rejected_after_completion_but_notes_allowed(db, started):
    svc.complete_transfusion(db, CAREGIVER, started.id)
    with pytest.raises(InvalidTransition):
        _progress(db, started.id, 50)

    note = svc.record_note(db, CAREGIVER, started.id, note="Post-transfusion vitals stable")
    assert note.note_type == "GENERAL"
    alert = svc.record_alert(db, CAREGIVER, started.id, alert_type="REACTION", alert_message="Late fever")
    assert alert.alert_type == "REACTION"


def test_note_and_alert_validation(db, started):
    with pytest.raises(TransfusionValidationError):
        svc.record_note(db, CAREGIVER, started.id, note="")
    with pytest.raises(TransfusionValidationError):
        svc.record_alert(db, CAREGIVER, started.id, alert_type="OVERRUN", alert_message=None)


def test_timeline_and_detail(db, started):
    svc.pause_transfusion(db, CAREGIVER, started.id)
    svc.record_note(db, CAREGIVER, started.id, note="Line flushed", note_type="NURSING")
    _progress(db, started.id, 5)

    tl = svc.get_timeline(db, CAREGIVER, started.id)
    assert [n.note for n in tl["notes"]] == ["Transfusion started", "Transfusion paused", "Line flushed"]
    assert len(tl["progress"]) == 1
    assert tl["alerts"] == []

    detail = svc.get_transfusion_detail(db, CAREGIVER, started.id)
    assert len(detail.note_entries) == 3
    assert len(detail.progress) == 1


# -------------------------
# OWNERSHIP
# -------------------------
def test_other_caregiver_sees_nothing(db, started):
    calls = [
        lambda: svc.pause_transfusion(db, OTHER_CAREGIVER, started.id),
        lambda: svc.resume_transfusion(db, OTHER_CAREGIVER, started.id),
        lambda: svc.complete_transfusion(db, OTHER_CAREGIVER, started.id),
        lambda: svc.stop_transfusion_early(db, OTHER_CAREGIVER, started.id, reason="x"),
        lambda: _progress(db, started.id, 10, caregiver=OTHER_CAREGIVER),
        lambda: svc.record_note(db, OTHER_CAREGIVER, started.id, note="x"),
        lambda: svc.record_alert(db, OTHER_CAREGIVER, started.id, alert_type="A", alert_message="m"),
        lambda: svc.get_transfusion_detail(db, OTHER_CAREGIVER, started.id),
        lambda: svc.get_timeline(db, OTHER_CAREGIVER, started.id),
        lambda: svc.monitor_transfusion(db, OTHER_CAREGIVER, started.id),
    ]
    for call in calls:
        with pytest.raises(TransfusionNotFound):
            call()

    rec = crud.get_owned(db, started.id, CAREGIVER)
    assert rec.status == TransfusionStatus.IN_PROGRESS
    assert crud.list_progress(db, started.id) == []


def test_missing_transfusion(db):
    with pytest.raises(TransfusionNotFound):
        svc.pause_transfusion(db, CAREGIVER, 999)


# -------------------------
# CONCURRENCY / BEST-EFFORT HISTORY
# -------------------------
def test_conditional_update_requires_expected_state(db, started):
    ok = crud.update_where(db, started.id, CAREGIVER, expected_status=TransfusionStatus.PAUSED,
                           observed_pause_ms=0, patch={"status": TransfusionStatus.IN_PROGRESS})
    assert ok is False
    ok = crud.update_where(db, started.id, OTHER_CAREGIVER, expected_status=TransfusionStatus.IN_PROGRESS,
                           observed_pause_ms=0, patch={"status": TransfusionStatus.PAUSED})
    assert ok is False
    db.rollback()


def test_lost_race_after_other_session_paused(db, session_factory, started, monkeypatch):
    tid = started.id
    real_check = svc.check_transition
    other = session_factory()

    def other_device_pauses_first(current, action):
        target = real_check(current, action)
        monkeypatch.setattr(svc, "check_transition", real_check)
        svc.pause_transfusion(other, CAREGIVER, tid, paused_at=T0 + timedelta(minutes=5))
        return target

    monkeypatch.setattr(svc, "check_transition", other_device_pauses_first)
    try:
        with pytest.raises(ConcurrentUpdate):
            svc.pause_transfusion(db, CAREGIVER, tid, paused_at=T0 + timedelta(minutes=6))
    finally:
        other.close()

    rec = crud.get_owned(db, tid, CAREGIVER)
    assert rec.status == TransfusionStatus.PAUSED
    assert rec.paused_at == T0 + timedelta(minutes=5)
    assert [n.note for n in crud.list_notes(db, tid)] == ["Transfusion started", "Transfusion paused"]


def test_racing_resumes_add_the_pause_once(db, session_factory, started, monkeypatch):
    tid = started.id
    svc.pause_transfusion(db, CAREGIVER, tid, paused_at=T0 + timedelta(minutes=10))
    real_check = svc.check_transition
    other = session_factory()

    def other_device_resumes_first(current, action):
        target = real_check(current, action)
        monkeypatch.setattr(svc, "check_transition", real_check)
        svc.resume_transfusion(other, CAREGIVER, tid, pause_duration_ms=900_000)
        return target

    monkeypatch.setattr(svc, "check_transition", other_device_resumes_first)
    try:
        with pytest.raises(ConcurrentUpdate):
            svc.resume_transfusion(db, CAREGIVER, tid, pause_duration_ms=900_000)
    finally:
        other.close()

    rec = crud.get_owned(db, tid, CAREGIVER)
    assert rec.status == TransfusionStatus.IN_PROGRESS
    assert rec.pause_duration_ms == 900_000


def test_lost_race_raises_concurrent_update(db, started, monkeypatch):
    monkeypatch.setattr(crud, "update_where", lambda *a, **kw: False)
    with pytest.raises(ConcurrentUpdate):
        svc.pause_transfusion(db, CAREGIVER, started.id)
    monkeypatch.undo()
    assert crud.get_owned(db, started.id, CAREGIVER).status == TransfusionStatus.IN_PROGRESS


def test_status_note_failure_keeps_transition(db, started, monkeypatch):
    def boom(*a, **kw):
        raise OperationalError("INSERT", {}, Exception("disk full"))

    monkeypatch.setattr(crud, "append_note", boom)
    rec = svc.pause_transfusion(db, CAREGIVER, started.id)
    assert rec.status == TransfusionStatus.PAUSED
    monkeypatch.undo()
    assert [n.note for n in crud.list_notes(db, started.id)] == ["Transfusion started"]


# -------------------------
# LISTS / MONITOR
# -------------------------
def test_history_and_active(db, started):
    second = _start(db, start_time=T0 + timedelta(hours=5))
    svc.complete_transfusion(db, CAREGIVER, started.id)
    svc.start_transfusion(db, OTHER_CAREGIVER, task_id=1, patient_id=3, pouch_volume_ml=300,
                          drop_factor=20, drop_rate_per_minute=40)
    _progress(db, second.id, 12.5)

    rows, total = svc.list_history(db, CAREGIVER, limit=10)
    assert total == 2
    assert [r.id for r, _ in rows] == [second.id, started.id]
    counts = dict((r.id, c) for r, c in rows)
    assert counts[second.id]["progressCount"] == 1
    assert counts[second.id]["latestProgressPercentage"] == 12.5
    assert counts[started.id]["noteCount"] == 2

    page, total = svc.list_history(db, CAREGIVER, limit=1, offset=1)
    assert total == 2 and [r.id for r, _ in page] == [started.id]

    assert [r.id for r in svc.list_active(db, CAREGIVER)] == [second.id]


def test_history_rejects_bad_paging(db):
    with pytest.raises(TransfusionValidationError):
        svc.list_history(db, CAREGIVER, limit=0)


def test_monitor_flags_overrun(db, started):
    view = svc.monitor_transfusion(db, CAREGIVER, started.id, now=PLANNED_END + timedelta(minutes=16))
    assert view["progressPercentage"] == 100.0
    assert view["remainingTimeMs"] == 0
    assert [a["alertType"] for a in view["alerts"]] == ["OVERRUN"]
    # advisory only
    assert crud.get_owned(db, started.id, CAREGIVER).status == TransfusionStatus.IN_PROGRESS
    assert crud.list_alerts(db, started.id) == []


def test_monitor_while_paused_stops_the_clock(db, started):
    svc.pause_transfusion(db, CAREGIVER, started.id, paused_at=T0 + timedelta(minutes=125))
    view = svc.monitor_transfusion(db, CAREGIVER, started.id, now=T0 + timedelta(minutes=200))
    assert view["elapsedActiveMs"] == 125 * 60_000
    assert view["progressPercentage"] == 50.0
    assert view["alerts"] == []


def test_monitor_uses_reported_drops(db, started):
    svc.record_progress(db, CAREGIVER, started.id, elapsed_time_ms=600_000, remaining_time_ms=14_400_000,
                        drops_administered=100, volume_administered_ml=6.7, progress_percentage=4)
    view = svc.monitor_transfusion(db, CAREGIVER, started.id, now=T0 + timedelta(minutes=10))
    assert view["reportedDropsAdministered"] == 100
    assert view["expectedDropsAdministered"] == 300
    assert [a["alertType"] for a in view["alerts"]] == ["RATE_DEVIATION"]


def test_monitor_rate_uses_snapshot_elapsed_not_read_time(db, started):
    # on plan at 10 min: 300 drops at 30 drops/min
    svc.record_progress(db, CAREGIVER, started.id, elapsed_time_ms=600_000, remaining_time_ms=14_400_000,
                        drops_administered=300, volume_administered_ml=20, progress_percentage=4)
    view = svc.monitor_transfusion(db, CAREGIVER, started.id, now=T0 + timedelta(minutes=14))
    assert view["elapsedActiveMs"] == 14 * 60_000
    assert view["expectedDropsAdministered"] == 420
    assert view["reportedDropsAdministered"] == 300
    assert view["alerts"] == []


def test_monitor_keeps_live_elapsed_for_overrun(db, started):
    svc.record_progress(db, CAREGIVER, started.id, elapsed_time_ms=600_000, remaining_time_ms=14_400_000,
                        drops_administered=300, volume_administered_ml=20, progress_percentage=4)
    view = svc.monitor_transfusion(db, CAREGIVER, started.id, now=PLANNED_END + timedelta(minutes=20))
    assert [a["alertType"] for a in view["alerts"]] == ["OVERRUN"]
