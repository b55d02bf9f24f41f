# FILE: app/schemas/blood_transfusion.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from app.models.blood_transfusion import TransfusionStatus


class CamelModel(BaseModel):
    """Bodies and responses use camelCase keys; attributes stay snake_case."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


# =========================
# Requests
# =========================
class TransfusionStart(CamelModel):
    # presence and ranges are checked by the service so every caller gets the same messages
    task_id: Optional[int] = None
    patient_id: Optional[int] = None
    pouch_volume_ml: Optional[int] = None
    drop_factor: Optional[int] = None
    drop_rate_per_minute: Optional[int] = None
    start_time: Optional[datetime] = None
    expected_end_time: Optional[datetime] = None  # accepted, server derives its own
    alert_threshold_minutes: Optional[int] = None
    notes: Optional[str] = None


class TransfusionPause(CamelModel):
    paused_at: Optional[datetime] = None


class TransfusionResume(CamelModel):
    pause_duration_ms: Optional[int] = None
    resumed_at: Optional[datetime] = None


class TransfusionComplete(CamelModel):
    actual_end_time: Optional[datetime] = None
    notes: Optional[str] = None
    complications: Optional[str] = None


class TransfusionStopEarly(CamelModel):
    reason: Optional[str] = None
    actual_end_time: Optional[datetime] = None


class ProgressCreate(CamelModel):
    elapsed_time_ms: Optional[int] = None
    remaining_time_ms: Optional[int] = None
    drops_administered: Optional[int] = None
    volume_administered_ml: Optional[float] = None
    progress_percentage: Optional[float] = None


class NoteCreate(CamelModel):
    note: Optional[str] = None
    note_type: Optional[str] = None


class AlertCreate(CamelModel):
    alert_type: Optional[str] = None
    alert_message: Optional[str] = None


# =========================
# Responses
# =========================
class ProgressOut(CamelModel):
    id: int
    transfusion_id: int
    elapsed_time_ms: int
    remaining_time_ms: int
    drops_administered: int
    volume_administered_ml: float
    progress_percentage: float
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class NoteOut(CamelModel):
    id: int
    transfusion_id: int
    note: str
    note_type: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AlertOut(CamelModel):
    id: int
    transfusion_id: int
    alert_type: str
    alert_message: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class TransfusionOut(CamelModel):
    id: int
    task_id: int
    patient_id: int
    caregiver_id: int

    pouch_volume_ml: int
    drop_factor: int
    drop_rate_per_minute: int
    alert_threshold_minutes: int

    start_time: datetime
    expected_end_time: datetime
    status: TransfusionStatus

    paused_at: Optional[datetime] = None
    pause_duration_ms: int
    actual_end_time: Optional[datetime] = None

    notes: Optional[str] = None
    complications: Optional[str] = None

    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class TransfusionDetailOut(TransfusionOut):
    progress: List[ProgressOut] = []
    note_entries: List[NoteOut] = []
    alerts: List[AlertOut] = []


class TransfusionSummaryOut(TransfusionOut):
    progress_count: int = 0
    note_count: int = 0
    alert_count: int = 0
    latest_progress_percentage: Optional[float] = None

    @classmethod
    def from_row(cls, rec: Any, counts: Dict[str, Any]) -> "TransfusionSummaryOut":
        base = TransfusionOut.model_validate(rec).model_dump()
        return cls.model_validate({**base, **counts})


class AlertEventOut(CamelModel):
    alert_type: str
    alert_message: str


class MonitorOut(CamelModel):
    transfusion_id: int
    status: TransfusionStatus
    planned_duration_ms: int
    elapsed_active_ms: int
    remaining_time_ms: int
    progress_percentage: float
    expected_drops_administered: int
    expected_volume_administered_ml: float
    reported_drops_administered: Optional[int] = None
    pause_duration_ms: int
    expected_end_time: datetime
    alerts: List[AlertEventOut] = []
