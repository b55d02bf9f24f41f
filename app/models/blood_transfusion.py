# FILE: app/models/blood_transfusion.py
from __future__ import annotations

import enum

from sqlalchemy import (
    BigInteger, Column, DateTime, Enum, Float, ForeignKey, Index, Integer, String, Text
)
from sqlalchemy.orm import relationship

from app.db.base import Base
from app.utils.timezone import utcnow

MYSQL_ARGS = {
    "mysql_engine": "InnoDB",
    "mysql_charset": "utf8mb4",
    "mysql_collate": "utf8mb4_unicode_ci",
}


class TransfusionStatus(str, enum.Enum):
    IN_PROGRESS = "IN_PROGRESS"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    STOPPED_EARLY = "STOPPED_EARLY"


TERMINAL_STATUSES = frozenset({TransfusionStatus.COMPLETED, TransfusionStatus.STOPPED_EARLY})
ACTIVE_STATUSES = frozenset({TransfusionStatus.IN_PROGRESS, TransfusionStatus.PAUSED})


# --------------------------
# Transfusion (one row per infusion episode)
# --------------------------
class BloodTransfusion(Base):
    """
    Authoritative row for one infusion. Mutated only through conditional
    updates keyed on id + caregiver + status (see crud_blood_transfusion).
    """
    __tablename__ = "blood_transfusions"
    __table_args__ = (
        Index("ix_blood_transfusions_caregiver_status", "caregiver_id", "status"),
        Index("ix_blood_transfusions_caregiver_start", "caregiver_id", "start_time"),
        MYSQL_ARGS,
    )

    id = Column(Integer, primary_key=True, index=True)

    task_id = Column(Integer, nullable=False, index=True)
    patient_id = Column(Integer, nullable=False, index=True)
    caregiver_id = Column(Integer, nullable=False, index=True)

    # fixed at creation
    pouch_volume_ml = Column(Integer, nullable=False)
    drop_factor = Column(Integer, nullable=False)  # drops per mL
    drop_rate_per_minute = Column(Integer, nullable=False)
    alert_threshold_minutes = Column(Integer, nullable=False, default=15)

    start_time = Column(DateTime, nullable=False)
    expected_end_time = Column(DateTime, nullable=False)

    status = Column(Enum(TransfusionStatus, name="blood_transfusion_status"),
                    nullable=False, default=TransfusionStatus.IN_PROGRESS)

    paused_at = Column(DateTime, nullable=True)          # set only while PAUSED
    pause_duration_ms = Column(BigInteger, nullable=False, default=0)
    actual_end_time = Column(DateTime, nullable=True)    # set only when terminal

    notes = Column(Text, nullable=True)
    complications = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=True)

    progress = relationship(
        "BloodTransfusionProgress",
        back_populates="transfusion",
        order_by=lambda: (BloodTransfusionProgress.created_at, BloodTransfusionProgress.id),
    )
    note_entries = relationship(
        "BloodTransfusionNote",
        back_populates="transfusion",
        order_by=lambda: (BloodTransfusionNote.created_at, BloodTransfusionNote.id),
    )
    alerts = relationship(
        "BloodTransfusionAlert",
        back_populates="transfusion",
        order_by=lambda: (BloodTransfusionAlert.created_at, BloodTransfusionAlert.id),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


# --------------------------
# History (insert-only)
# --------------------------
class BloodTransfusionProgress(Base):
    __tablename__ = "blood_transfusion_progress"
    __table_args__ = (
        Index("ix_bt_progress_transfusion_created", "transfusion_id", "created_at"),
        MYSQL_ARGS,
    )

    id = Column(Integer, primary_key=True)
    transfusion_id = Column(Integer, ForeignKey("blood_transfusions.id"),
                            nullable=False, index=True)

    elapsed_time_ms = Column(BigInteger, nullable=False)
    remaining_time_ms = Column(BigInteger, nullable=False)
    drops_administered = Column(Integer, nullable=False)
    volume_administered_ml = Column(Float, nullable=False)
    progress_percentage = Column(Float, nullable=False)

    created_at = Column(DateTime, nullable=False, default=utcnow)

    transfusion = relationship("BloodTransfusion", back_populates="progress")


class BloodTransfusionNote(Base):
    __tablename__ = "blood_transfusion_notes"
    __table_args__ = (
        Index("ix_bt_notes_transfusion_created", "transfusion_id", "created_at"),
        MYSQL_ARGS,
    )

    id = Column(Integer, primary_key=True)
    transfusion_id = Column(Integer, ForeignKey("blood_transfusions.id"),
                            nullable=False, index=True)

    note = Column(Text, nullable=False)
    note_type = Column(String(40), nullable=False, default="GENERAL")  # GENERAL/STATUS_CHANGE/...

    created_at = Column(DateTime, nullable=False, default=utcnow)

    transfusion = relationship("BloodTransfusion", back_populates="note_entries")


class BloodTransfusionAlert(Base):
    __tablename__ = "blood_transfusion_alerts"
    __table_args__ = (
        Index("ix_bt_alerts_transfusion_created", "transfusion_id", "created_at"),
        MYSQL_ARGS,
    )

    id = Column(Integer, primary_key=True)
    transfusion_id = Column(Integer, ForeignKey("blood_transfusions.id"),
                            nullable=False, index=True)

    alert_type = Column(String(60), nullable=False)
    alert_message = Column(String(1000), nullable=False)

    created_at = Column(DateTime, nullable=False, default=utcnow)

    transfusion = relationship("BloodTransfusion", back_populates="alerts")
