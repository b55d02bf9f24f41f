# app/models/__init__.py
from .blood_transfusion import (
    BloodTransfusion,
    BloodTransfusionAlert,
    BloodTransfusionNote,
    BloodTransfusionProgress,
    TransfusionStatus,
)
from .error_log import ErrorLog

__all__ = [
    "BloodTransfusion",
    "BloodTransfusionAlert",
    "BloodTransfusionNote",
    "BloodTransfusionProgress",
    "TransfusionStatus",
    "ErrorLog",
]
