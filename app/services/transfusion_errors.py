# FILE: app/services/transfusion_errors.py
from __future__ import annotations


# -------------------------
# Errors
# -------------------------
class TransfusionError(RuntimeError):
    status_code = 500

    def __init__(self, msg: str):
        super().__init__(msg)
        self.msg = msg


class TransfusionValidationError(TransfusionError):
    """Missing or out-of-range input. Never retried."""
    status_code = 400


class InvalidRate(TransfusionValidationError):
    pass


class InvalidTransition(TransfusionError):
    status_code = 409


class ConcurrentUpdate(InvalidTransition):
    """Row changed between read and conditional write."""


class TransfusionNotFound(TransfusionError):
    status_code = 404


class StorageFailure(TransfusionError):
    status_code = 500
