# FILE: app/utils/resp.py
from __future__ import annotations

from typing import Any, Dict

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse


def ok(status: int = 200, **entities: Any) -> JSONResponse:
    """Success envelope: {"success": true, "<entity>": ...}."""
    payload: Dict[str, Any] = {"success": True, **entities}
    return JSONResponse(status_code=int(status), content=jsonable_encoder(payload))


def err(message: str, status: int = 400, *, details: Any = None) -> JSONResponse:
    """Error envelope: {"success": false, "error": "<msg>"}."""
    payload: Dict[str, Any] = {"success": False, "error": str(message)}
    if details is not None:
        payload["details"] = details
    return JSONResponse(status_code=int(status), content=jsonable_encoder(payload))
