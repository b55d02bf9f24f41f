from typing import Any, Dict, Optional
import logging
import traceback

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.error_log import ErrorLog

log = logging.getLogger(__name__)


def log_error(
    db: Session,
    *,
    description: Optional[str] = None,
    error_source: str = "backend",
    endpoint: Optional[str] = None,
    module: Optional[str] = None,
    function: Optional[str] = None,
    http_status: Optional[int] = None,
    caller_id: Optional[int] = None,
    transfusion_id: Optional[int] = None,
    request_payload: Optional[Dict[str, Any]] = None,
    stack_trace: Optional[str] = None,
) -> Optional[int]:
    """
    Persist one row into error_logs and return its id.
    A failing write is logged and dropped; the caller's own error wins.
    """
    try:
        row = ErrorLog(
            error_source=error_source,
            description=(description or "")[:1000] or None,
            endpoint=(endpoint or "")[:255] or None,
            module=module,
            function=function,
            http_status=http_status,
            caller_id=caller_id,
            transfusion_id=transfusion_id,
            request_payload=request_payload,
            stack_trace=stack_trace,
        )
        db.add(row)
        db.commit()
        return row.id
    except SQLAlchemyError:
        db.rollback()
        log.warning("Could not persist error log for %s", endpoint, exc_info=True)
        return None


def format_exception(exc: BaseException) -> str:
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
