from sqlalchemy import Column, DateTime, Index, Integer, JSON, String, Text

from app.db.base import Base
from app.models.blood_transfusion import MYSQL_ARGS
from app.utils.timezone import utcnow


class ErrorLog(Base):
    """
    Server-side failures (storage errors, unhandled exceptions) kept for
    follow-up. Written best-effort; never part of a transfusion transaction.
    """
    __tablename__ = "error_logs"
    __table_args__ = (
        Index("ix_error_logs_created", "created_at"),
        MYSQL_ARGS,
    )

    id = Column(Integer, primary_key=True, index=True)

    error_source = Column(String(50), nullable=False, default="backend")
    description = Column(String(1000), nullable=True)

    # where it happened
    endpoint = Column(String(255), nullable=True)  # "PATCH /api/blood-transfusion/7/pause"
    module = Column(String(255), nullable=True)
    function = Column(String(255), nullable=True)
    http_status = Column(Integer, nullable=True)

    # who / what
    caller_id = Column(Integer, nullable=True)
    transfusion_id = Column(Integer, nullable=True, index=True)

    request_payload = Column(JSON, nullable=True)
    stack_trace = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
