# app/db/base.py
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """All tables (transfusions, their history, error logs) inherit from this."""
    pass
