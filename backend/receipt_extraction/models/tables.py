"""SQLAlchemy ORM models for the extraction service.

Enumerated fields are stored as strings using SQLAlchemy's native Enum
type. Line items are kept as a JSON column in the order the model
returned them.

If you extend or modify these models remember to recreate the tables
(``init_db`` runs ``create_all`` at startup).
"""

from __future__ import annotations

import datetime as dt

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    Enum,
    Numeric,
    String,
    Text,
    JSON,
    Index,
)

from receipt_extraction.core.database import Base
from .enums import ExtractionStatus


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc).replace(tzinfo=None)


class Extraction(Base):
    """One uploaded receipt and the result of extracting it."""

    __tablename__ = "extractions"
    __table_args__ = (Index("ix_extractions_user_created", "user_id", "created_at"),)

    id = Column(String(36), primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    filename = Column(String, nullable=False)
    image_url = Column(Text, nullable=False)
    status = Column(Enum(ExtractionStatus), default=ExtractionStatus.SUBMITTING, nullable=False)

    # Populated only when status == EXTRACTED
    date = Column(Date, nullable=True)
    currency = Column(String(3), nullable=True)
    vendor_name = Column(String, nullable=True)
    items = Column(JSON, nullable=True)
    tax = Column(Numeric(12, 2), nullable=True)
    total = Column(Numeric(12, 2), nullable=True)

    # Populated only when status is INVALID or FAILED
    failure_reason = Column(Text, nullable=True)

    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)


EXTRACTED_FIELDS = ("date", "currency", "vendor_name", "items", "tax", "total")
