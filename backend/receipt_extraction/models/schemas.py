"""Pydantic schemas for the extraction service.

Pydantic models are used for validating and serialising data that
crosses a boundary: the receipt object returned by the vision model,
the job payload carried through the queue, and the API facing views of
an extraction. Schemas are intentionally separate from the ORM models
so that the API shape can differ from what is stored.

Wire names follow the model/JSON conventions (``vendorName``, ``qty``)
through aliases while Python code uses snake_case attributes.
"""

from __future__ import annotations

import datetime as dt
import math
from decimal import Decimal
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from receipt_extraction.utils.helpers import parse_iso_date
from .enums import ExtractionStatus, JobPartition


# ---------------------------------------------------------------------------
# Domain schemas


class ReceiptItem(BaseModel):
    """One line item. ``qty`` is the repeat count of identical name+price lines."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1)
    quantity: int = Field(default=1, ge=1, alias="qty")
    cost: float = Field(ge=0)

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("item name must not be empty")
        return value

    def to_wire(self) -> dict[str, Any]:
        return {"name": self.name, "qty": self.quantity, "cost": self.cost}


class ExtractionResult(BaseModel):
    """Validated receipt data, ready to be committed to the record."""

    model_config = ConfigDict(populate_by_name=True)

    date: dt.date
    currency: str = Field(pattern=r"^[A-Za-z]{3}$")
    vendor_name: str = Field(min_length=1, alias="vendorName")
    items: List[ReceiptItem] = Field(min_length=1)
    tax: float = Field(ge=0)
    total: float = Field(ge=0)

    @field_validator("date", mode="before")
    @classmethod
    def _parse_date(cls, value: Any) -> Any:
        if isinstance(value, str):
            parsed = parse_iso_date(value)
            if parsed is None:
                raise ValueError(f"not an ISO 8601 date: {value!r}")
            return parsed
        return value

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    @field_validator("vendor_name")
    @classmethod
    def _vendor_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("vendor name must not be empty")
        return value.strip()

    @field_validator("tax", "total")
    @classmethod
    def _finite(cls, value: float) -> float:
        if math.isnan(value) or math.isinf(value):
            raise ValueError("must be a finite number")
        return value


class ExtractionJob(BaseModel):
    """Payload of one queued extraction job."""

    extraction_id: str
    filename: str
    user_id: str


# ---------------------------------------------------------------------------
# API request/response schemas


class ExtractionRead(BaseModel):
    """Full client view of an extraction (also the live-update payload)."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True, alias_generator=to_camel)

    id: str
    filename: str
    image_url: str
    status: ExtractionStatus
    date: Optional[dt.date] = None
    currency: Optional[str] = None
    vendor_name: Optional[str] = None
    items: Optional[List[dict[str, Any]]] = None
    tax: Optional[Decimal] = None
    total: Optional[Decimal] = None
    failure_reason: Optional[str] = None
    created_at: dt.datetime
    updated_at: dt.datetime

    def to_event(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class ExtractionCreated(BaseModel):
    """Immediate response to an upload."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    id: str
    image_url: str
    filename: str
    status: ExtractionStatus


class MessageResponse(BaseModel):
    message: str


class QueuedJobRead(BaseModel):
    """Queue-side view of one extraction job."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True, alias_generator=to_camel)

    extraction_id: str
    partition: JobPartition
    message_id: Optional[str] = None
    filename: Optional[str] = None
    attempts: int = 0
    error: Optional[str] = None
