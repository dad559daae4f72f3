"""Persistence for extraction records.

All status writes go through :meth:`ExtractionStore.update_status`, which
consults the ``ExtractionStatus`` transition table and keeps the column
invariants: extracted fields are only set on EXTRACTED records and
``failure_reason`` only on INVALID or FAILED ones.

An update never re-creates a record. When the row is gone (deleted while
a job was in flight) the update is a logged no-op that returns ``None``.
"""

from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Sequence

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from receipt_extraction.models.enums import ExtractionStatus
from receipt_extraction.models.schemas import ExtractionResult
from receipt_extraction.models.tables import EXTRACTED_FIELDS, Extraction

logger = logging.getLogger(__name__)

_CENTS = Decimal("0.01")


def to_money(value: float) -> Decimal:
    return Decimal(str(value)).quantize(_CENTS, rounding=ROUND_HALF_UP)


class ExtractionStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create(self, extraction_id: str, user_id: str, filename: str, image_url: str) -> Extraction:
        record = Extraction(
            id=extraction_id,
            user_id=user_id,
            filename=filename,
            image_url=image_url,
            status=ExtractionStatus.SUBMITTING,
        )
        async with self._session_factory() as session:
            session.add(record)
            await session.commit()
            await session.refresh(record)
        return record

    async def get(self, extraction_id: str, user_id: Optional[str] = None) -> Optional[Extraction]:
        stmt = select(Extraction).where(Extraction.id == extraction_id)
        if user_id is not None:
            stmt = stmt.where(Extraction.user_id == user_id)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def list_for_user(self, user_id: str) -> Sequence[Extraction]:
        stmt = (
            select(Extraction)
            .where(Extraction.user_id == user_id)
            .order_by(Extraction.created_at.desc(), Extraction.id.desc())
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return result.scalars().all()

    async def delete(self, extraction_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(delete(Extraction).where(Extraction.id == extraction_id))
            await session.commit()
            return bool(result.rowcount)

    async def update_status(
        self,
        extraction_id: str,
        status: ExtractionStatus,
        *,
        result: Optional[ExtractionResult] = None,
        reason: Optional[str] = None,
    ) -> Optional[Extraction]:
        """Move a record to ``status``.

        Returns the updated record, or ``None`` when the record does not
        exist or the transition is not allowed.
        """
        if status == ExtractionStatus.EXTRACTED and result is None:
            raise ValueError("EXTRACTED requires an extraction result")

        async with self._session_factory() as session:
            record = await session.get(Extraction, extraction_id)
            if record is None:
                logger.info("Skipping %s update for missing extraction %s", status.value, extraction_id)
                return None
            current = ExtractionStatus(record.status)
            if not current.can_transition_to(status):
                logger.warning(
                    "Ignoring disallowed transition %s -> %s for extraction %s",
                    current.value,
                    status.value,
                    extraction_id,
                )
                return None

            record.status = status
            if status == ExtractionStatus.EXTRACTED:
                record.date = result.date
                record.currency = result.currency
                record.vendor_name = result.vendor_name
                record.items = [item.to_wire() for item in result.items]
                record.tax = to_money(result.tax)
                record.total = to_money(result.total)
                record.failure_reason = None
            else:
                for field in EXTRACTED_FIELDS:
                    setattr(record, field, None)
                if status in (ExtractionStatus.INVALID, ExtractionStatus.FAILED):
                    record.failure_reason = reason
                else:
                    record.failure_reason = None

            try:
                await session.commit()
            except StaleDataError:
                # Row deleted between load and flush
                await session.rollback()
                logger.info("Extraction %s vanished during %s update", extraction_id, status.value)
                return None
            await session.refresh(record)
            return record
