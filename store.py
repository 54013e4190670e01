import logging
from datetime import date, time
from typing import List, Optional, Protocol

from sqlmodel import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from errors import ConflictCheckError, PersistenceError
from models import Booking

logger = logging.getLogger(__name__)


class BookingStore(Protocol):
    async def query_overlap(
        self,
        room_id: int,
        day: date,
        start_time: time,
        end_time: time,
        exclude_id: Optional[int],
    ) -> List[Booking]: ...

    async def query_overlap_range(
        self,
        room_id: int,
        start_day: date,
        end_day: date,
        start_time: time,
        end_time: time,
        exclude_id: Optional[int],
    ) -> List[Booking]: ...

    async def insert_many(self, bookings: List[Booking]) -> List[Booking]: ...


def _overlap_statement(room_id: int, start_time: time, end_time: time, exclude_id: Optional[int]):
    # Half-open ranges: [10:00, 11:00) does not collide with [09:00, 10:00)
    statement = select(Booking).where(
        Booking.room_id == room_id,
        Booking.start_time < end_time,
        Booking.end_time > start_time,
    )
    if exclude_id is not None:
        statement = statement.where(Booking.id != exclude_id)
    return statement


class SQLBookingStore:
    """BookingStore over the `bookings` table through an AsyncSession."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def query_overlap(self, room_id, day, start_time, end_time, exclude_id):
        statement = _overlap_statement(room_id, start_time, end_time, exclude_id).where(
            Booking.booking_date == day
        )
        return await self._fetch(statement, day.isoformat())

    async def query_overlap_range(self, room_id, start_day, end_day, start_time, end_time, exclude_id):
        statement = (
            _overlap_statement(room_id, start_time, end_time, exclude_id)
            .where(Booking.booking_date >= start_day, Booking.booking_date <= end_day)
            .order_by(Booking.booking_date, Booking.start_time)
        )
        return await self._fetch(statement, f"{start_day.isoformat()}..{end_day.isoformat()}")

    async def _fetch(self, statement, label: str) -> List[Booking]:
        try:
            result = await self.session.execute(statement)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            # A failed statement poisons the transaction on PostgreSQL
            await self.session.rollback()
            raise ConflictCheckError(f"Conflict check failed for {label}: {e}") from e

    async def insert_many(self, bookings: List[Booking]) -> List[Booking]:
        if not bookings:
            return []
        try:
            self.session.add_all(bookings)
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("Bulk insert of %d bookings failed: %s", len(bookings), e)
            raise PersistenceError(str(e)) from e

        # Ids were assigned by the flush; sessions are opened with expire_on_commit=False
        return bookings
