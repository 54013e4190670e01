from datetime import date, time
from typing import Iterable, List, Optional

import pytest
import pytest_asyncio
from sqlmodel import SQLModel
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

import config
import database
from errors import ConflictCheckError, PersistenceError
from models import Booking


def _booking(
    id: Optional[int] = 1,
    room_id: int = 1,
    day: date = date(2024, 1, 1),
    start: time = time(9, 0),
    end: time = time(10, 0),
    user_id: str = "user-1",
    title: str = "Team sync",
    remarks: Optional[str] = "weekly check-in",
) -> Booking:
    return Booking(
        id=id,
        user_id=user_id,
        room_id=room_id,
        title=title,
        remarks=remarks,
        booking_date=day,
        start_time=start,
        end_time=end,
    )


class FakeBookingStore:
    """In-memory BookingStore that records every call."""

    def __init__(
        self,
        existing: Iterable[Booking] = (),
        failing_days: Iterable[date] = (),
        fail_range: bool = False,
        fail_insert: bool = False,
    ):
        self.bookings: List[Booking] = list(existing)
        self.failing_days = set(failing_days)
        self.fail_range = fail_range
        self.fail_insert = fail_insert
        self.queries: List[date] = []
        self.range_queries: List[tuple] = []
        self.insert_calls: List[List[Booking]] = []
        self._next_id = 1000

    def _overlapping(self, room_id, start_time, end_time, exclude_id):
        return [
            b for b in self.bookings
            if b.room_id == room_id
            and b.start_time < end_time
            and b.end_time > start_time
            and b.id != exclude_id
        ]

    async def query_overlap(self, room_id, day, start_time, end_time, exclude_id):
        self.queries.append(day)
        if day in self.failing_days:
            raise ConflictCheckError(f"Conflict check failed for {day.isoformat()}: connection reset")
        return [b for b in self._overlapping(room_id, start_time, end_time, exclude_id) if b.booking_date == day]

    async def query_overlap_range(self, room_id, start_day, end_day, start_time, end_time, exclude_id):
        self.range_queries.append((start_day, end_day))
        if self.fail_range:
            raise ConflictCheckError("Conflict check failed: statement timeout")
        return [
            b for b in self._overlapping(room_id, start_time, end_time, exclude_id)
            if start_day <= b.booking_date <= end_day
        ]

    async def insert_many(self, bookings):
        self.insert_calls.append(list(bookings))
        if self.fail_insert:
            raise PersistenceError("insert failed")
        for booking in bookings:
            booking.id = self._next_id
            self._next_id += 1
        self.bookings.extend(bookings)
        return bookings


@pytest.fixture
def make_booking():
    return _booking


@pytest.fixture
def fake_store():
    return FakeBookingStore


@pytest_asyncio.fixture
async def session(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'store.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with async_session() as s:
        yield s

    await engine.dispose()


@pytest.fixture
def api_client(tmp_path, monkeypatch):
    from fastapi.testclient import TestClient

    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'api.db'}")
    config.get_settings.cache_clear()
    database.get_engine.cache_clear()

    import main

    with TestClient(main.app) as client:
        yield client

    database.get_engine.cache_clear()
    config.get_settings.cache_clear()
