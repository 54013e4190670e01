from typing import Optional
from datetime import date, time, datetime, timezone
from enum import Enum
from sqlmodel import SQLModel, Field
from sqlalchemy import Column, DateTime, Index


class RepeatType(str, Enum):
    NO_REPEAT = "no_repeat"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"


class Room(SQLModel, table=True):
    __tablename__ = "rooms"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    status: str = Field(default="enabled", index=True)  # enabled | disabled


class Booking(SQLModel, table=True):
    __tablename__ = "bookings"
    __table_args__ = (
        # Overlap lookups always filter on room + day first
        Index("ix_bookings_room_date", "room_id", "booking_date"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    room_id: int = Field(foreign_key="rooms.id")
    title: str
    remarks: Optional[str] = None
    booking_date: date
    start_time: time
    end_time: time
    repeat_type: str = Field(default=RepeatType.NO_REPEAT.value)
    is_recurring: bool = False
    parent_booking_id: Optional[int] = Field(default=None, foreign_key="bookings.id")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
