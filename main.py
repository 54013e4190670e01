import logging
from fastapi import FastAPI, Depends, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlmodel import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError
from datetime import date, time
from typing import List, Optional

from config import get_settings, setup_logging
from database import init_db, get_session
from errors import InvalidInputError, PersistenceError
from models import Booking, RepeatType, Room
from recurrence import RecurrenceExpander
from store import SQLBookingStore
from pydantic import BaseModel, ConfigDict, Field
from fastapi.middleware.cors import CORSMiddleware

settings = get_settings()
setup_logging(settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Room Booking System")

GENERATE_PATH = "/generate-repeated-bookings"

# Headers the browser client sends on every call
CORS_ALLOWED_HEADERS = ["authorization", "x-client-info", "apikey", "content-type"]


# Pydantic Schemas for Request/Response
class RoomCreate(BaseModel):
    name: str
    status: str = "enabled"


class RoomRead(BaseModel):
    id: int
    name: str
    status: str


class BookingCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str
    room_id: int
    title: str
    remarks: Optional[str] = None
    booking_date: date = Field(alias="date")
    start_time: time
    end_time: time
    repeat_type: RepeatType = RepeatType.NO_REPEAT


class SeedBooking(BookingCreate):
    id: Optional[int] = None
    user_id: Optional[str] = None
    repeat_type: Optional[str] = None

    def to_booking(self) -> Booking:
        return Booking(
            id=self.id,
            user_id=self.user_id or "",
            room_id=self.room_id,
            title=self.title,
            remarks=self.remarks,
            booking_date=self.booking_date,
            start_time=self.start_time,
            end_time=self.end_time,
            repeat_type=self.repeat_type or RepeatType.NO_REPEAT.value,
        )


class BookingRead(BaseModel):
    id: int
    user_id: str
    room_id: int
    title: str
    remarks: Optional[str]
    date: date
    start_time: time
    end_time: time
    repeat_type: str
    is_recurring: bool
    parent_booking_id: Optional[int]

    @classmethod
    def from_booking(cls, booking: Booking) -> "BookingRead":
        return cls(
            id=booking.id,
            user_id=booking.user_id,
            room_id=booking.room_id,
            title=booking.title,
            remarks=booking.remarks,
            date=booking.booking_date,
            start_time=booking.start_time,
            end_time=booking.end_time,
            repeat_type=booking.repeat_type,
            is_recurring=booking.is_recurring,
            parent_booking_id=booking.parent_booking_id,
        )


class RoomSchedule(BaseModel):
    room_id: int
    room_name: str
    bookings: List[BookingRead]


class RepeatRequest(BaseModel):
    initialBooking: Optional[SeedBooking] = None
    repeatType: Optional[str] = None
    endDate: Optional[date] = None
    userId: Optional[str] = None


class RepeatResponse(BaseModel):
    message: str
    count: int


@app.on_event("startup")
async def on_startup():
    await init_db()


# --- Error translation ---
@app.exception_handler(InvalidInputError)
async def invalid_input_handler(request: Request, exc: InvalidInputError):
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": str(exc)})


@app.exception_handler(PersistenceError)
async def persistence_error_handler(request: Request, exc: PersistenceError):
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"error": str(exc)})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    # The repeat endpoint answers malformed bodies like missing ones
    if request.url.path == GENERATE_PATH:
        logger.error("Invalid repeat request: %s", jsonable_encoder(exc.errors()))
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": "Invalid request body."})
    return await request_validation_exception_handler(request, exc)


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unexpected error while handling %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "An unexpected error occurred."},
    )


# --- Rooms ---
@app.get("/rooms", response_model=List[RoomRead])
async def list_rooms(session: AsyncSession = Depends(get_session)):
    statement = select(Room).where(Room.status == "enabled").order_by(Room.id)
    result = await session.execute(statement)
    return [RoomRead(id=r.id, name=r.name, status=r.status) for r in result.scalars().all()]


@app.post("/rooms", response_model=RoomRead, status_code=status.HTTP_201_CREATED)
async def create_room(room_data: RoomCreate, session: AsyncSession = Depends(get_session)):
    if room_data.status not in ("enabled", "disabled"):
        raise HTTPException(status_code=400, detail="Room status must be 'enabled' or 'disabled'")

    room = Room(name=room_data.name, status=room_data.status)
    session.add(room)
    await session.commit()
    await session.refresh(room)
    return RoomRead(id=room.id, name=room.name, status=room.status)


# --- Bookings ---
@app.get("/bookings", response_model=List[BookingRead])
async def list_bookings(
    target_date: Optional[date] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    room_id: Optional[int] = None,
    session: AsyncSession = Depends(get_session),
):
    # Daily layout passes target_date, weekly layout passes a start/end window
    statement = select(Booking)
    if target_date is not None:
        statement = statement.where(Booking.booking_date == target_date)
    elif start_date is not None and end_date is not None:
        if start_date > end_date:
            raise HTTPException(status_code=400, detail="start_date must not be after end_date")
        statement = statement.where(Booking.booking_date >= start_date, Booking.booking_date <= end_date)
    else:
        raise HTTPException(status_code=400, detail="Provide target_date or start_date and end_date")

    if room_id is not None:
        statement = statement.where(Booking.room_id == room_id)

    statement = statement.order_by(Booking.booking_date, Booking.start_time, Booking.room_id)
    result = await session.execute(statement)
    return [BookingRead.from_booking(b) for b in result.scalars().all()]


@app.get("/dashboard-grid", response_model=List[RoomSchedule])
async def get_dashboard_grid(
    target_date: date,
    session: AsyncSession = Depends(get_session),
):
    rooms_result = await session.execute(
        select(Room).where(Room.status == "enabled").order_by(Room.id)
    )
    rooms = rooms_result.scalars().all()

    # Single query for every booking on this date
    statement = select(Booking).where(Booking.booking_date == target_date).order_by(Booking.start_time)
    result = await session.execute(statement)
    bookings = result.scalars().all()

    # Key: room_id -> that room's bookings, already sorted by start time
    booking_map = {}
    for b in bookings:
        booking_map.setdefault(b.room_id, []).append(BookingRead.from_booking(b))

    return [
        RoomSchedule(room_id=room.id, room_name=room.name, bookings=booking_map.get(room.id, []))
        for room in rooms
    ]


@app.post("/bookings", status_code=status.HTTP_201_CREATED)
async def create_booking(
    booking_data: BookingCreate,
    session: AsyncSession = Depends(get_session),
):
    # Validation
    if booking_data.start_time >= booking_data.end_time:
        raise HTTPException(status_code=400, detail="start_time must be before end_time")

    room = await session.get(Room, booking_data.room_id)
    if room is None or room.status != "enabled":
        raise HTTPException(status_code=400, detail="Invalid Room ID")

    store = SQLBookingStore(session)
    conflicts = await store.query_overlap(
        booking_data.room_id,
        booking_data.booking_date,
        booking_data.start_time,
        booking_data.end_time,
        None,
    )
    if conflicts:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Time slot conflicts with an existing booking.",
        )

    new_booking = Booking(
        user_id=booking_data.user_id,
        room_id=booking_data.room_id,
        title=booking_data.title,
        remarks=booking_data.remarks,
        booking_date=booking_data.booking_date,
        start_time=booking_data.start_time,
        end_time=booking_data.end_time,
        repeat_type=booking_data.repeat_type.value,
    )

    try:
        session.add(new_booking)
        await session.commit()
        await session.refresh(new_booking)
        return {"message": "Booking successful", "id": new_booking.id}

    except IntegrityError:
        await session.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Booking violates a database constraint.",
        )


@app.post(GENERATE_PATH, response_model=RepeatResponse)
async def generate_repeated_bookings(
    request_data: RepeatRequest,
    session: AsyncSession = Depends(get_session),
):
    seed = request_data.initialBooking
    logger.info(
        "Repeat request received: booking=%s repeatType=%s endDate=%s userId=%s",
        seed.id if seed else None, request_data.repeatType, request_data.endDate, request_data.userId,
    )

    expander = RecurrenceExpander(
        SQLBookingStore(session),
        conflict_check_mode=settings.conflict_check_mode,
    )
    result = await expander.expand(
        seed.to_booking() if seed else None,
        request_data.repeatType,
        request_data.endDate,
        request_data.userId,
    )
    return RepeatResponse(message="Repeated bookings generated successfully.", count=result.count)


app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=CORS_ALLOWED_HEADERS,
)
