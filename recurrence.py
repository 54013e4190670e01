"""
Recurring booking generation.

Given a seed booking that the caller has already persisted, enumerate the
following occurrence dates for its repeat rule, drop the dates the holiday
calendar excludes (daily cadence only), drop the dates whose time slot is
already taken in the same room, and bulk insert what is left as child
bookings of the seed.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Dict, Iterator, List, Optional, Protocol

from dateutil.relativedelta import relativedelta

from errors import ConflictCheckError, InvalidInputError
from models import Booking, RepeatType
from store import BookingStore

logger = logging.getLogger(__name__)

# Two years of daily occurrences
MAX_ITERATIONS = 365 * 2


class DateEligibility(Protocol):
    def is_excluded(self, day: date) -> bool: ...


class RegionalHolidayCalendar:
    """Fridays, plus the 1st, 3rd and 4th Saturday of every month.

    The 2nd Saturday (day 8 to 14) is a working day.
    """

    FRIDAY = 4
    SATURDAY = 5
    EXCLUDED_SATURDAYS = ((1, 7), (15, 21), (22, 28))

    def is_excluded(self, day: date) -> bool:
        weekday = day.weekday()
        if weekday == self.FRIDAY:
            return True
        if weekday == self.SATURDAY:
            return any(first <= day.day <= last for first, last in self.EXCLUDED_SATURDAYS)
        return False


class NoExclusions:
    def is_excluded(self, day: date) -> bool:
        return False


@dataclass(frozen=True)
class LoopState:
    current: date
    iteration: int = 0


@dataclass(frozen=True)
class RepeatSpecification:
    seed: Booking
    repeat_type: RepeatType
    end_date: Optional[date]
    user_id: str


@dataclass
class ExpansionResult:
    emitted: List[Booking] = field(default_factory=list)
    iterations: int = 0
    excluded: List[date] = field(default_factory=list)
    conflicts: Dict[date, List[int]] = field(default_factory=dict)
    failed: List[date] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.emitted)


def next_date(start: date, state: LoopState, repeat_type: RepeatType) -> Optional[date]:
    if repeat_type in (RepeatType.DAILY, RepeatType.CUSTOM):
        return state.current + timedelta(days=1)
    if repeat_type is RepeatType.WEEKLY:
        return state.current + timedelta(weeks=1)
    if repeat_type is RepeatType.MONTHLY:
        # Offset from the seed so a clamped month end does not drag later months back
        return start + relativedelta(months=state.iteration + 1)
    return None


def advance(state: LoopState, repeat_type: RepeatType, start: date) -> Optional[LoopState]:
    following = next_date(start, state, repeat_type)
    if following is None:
        return None
    return LoopState(current=following, iteration=state.iteration + 1)


def candidate_dates(
    start: date,
    repeat_type: RepeatType,
    end_date: Optional[date] = None,
    max_iterations: int = MAX_ITERATIONS,
) -> Iterator[date]:
    """Yield candidate dates from `start` on, before any exclusion or conflict check.

    `end_date` is inclusive. At most `max_iterations` dates are produced
    whatever `end_date` says. A cadence without a step rule yields nothing.
    """
    state = LoopState(current=start)
    if next_date(start, state, repeat_type) is None:
        return

    while state.iteration < max_iterations and (end_date is None or state.current <= end_date):
        yield state.current
        state = advance(state, repeat_type, start)


def parse_repeat_type(raw) -> Optional[RepeatType]:
    try:
        return RepeatType(raw)
    except ValueError:
        return None


def _is_seed_slot(occurrence: Booking, seed: Booking) -> bool:
    return (
        occurrence.booking_date == seed.booking_date
        and occurrence.start_time == seed.start_time
        and occurrence.end_time == seed.end_time
    )


class RecurrenceExpander:
    """Generates and stores the occurrences of a recurring booking.

    Conflict checks run sequentially against the store, either one query per
    candidate date (`per_date`) or one query over the whole staged range
    (`range`). A range query that fails falls back to per-date queries.
    """

    def __init__(
        self,
        store: BookingStore,
        eligibility: Optional[DateEligibility] = None,
        conflict_check_mode: str = "per_date",
        max_iterations: int = MAX_ITERATIONS,
    ):
        self.store = store
        self.eligibility = eligibility if eligibility is not None else RegionalHolidayCalendar()
        self.conflict_check_mode = conflict_check_mode
        self.max_iterations = max_iterations

    async def expand(
        self,
        seed: Optional[Booking],
        repeat_type: Optional[str],
        end_date: Optional[date],
        user_id: Optional[str],
    ) -> ExpansionResult:
        if seed is None or not repeat_type or not user_id:
            raise InvalidInputError("Missing required parameters.")
        if seed.id is None:
            # Occurrences must point back at a persisted seed
            raise InvalidInputError("Initial booking must have an id.")

        result = ExpansionResult()
        cadence = parse_repeat_type(repeat_type)
        if cadence is None or cadence is RepeatType.NO_REPEAT:
            logger.warning("Unknown repeat type: %s. No repeated bookings generated.", repeat_type)
            return result

        repeat = RepeatSpecification(seed=seed, repeat_type=cadence, end_date=end_date, user_id=user_id)
        logger.info(
            "Starting repeat booking generation for booking %s from %s with repeat type %s (end %s)",
            seed.id, seed.booking_date.isoformat(), cadence.value,
            end_date.isoformat() if end_date else "none",
        )

        staged = self._stage(repeat, result)
        eligible = await self._resolve_conflicts(repeat, staged, result)

        occurrences = [
            occurrence
            for occurrence in (self._occurrence(repeat, day) for day in eligible)
            if not _is_seed_slot(occurrence, seed)
        ]

        logger.info(
            "Repeat generation for booking %s: %d candidates, %d excluded, %d conflicting, %d failed checks, %d to insert",
            seed.id, result.iterations, len(result.excluded), len(result.conflicts),
            len(result.failed), len(occurrences),
        )

        if not occurrences:
            logger.info("No additional repeated bookings to insert.")
            return result

        result.emitted = await self.store.insert_many(occurrences)
        logger.info("Inserted %d repeated bookings for booking %s", result.count, seed.id)
        return result

    def _stage(self, repeat: RepeatSpecification, result: ExpansionResult) -> List[date]:
        staged = []
        for day in candidate_dates(
            repeat.seed.booking_date, repeat.repeat_type, repeat.end_date, self.max_iterations
        ):
            result.iterations += 1
            if repeat.repeat_type is RepeatType.DAILY and self.eligibility.is_excluded(day):
                logger.debug("Skipped %s: excluded by holiday calendar", day.isoformat())
                result.excluded.append(day)
                continue
            staged.append(day)
        return staged

    async def _resolve_conflicts(
        self, repeat: RepeatSpecification, days: List[date], result: ExpansionResult
    ) -> List[date]:
        if not days:
            return []

        if self.conflict_check_mode == "range":
            seed = repeat.seed
            try:
                existing = await self.store.query_overlap_range(
                    seed.room_id, days[0], days[-1], seed.start_time, seed.end_time, seed.id
                )
            except ConflictCheckError as e:
                logger.warning("Range conflict check failed, falling back to per-date checks: %s", e)
            else:
                taken = defaultdict(list)
                for booking in existing:
                    taken[booking.booking_date].append(booking.id)
                return [day for day in days if not self._record_conflict(day, taken.get(day), result)]

        eligible = []
        for day in days:
            if await self._check_day(repeat, day, result):
                eligible.append(day)
        return eligible

    async def _check_day(self, repeat: RepeatSpecification, day: date, result: ExpansionResult) -> bool:
        seed = repeat.seed
        try:
            existing = await self.store.query_overlap(
                seed.room_id, day, seed.start_time, seed.end_time, seed.id
            )
        except ConflictCheckError as e:
            logger.error("Error checking conflict for %s: %s", day.isoformat(), e)
            result.failed.append(day)
            return False
        return not self._record_conflict(day, [b.id for b in existing], result)

    @staticmethod
    def _record_conflict(day: date, booking_ids: Optional[List[int]], result: ExpansionResult) -> bool:
        if not booking_ids:
            return False
        logger.warning(
            "Skipping repeated booking for %s due to conflict with booking(s) %s",
            day.isoformat(), ", ".join(str(i) for i in booking_ids),
        )
        result.conflicts[day] = list(booking_ids)
        return True

    @staticmethod
    def _occurrence(repeat: RepeatSpecification, day: date) -> Booking:
        seed = repeat.seed
        return Booking(
            user_id=repeat.user_id,
            room_id=seed.room_id,
            title=seed.title,
            remarks=seed.remarks,
            booking_date=day,
            start_time=seed.start_time,
            end_time=seed.end_time,
            repeat_type=RepeatType.NO_REPEAT.value,
            is_recurring=True,
            parent_booking_id=seed.id,
        )
