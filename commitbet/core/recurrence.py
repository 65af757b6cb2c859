"""Recurrence rules for task templates: validation, cron rendering, date matching."""

import re
from datetime import date, datetime, time
from enum import StrEnum

from croniter import croniter
from pydantic import BaseModel, Field, field_validator, model_validator

from commitbet.core import clock
from commitbet.core.config import Constants


_START_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")

WEEKDAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]


class Frequency(StrEnum):
    """How often a template produces an instance."""

    DAILY = "daily"
    WEEKLY = "weekly"


class Recurrence(BaseModel):
    """Schedule embedded in a task template.

    Ends never, on end_date, or after a number of occurrences; never both.
    """

    frequency: Frequency = Field(..., description="daily or weekly")
    days_of_week: list[int] = Field(
        default_factory=list,
        description="Weekdays for weekly schedules, 0=Sunday through 6=Saturday",
    )
    start_time: str = Field(..., description="Local wall time HH:MM (24-hour) of each occurrence's deadline")
    end_date: date | None = Field(default=None, description="Last local date an occurrence may fall on")
    occurrences: int | None = Field(
        default=None,
        ge=Constants.OCCURRENCES_MIN,
        le=Constants.OCCURRENCES_MAX,
        description="Maximum number of instances to generate",
    )

    @field_validator("start_time")
    @classmethod
    def validate_start_time(cls, v: str) -> str:
        """Validate start_time is HH:MM in 24-hour form."""
        if not _START_TIME_PATTERN.match(v):
            msg = f"start_time must be HH:MM (24-hour), got {v!r}"
            raise ValueError(msg)
        return v

    @field_validator("days_of_week")
    @classmethod
    def validate_days_of_week(cls, v: list[int]) -> list[int]:
        """Validate weekdays are within 0..6 and normalize to a sorted unique list."""
        for day in v:
            if not 0 <= day <= 6:  # noqa: PLR2004
                msg = f"days_of_week values must be 0-6 (0=Sunday), got {day}"
                raise ValueError(msg)
        return sorted(set(v))

    @model_validator(mode="after")
    def validate_schedule(self) -> "Recurrence":
        """Check frequency-dependent fields and the end condition."""
        if self.frequency == Frequency.WEEKLY and not self.days_of_week:
            msg = "Weekly recurrence requires at least one day in days_of_week"
            raise ValueError(msg)
        if self.frequency == Frequency.DAILY and self.days_of_week:
            self.days_of_week = []
        if self.end_date is not None and self.occurrences is not None:
            msg = "Recurrence may end on a date or after a number of occurrences, not both"
            raise ValueError(msg)
        return self


def start_clock(recurrence: Recurrence) -> time:
    """Return the recurrence's start_time as a time object."""
    hour, minute = recurrence.start_time.split(":")
    return time(int(hour), int(minute))


def to_cron(recurrence: Recurrence) -> str:
    """Render the schedule as a five-field cron expression in local wall time."""
    at = start_clock(recurrence)
    dows = "*" if recurrence.frequency == Frequency.DAILY else ",".join(str(d) for d in recurrence.days_of_week)
    return f"{at.minute} {at.hour} * * {dows}"


def matches(recurrence: Recurrence, day: date) -> bool:
    """Check whether the schedule has an occurrence on a local calendar date."""
    local_occurrence = datetime.combine(day, start_clock(recurrence))
    return croniter.match(to_cron(recurrence), local_occurrence)


def within_end_date(recurrence: Recurrence, day: date) -> bool:
    """Check the local date is not after the recurrence's end_date."""
    return recurrence.end_date is None or day <= recurrence.end_date


def occurrence_deadline(recurrence: Recurrence, day: date, tz_name: str | None) -> datetime:
    """Compute the UTC deadline of the occurrence on a local date in the given zone."""
    return clock.local_to_utc(day, start_clock(recurrence), tz_name)


def _format_time(at: time) -> str:
    if at.hour == 0 and at.minute == 0:
        return "midnight"
    if at.hour == 12 and at.minute == 0:  # noqa: PLR2004
        return "noon"
    period = "AM" if at.hour < 12 else "PM"  # noqa: PLR2004
    display_hour = at.hour % 12 or 12
    return f"{display_hour}:{at.minute:02d} {period}"


def describe(recurrence: Recurrence) -> str:
    """Convert a recurrence to human-readable text.

    Returns:
        Description such as "every Monday, Wednesday at 9:00 AM, 10 times"
    """
    at_text = f"at {_format_time(start_clock(recurrence))}"

    if recurrence.frequency == Frequency.DAILY:
        text = f"daily {at_text}"
    else:
        days = ", ".join(WEEKDAY_NAMES[d] for d in recurrence.days_of_week)
        text = f"every {days} {at_text}"

    if recurrence.end_date is not None:
        text += f", until {recurrence.end_date.isoformat()}"
    elif recurrence.occurrences is not None:
        text += ", once" if recurrence.occurrences == 1 else f", {recurrence.occurrences} times"
    return text
