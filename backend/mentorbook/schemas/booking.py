# backend/mentorbook/schemas/booking.py
"""
Booking and calendar schemas.

Intervals are half-open ``[start_at, end_at)`` and normalized to UTC on the
way in; naive datetimes are taken to be UTC already.
"""

from datetime import datetime, timedelta
from typing import List, Literal, Optional

from pydantic import Field, field_validator, model_validator

from ..core.timezone_utils import ensure_utc, intervals_overlap
from .base import StandardizedModel, StrictRequestModel
from .entitlement import EntitlementSnapshot

# Slot durations are stored in whole minutes
MIN_INTERVAL = timedelta(minutes=1)
MIN_SESSION_MINUTES = 15


class TimeInterval(StrictRequestModel):
    """Half-open time range."""

    start_at: datetime
    end_at: datetime

    @field_validator("start_at", "end_at")
    @classmethod
    def _to_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @model_validator(mode="after")
    def _check_order(self) -> "TimeInterval":
        if self.end_at <= self.start_at:
            raise ValueError("end_at must be after start_at")
        if self.end_at - self.start_at < MIN_INTERVAL:
            raise ValueError("interval must be at least one minute long")
        return self

    @classmethod
    def starting_at(cls, start_at: datetime, duration_minutes: int) -> "TimeInterval":
        return cls(start_at=start_at, end_at=start_at + timedelta(minutes=duration_minutes))

    @property
    def duration_minutes(self) -> int:
        return int((self.end_at - self.start_at).total_seconds() // 60)

    def overlaps(self, other: "TimeInterval") -> bool:
        return intervals_overlap(self.start_at, self.end_at, other.start_at, other.end_at)


class CalendarSlotRead(StandardizedModel):
    id: str
    subject_id: str
    subject_role: str
    start_at: datetime
    end_at: datetime
    duration_minutes: int
    status: str
    booking_id: Optional[str] = None
    meeting_id: Optional[str] = None


class MeetingInfo(StandardizedModel):
    """Joinable meeting returned by a meeting provider."""

    meeting_id: str
    join_url: str
    password: Optional[str] = None
    provider: str = "gateway"


class BookingRequest(StrictRequestModel):
    """
    One booking attempt.

    ``subject_id`` is the entitlement holder (contract or student) being
    charged; ``student_id`` and ``mentor_id`` are the people whose calendars
    are occupied.
    """

    subject_id: str = Field(..., min_length=1, max_length=64)
    service_type: str = Field(..., min_length=1, max_length=50)
    student_id: str = Field(..., min_length=1, max_length=64)
    mentor_id: str = Field(..., min_length=1, max_length=64)
    mentor_role: Literal["mentor", "counselor"] = "mentor"
    start_at: datetime
    duration_minutes: int = Field(60, ge=MIN_SESSION_MINUTES)
    topic: str = Field(..., min_length=1, max_length=255)
    quantity: int = Field(1, ge=1)
    session_type: Optional[str] = Field(None, max_length=50)
    hold_id: Optional[str] = Field(
        None, description="Adopt an existing active hold instead of creating one"
    )
    created_by: Optional[str] = None

    @field_validator("start_at")
    @classmethod
    def _start_to_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @field_validator("topic")
    @classmethod
    def _clean_topic(cls, v: str) -> str:
        cleaned = v.strip()
        if not cleaned:
            raise ValueError("topic must not be blank")
        return cleaned

    @property
    def end_at(self) -> datetime:
        return self.start_at + timedelta(minutes=self.duration_minutes)

    @property
    def interval(self) -> TimeInterval:
        return TimeInterval(start_at=self.start_at, end_at=self.end_at)


class BookingResult(StandardizedModel):
    booking_id: str
    status: str
    subject_id: str
    service_type: str
    student_id: str
    mentor_id: str
    hold_id: Optional[str] = None
    start_at: datetime
    end_at: datetime
    duration_minutes: int
    meeting: MeetingInfo
    slots: List[CalendarSlotRead] = Field(default_factory=list)
    balance: EntitlementSnapshot
