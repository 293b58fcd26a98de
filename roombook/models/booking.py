"""Pydantic model tracking a member's booking conversation."""

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel

from roombook.workflows.room_booking import FIRST_STEP, BookingStep, fields_from


class BookingState(BaseModel):
    """Mutable state of one in-flight booking.

    Fields are populated progressively as the member answers each step.
    Fields belonging to steps after ``step`` are always unset.
    """

    community_id: str
    user_id: str
    resource_id: str
    default_name: str = ""

    step: BookingStep = FIRST_STEP

    selected_date: Optional[date] = None
    selected_hour: Optional[int] = None
    selected_minute: Optional[int] = None
    duration: Optional[int] = None  # minutes
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    name: Optional[str] = None
    token: Optional[str] = None

    def clear_from(self, step: BookingStep) -> None:
        """Unset every field owned by ``step`` and the steps after it."""
        for field_name in fields_from(step):
            setattr(self, field_name, None)
