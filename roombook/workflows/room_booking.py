"""Room booking conversation steps.

The flow is linear: each step is completed by exactly one kind of user input
and advances to the next one.  Going back is allowed to any strictly earlier
step and clears every field owned by that step and the steps after it.
"""

from __future__ import annotations

from enum import Enum


class BookingStep(str, Enum):
    """States of a booking conversation, in flow order."""

    SELECTING_DATE = "selecting_date"
    SELECTING_TIME = "selecting_time"
    SELECTING_DURATION = "selecting_duration"
    NAMING_EVENT = "naming_event"
    CONFIRMING = "confirming"
    PROCESSING = "processing"


STEP_ORDER: list[BookingStep] = list(BookingStep)
FIRST_STEP: BookingStep = STEP_ORDER[0]

# Fields set by completing each step
STEP_FIELDS: dict[BookingStep, tuple[str, ...]] = {
    BookingStep.SELECTING_DATE: ("selected_date",),
    BookingStep.SELECTING_TIME: ("selected_hour", "selected_minute"),
    BookingStep.SELECTING_DURATION: ("duration", "start_time", "end_time"),
    BookingStep.NAMING_EVENT: ("name",),
    BookingStep.CONFIRMING: ("token",),
    BookingStep.PROCESSING: (),
}


def step_index(step: BookingStep) -> int:
    return STEP_ORDER.index(step)


def fields_from(step: BookingStep) -> list[str]:
    """Fields owned by ``step`` and every step after it."""
    fields: list[str] = []
    for s in STEP_ORDER[step_index(step):]:
        fields.extend(STEP_FIELDS[s])
    return fields
