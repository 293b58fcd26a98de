"""Conversation step definitions."""

from .room_booking import FIRST_STEP, STEP_FIELDS, STEP_ORDER, BookingStep

__all__ = ["BookingStep", "FIRST_STEP", "STEP_FIELDS", "STEP_ORDER"]
