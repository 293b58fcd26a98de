"""Data models for the booking layer."""

from .booking import BookingState
from .catalog import CommunitySettings, Resource, TokenConfig, TokenPrice

__all__ = ["BookingState", "CommunitySettings", "Resource", "TokenConfig", "TokenPrice"]
