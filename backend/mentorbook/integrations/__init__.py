"""External service integrations for the MentorBook entitlement core."""

from .meeting_provider import (
    FakeMeetingProvider,
    MeetingGatewayClient,
    MeetingProvider,
    MeetingProviderError,
    build_meeting_provider,
)

__all__ = [
    "FakeMeetingProvider",
    "MeetingGatewayClient",
    "MeetingProvider",
    "MeetingProviderError",
    "build_meeting_provider",
]
