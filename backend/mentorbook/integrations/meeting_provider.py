"""Meeting provider integration.

The booking saga needs one thing from a video platform: a joinable meeting for
a time window, created synchronously, that either comes back whole or fails
with ``MeetingProviderError``. ``MeetingGatewayClient`` talks to the internal
meetings gateway over HTTP; ``FakeMeetingProvider`` is the in-memory stand-in
used by tests and local development.
"""

from __future__ import annotations

from datetime import datetime
import logging
import secrets
import time
from typing import Any, Protocol, cast
import uuid

import httpx
import jwt
from pydantic import SecretStr

from ..core.config import Settings, settings as default_settings
from ..core.timezone_utils import ensure_utc
from ..schemas.booking import MeetingInfo

logger = logging.getLogger(__name__)


class MeetingProviderError(RuntimeError):
    """Raised when the meeting provider fails or responds with an error."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        *,
        details: Any | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details


class MeetingProvider(Protocol):
    """Capability the booking saga depends on."""

    name: str

    def create_meeting(
        self,
        *,
        topic: str,
        start: datetime,
        duration_minutes: int,
        host_id: str,
    ) -> MeetingInfo: ...

    def cancel_meeting(self, meeting_id: str) -> None: ...


class MeetingGatewayClient:
    """HTTP client for the meetings gateway REST API."""

    name = "gateway"

    def __init__(
        self,
        *,
        access_key: str,
        secret: str | SecretStr,
        base_url: str = "http://localhost:8090/v1",
        timeout: float = 10.0,
    ) -> None:
        self._access_key = access_key
        self._secret = secret.get_secret_value() if isinstance(secret, SecretStr) else secret
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._service_token: str | None = None
        self._service_token_refresh_at: float = 0.0

    def _generate_service_token(self) -> str:
        """Short-lived HS256 token identifying this service to the gateway."""
        now = int(time.time())
        payload = {
            "access_key": self._access_key,
            "type": "service",
            "jti": str(uuid.uuid4()),
            "iat": now,
            "nbf": now,
            "exp": now + 900,
        }
        token: str = jwt.encode(payload, self._secret, algorithm="HS256")
        return token

    def _get_service_token(self) -> str:
        """Return a cached service token, refreshing before expiry."""
        now = time.monotonic()
        if self._service_token is None or now >= self._service_token_refresh_at:
            self._service_token = self._generate_service_token()
            # Lifetime is 15 minutes; rotate after 12.
            self._service_token_refresh_at = now + (12 * 60)
        return self._service_token

    def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make an authenticated request to the gateway."""
        url = f"{self._base_url}/{path.lstrip('/')}"
        headers = {
            "Authorization": f"Bearer {self._get_service_token()}",
            "Content-Type": "application/json",
        }

        try:
            with httpx.Client(timeout=self._timeout) as client:
                response = client.request(method, url, headers=headers, json=json_body)
        except httpx.TransportError as exc:
            logger.error("Meeting gateway unreachable for %s %s: %s", method, path, exc)
            raise MeetingProviderError(
                message=f"Meeting gateway unreachable: {exc}",
                status_code=None,
            ) from exc

        if response.status_code >= 400:
            try:
                parsed_body = response.json()
            except ValueError:
                parsed_body = None
            error_body: dict[str, Any] = (
                parsed_body if isinstance(parsed_body, dict) else {"raw": response.text[:500]}
            )
            message = error_body.get("message") or error_body.get("error") or response.text

            logger.error(
                "Meeting gateway error %s for %s %s: %s",
                response.status_code,
                method,
                path,
                response.text[:500],
            )
            raise MeetingProviderError(
                message=message,
                status_code=response.status_code,
                details=error_body.get("details"),
            )

        if response.status_code == 204 or not response.content:
            return {}
        return cast(dict[str, Any], response.json())

    def create_meeting(
        self,
        *,
        topic: str,
        start: datetime,
        duration_minutes: int,
        host_id: str,
    ) -> MeetingInfo:
        """Create a scheduled meeting and return its join details."""
        body = {
            "topic": topic,
            "start_time": ensure_utc(start).isoformat(),
            "duration": duration_minutes,
            "host_id": host_id,
        }
        payload = self._request("POST", "meetings", json_body=body)
        meeting_id = payload.get("id")
        join_url = payload.get("join_url")
        if not meeting_id or not join_url:
            raise MeetingProviderError(
                "Meeting gateway returned an incomplete meeting",
                details={"payload_keys": sorted(payload)},
            )
        return MeetingInfo(
            meeting_id=str(meeting_id),
            join_url=join_url,
            password=payload.get("password"),
            provider=self.name,
        )

    def cancel_meeting(self, meeting_id: str) -> None:
        """Delete a meeting; a meeting that no longer exists counts as cancelled."""
        try:
            self._request("DELETE", f"meetings/{meeting_id}")
        except MeetingProviderError as e:
            if e.status_code == 404:
                return
            raise


class FakeMeetingProvider:
    """In-memory stub for testing/non-production environments."""

    name = "fake"

    def __init__(self, **kwargs: Any) -> None:
        self._calls: list[dict[str, Any]] = []
        self._errors: dict[str, MeetingProviderError] = {}
        self.meetings: dict[str, MeetingInfo] = {}
        self.cancelled: list[str] = []

    def set_error(self, method: str, error: MeetingProviderError) -> None:
        """Inject a method-specific error for deterministic failure testing."""
        self._errors[method] = error

    def clear_errors(self) -> None:
        """Reset all injected fake-provider errors."""
        self._errors.clear()

    def _raise_if_injected(self, method: str) -> None:
        error = self._errors.get(method)
        if error is not None:
            raise error

    def create_meeting(
        self,
        *,
        topic: str,
        start: datetime,
        duration_minutes: int,
        host_id: str,
    ) -> MeetingInfo:
        self._calls.append(
            {
                "method": "create_meeting",
                "topic": topic,
                "start": start,
                "duration_minutes": duration_minutes,
                "host_id": host_id,
            }
        )
        self._raise_if_injected("create_meeting")
        meeting_id = f"fake_meeting_{uuid.uuid4().hex[:12]}"
        meeting = MeetingInfo(
            meeting_id=meeting_id,
            join_url=f"https://meet.example.test/j/{meeting_id}",
            password=secrets.token_hex(4),
            provider=self.name,
        )
        self.meetings[meeting_id] = meeting
        return meeting

    def cancel_meeting(self, meeting_id: str) -> None:
        self._calls.append({"method": "cancel_meeting", "meeting_id": meeting_id})
        self._raise_if_injected("cancel_meeting")
        self.meetings.pop(meeting_id, None)
        self.cancelled.append(meeting_id)


def build_meeting_provider(config: Settings | None = None) -> MeetingProvider:
    """Construct the provider selected by ``meeting_provider`` in settings."""
    cfg = config or default_settings
    if cfg.meeting_provider == "gateway":
        return MeetingGatewayClient(
            access_key=cfg.meeting_gateway_access_key,
            secret=cfg.meeting_gateway_secret,
            base_url=cfg.meeting_gateway_url,
            timeout=cfg.meeting_gateway_timeout_seconds,
        )
    return FakeMeetingProvider()
