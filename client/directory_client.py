"""Async HTTP client for the meeting directory service."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from shared.protocol import (
    MeetingCreated,
    MeetingValidation,
    ProtocolError,
    SlotSelection,
    normalize_phone_number,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


class DirectoryError(Exception):
    """A directory call failed; ``message`` is fit to show to the user."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class DirectoryClient:
    """Thin wrapper over ``httpx.AsyncClient`` for the directory endpoints.

    Args:
        base_url: Root URL of the directory service. There is no default.
        transport: Optional httpx transport, e.g. ``httpx.ASGITransport``.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not base_url:
            raise ValueError("directory base URL is required")
        self._client = httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "DirectoryClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def create_meeting(self, recipient: str) -> MeetingCreated:
        try:
            number = normalize_phone_number(recipient)
        except ValueError as exc:
            raise DirectoryError(str(exc)) from exc
        data = await self._request("POST", "/create-meeting", json={"recipientPhoneNumber": number})
        if not data.get("success"):
            raise DirectoryError(str(data.get("message") or "Failed to create meeting."))
        created = self._parse(MeetingCreated.from_dict, data)
        logger.info("Created meeting %s for %s", created.meeting_id, created.recipient)
        return created

    async def validate_meeting(self, meeting_id: str) -> MeetingValidation:
        data = await self._request("GET", f"/validate-meeting/{meeting_id}")
        return self._parse(MeetingValidation.from_dict, data)

    async def select_slot(self, meeting_id: str, slot_time: str) -> SlotSelection:
        data = await self._request("POST", "/select-slot", json={"meetingId": meeting_id, "slotTime": slot_time})
        return self._parse(SlotSelection.from_dict, data)

    async def send_invite(self, meeting_id: str, recipient: str) -> Optional[str]:
        """Ask the directory to dispatch an invitation. Failures are only logged."""

        try:
            data = await self._request(
                "POST",
                "/send-invite",
                json={"meetingId": meeting_id, "recipientPhoneNumber": normalize_phone_number(recipient)},
            )
        except (DirectoryError, ValueError) as exc:
            logger.warning("Invite dispatch for %s failed: %s", meeting_id, exc)
            return None
        link = data.get("inviteLink")
        return str(link) if link else None

    async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("Directory %s %s failed: %s", method, path, exc)
            raise DirectoryError("Could not reach the meeting directory.") from exc
        try:
            data = response.json()
        except ValueError:
            data = None
        if response.is_error:
            message = None
            if isinstance(data, dict):
                message = data.get("message") or data.get("detail")
            raise DirectoryError(
                str(message or f"Directory returned HTTP {response.status_code}"),
                status_code=response.status_code,
            )
        if not isinstance(data, dict):
            raise DirectoryError("Directory returned an unexpected response.", status_code=response.status_code)
        return data

    @staticmethod
    def _parse(parser, data: Dict[str, Any]):
        try:
            return parser(data)
        except ProtocolError as exc:
            raise DirectoryError(f"Directory returned an unexpected response ({exc}).") from exc
