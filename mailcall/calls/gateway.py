"""Telephony gateway interface and its Twilio REST implementation."""

from __future__ import annotations

import logging
import os
import re
from typing import Any, Protocol, runtime_checkable
from xml.sax.saxutils import escape, quoteattr

import httpx

from mailcall.calls.types import CallStatus, PlacedCall

logger = logging.getLogger(__name__)

_TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"
_DEFAULT_TIMEOUT_SECONDS = 10.0
_RING_TIMEOUT_SECONDS = 30
_E164 = re.compile(r"^\+[1-9]\d{7,14}$")

#: Twilio error codes that mean the destination number itself is unusable.
_INVALID_NUMBER_CODES = {21211, 21214, 21215, 21217, 21610}

#: Voice ids offered to users, mapped to the Twilio (Amazon Polly) voice that reads the script.
VOICES: dict[str, str] = {
    "rachel": "Polly.Joanna",
    "adam": "Polly.Matthew",
    "domi": "Polly.Amy",
    "elli": "Polly.Emma",
    "josh": "Polly.Joey",
    "arnold": "Polly.Brian",
    "bella": "Polly.Kimberly",
    "antoni": "Polly.Russell",
    "sarah": "Polly.Salli",
}
_DEFAULT_VOICE = "Polly.Joanna"

_TWILIO_STATUS: dict[str, CallStatus] = {
    "queued": CallStatus.INITIATED,
    "initiated": CallStatus.INITIATED,
    "ringing": CallStatus.INITIATED,
    "in-progress": CallStatus.IN_PROGRESS,
    "completed": CallStatus.COMPLETED,
    "busy": CallStatus.FAILED,
    "failed": CallStatus.FAILED,
    "no-answer": CallStatus.FAILED,
    "canceled": CallStatus.FAILED,
}


class GatewayError(Exception):
    """Base class for telephony failures."""


class GatewayConfigError(GatewayError):
    """Raised when provider credentials are missing or rejected."""


class InvalidNumberError(GatewayError):
    """Raised when the destination number is malformed or rejected by the provider."""


class GatewayUnavailableError(GatewayError):
    """Raised on timeouts, connection failures, and 5xx responses."""


class GatewayResponseError(GatewayError):
    """Raised when the provider answers with something we can't interpret."""


@runtime_checkable
class TelephonyGateway(Protocol):
    """Places calls and reports their status.

    Status is pulled by provider call id; a push-based provider can implement
    ``get_call_status`` from its own event store without touching callers.
    """

    async def place_call(self, to_number: str, script: str, voice_id: str) -> PlacedCall: ...

    async def get_call_status(self, provider_call_id: str) -> CallStatus: ...


def normalize_phone_number(raw: str | None) -> str:
    """Return ``raw`` in E.164 form.

    Spaces, dashes, dots and parentheses are dropped; a bare 10-digit number is
    treated as North American.

    Raises:
        InvalidNumberError: if the result is not a plausible E.164 number.
    """
    if not raw or not raw.strip():
        raise InvalidNumberError("Phone number is empty")
    digits = re.sub(r"[\s\-().]", "", raw.strip())
    if digits.isdigit() and len(digits) == 10:
        digits = "+1" + digits
    elif digits.isdigit() and len(digits) == 11 and digits.startswith("1"):
        digits = "+" + digits
    if not _E164.match(digits):
        raise InvalidNumberError(f"Invalid phone number: {raw!r}")
    return digits


def build_twiml(script: str, voice_id: str) -> str:
    """Render a script as TwiML that reads it aloud and says goodbye."""
    voice = quoteattr(VOICES.get(voice_id.lower(), _DEFAULT_VOICE))
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        f"<Response><Say voice={voice}>{escape(script)}</Say>"
        f"<Say voice={voice}>Goodbye!</Say></Response>"
    )


class TwilioGateway:
    """Places voice calls through the Twilio REST API.

    Missing credentials are detected at construction; calls then raise
    GatewayConfigError before any network I/O.

    Usage::

        gateway = TwilioGateway.from_env()
        placed = await gateway.place_call("+15551234567", script, "rachel")
        status = await gateway.get_call_status(placed.provider_call_id)
    """

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        *,
        base_url: str = _TWILIO_API_BASE,
        timeout: float = _DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._account_sid = account_sid
        self._from_number = from_number
        self.configured = bool(account_sid and auth_token and from_number)
        self._client = httpx.AsyncClient(
            base_url=base_url,
            auth=(account_sid, auth_token),
            timeout=timeout,
            transport=transport,
        )
        if not self.configured:
            logger.warning("Twilio credentials not configured; calls will fail locally")

    @classmethod
    def from_env(cls) -> TwilioGateway:
        return cls(
            account_sid=os.environ.get("TWILIO_ACCOUNT_SID", ""),
            auth_token=os.environ.get("TWILIO_AUTH_TOKEN", ""),
            from_number=os.environ.get("TWILIO_PHONE_NUMBER", ""),
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def place_call(self, to_number: str, script: str, voice_id: str) -> PlacedCall:
        self._require_config()
        to = normalize_phone_number(to_number)
        data = await self._request(
            "POST",
            f"/Accounts/{self._account_sid}/Calls.json",
            data={
                "To": to,
                "From": self._from_number,
                "Twiml": build_twiml(script, voice_id),
                "Timeout": str(_RING_TIMEOUT_SECONDS),
            },
        )
        sid = data.get("sid")
        if not sid:
            raise GatewayResponseError(f"Twilio response has no call sid: {data!r}")
        status = _map_status(data.get("status", "queued"))
        logger.info("Placed call %s to %s (status=%s)", sid, to, status.value)
        return PlacedCall(provider_call_id=str(sid), status=status)

    async def get_call_status(self, provider_call_id: str) -> CallStatus:
        self._require_config()
        data = await self._request(
            "GET", f"/Accounts/{self._account_sid}/Calls/{provider_call_id}.json"
        )
        return _map_status(data.get("status"))

    def _require_config(self) -> None:
        if not self.configured:
            raise GatewayConfigError(
                "Twilio not configured: set TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN, TWILIO_PHONE_NUMBER"
            )

    async def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise GatewayUnavailableError(f"Twilio request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise GatewayUnavailableError(f"Twilio request failed: {exc}") from exc

        try:
            data = response.json()
        except ValueError:
            data = None

        if response.status_code >= 500:
            raise GatewayUnavailableError(f"Twilio returned {response.status_code}")
        if response.status_code in (401, 403):
            raise GatewayConfigError(f"Twilio rejected credentials ({response.status_code})")
        if response.status_code >= 400:
            code = data.get("code") if isinstance(data, dict) else None
            message = data.get("message") if isinstance(data, dict) else response.text
            if code in _INVALID_NUMBER_CODES:
                raise InvalidNumberError(f"Twilio rejected number (code {code}): {message}")
            raise GatewayResponseError(f"Twilio returned {response.status_code}: {message}")
        if not isinstance(data, dict):
            raise GatewayResponseError("Twilio returned a non-JSON body")
        return data


def _map_status(raw: object) -> CallStatus:
    status = _TWILIO_STATUS.get(str(raw).lower())
    if status is None:
        raise GatewayResponseError(f"Unknown Twilio call status {raw!r}")
    return status
