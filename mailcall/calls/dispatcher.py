"""Call dispatch and status reconciliation.

Bookkeeping is write-then-call: a ``pending`` CallLogEntry is stored before the
gateway is contacted and updated once it answers.  A crash in between leaves a
visible ``pending`` row rather than an untracked call.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from mailcall.calls.gateway import GatewayError, TelephonyGateway, normalize_phone_number
from mailcall.calls.types import CallScript, CallStatus
from mailcall.storage.models import CallLogEntry

if TYPE_CHECKING:
    from mailcall.storage.db import MailcallDatabase

logger = logging.getLogger(__name__)

_GATEWAY_TIMEOUT_SECONDS = 20.0


def _utcnow() -> datetime:
    return datetime.now(UTC)


class CallDispatcher:
    """Places calls through a TelephonyGateway and keeps the call log in step.

    ``dispatch`` never raises for call-level failures: an unusable number, a
    missing or unreachable gateway, or a provider rejection all end with the
    entry in ``failed`` and the reason in ``error``.
    """

    def __init__(
        self,
        db: MailcallDatabase,
        gateway: TelephonyGateway,
        *,
        timeout: float = _GATEWAY_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._db = db
        self._gateway = gateway
        self._timeout = timeout
        self._clock = clock

    async def dispatch(
        self,
        *,
        user_id: str,
        phone_number: str,
        script: CallScript,
        voice_id: str = "rachel",
        scheduled_time: datetime | None = None,
    ) -> CallLogEntry:
        """Log and place one call. Returns the entry as stored afterwards."""
        entry = self._db.create_call_log(
            CallLogEntry(
                id=uuid.uuid4().hex,
                user_id=user_id,
                phone_number=phone_number or "",
                call_type=script.call_type,
                script=script.body,
                status=CallStatus.PENDING,
                scheduled_time=scheduled_time or self._clock(),
                voice_id=voice_id,
            )
        )

        try:
            to_number = normalize_phone_number(phone_number)
            placed = await asyncio.wait_for(
                self._gateway.place_call(to_number, script.body, voice_id),
                timeout=self._timeout,
            )
        except (GatewayError, asyncio.TimeoutError) as exc:
            reason = str(exc) or type(exc).__name__
            logger.error(
                "Call %s (%s) for user %s failed: %s",
                entry.id,
                script.call_type.value,
                user_id,
                reason,
            )
            return self._advance(entry, CallStatus.FAILED, error=reason, completed_time=self._clock())

        status = placed.status if placed.status.rank > CallStatus.INITIATED.rank else CallStatus.INITIATED
        logger.info(
            "Call %s (%s) for user %s initiated: provider id %s",
            entry.id,
            script.call_type.value,
            user_id,
            placed.provider_call_id,
        )
        return self._advance(
            entry,
            status,
            provider_call_id=placed.provider_call_id,
            completed_time=self._clock() if status.is_terminal else None,
        )

    async def reconcile_status(self, entry: CallLogEntry) -> CallLogEntry:
        """Pull the provider's status for ``entry`` and record it if it moved forward.

        Terminal entries and entries the provider never accepted are returned
        unchanged without contacting the gateway.  Gateway errors leave the
        entry as it is; the next sweep tries again.
        """
        if entry.status.is_terminal or not entry.provider_call_id:
            return entry
        try:
            status = await asyncio.wait_for(
                self._gateway.get_call_status(entry.provider_call_id),
                timeout=self._timeout,
            )
        except (GatewayError, asyncio.TimeoutError) as exc:
            logger.warning("Status check for call %s failed: %s", entry.id, exc)
            return entry

        if status == entry.status or not entry.status.can_advance_to(status):
            return entry

        logger.info(
            "Call %s status updated: %s → %s", entry.id, entry.status.value, status.value
        )
        return self._advance(
            entry,
            status,
            completed_time=self._clock() if status.is_terminal else None,
        )

    async def reconcile_active(self) -> list[CallLogEntry]:
        """Reconcile every non-terminal call. Returns the entries that changed."""
        changed: list[CallLogEntry] = []
        for entry in self._db.get_active_call_logs():
            updated = await self.reconcile_status(entry)
            if updated.status != entry.status:
                changed.append(updated)
        return changed

    def _advance(self, entry: CallLogEntry, status: CallStatus, **fields: object) -> CallLogEntry:
        stored = self._db.advance_call_status(entry.id, status, **fields)  # type: ignore[arg-type]
        return stored or entry
