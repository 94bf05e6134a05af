from __future__ import annotations

from typing import Any, Dict, Optional
import logging

from push_notifications import ExpoPushService, PushJob
from realtime import ConnectionHub
from swipe_engine import InterestRecord, MatchOutcome, SessionDirectory

logger = logging.getLogger("coupleswipe.match")

MATCH_EVENT = "match"


def match_message(partner_name: str | None) -> str:
    return f"You matched with {partner_name}"


class MatchNotifier:
    """Fans a match out to both parties: push job plus live `match` event."""

    def __init__(self, *, sessions: SessionDirectory, hub: ConnectionHub, push: ExpoPushService) -> None:
        self.sessions = sessions
        self.hub = hub
        self.push = push

    def _display_name(self, record: InterestRecord, declared: str | None) -> Optional[str]:
        if declared:
            return declared
        session = self.sessions.lookup(record.user_id)
        return session.display_name if session else None

    async def notify(self, outcome: MatchOutcome) -> Dict[str, Any]:
        if not outcome.matched:
            return {"pushes": 0, "events": 0}
        user = outcome.record
        partner = outcome.partner_record
        user_name = self._display_name(user, user.display_name)
        partner_name = self._display_name(partner, outcome.partner_display_name or partner.display_name)

        pushes = 0
        events = 0
        for recipient, recipient_name, other, other_name in (
            (user, user_name, partner, partner_name),
            (partner, partner_name, user, user_name),
        ):
            message = match_message(other_name or other.user_id)
            if recipient.push_address and self._enqueue_push(outcome, recipient, other, message):
                pushes += 1
            if await self._emit_match(outcome, recipient, recipient_name, other, other_name, message):
                events += 1

        logger.info(
            "match_notified item_id=%s user_id=%s partner_id=%s pushes=%s events=%s",
            outcome.item_id,
            user.user_id,
            partner.user_id,
            pushes,
            events,
        )
        return {"pushes": pushes, "events": events}

    def _enqueue_push(
        self, outcome: MatchOutcome, recipient: InterestRecord, other: InterestRecord, message: str
    ) -> bool:
        logger.info("match_push_attempt user_id=%s partner_id=%s", recipient.user_id, other.user_id)
        try:
            return self.push.enqueue(
                PushJob(
                    push_address=recipient.push_address,
                    body=message,
                    data={
                        "item_id": outcome.item_id,
                        "item_type": outcome.item.item_type,
                        "partner_id": other.user_id,
                    },
                )
            )
        except Exception:
            logger.exception("match_push_enqueue_failed user_id=%s", recipient.user_id)
            return False

    async def _emit_match(
        self,
        outcome: MatchOutcome,
        recipient: InterestRecord,
        recipient_name: str | None,
        other: InterestRecord,
        other_name: str | None,
        message: str,
    ) -> bool:
        session = self.sessions.lookup(recipient.user_id)
        if session is None:
            logger.debug("match_event_skip no_session user_id=%s", recipient.user_id)
            return False
        payload = {
            "user_id": recipient.user_id,
            "user_username": recipient_name,
            "partner_id": other.user_id,
            "partner_username": other_name,
            "item_id": outcome.item_id,
            "item_type": outcome.item.item_type,
            "title": outcome.item.title,
            "image": outcome.item.image,
            "message": message,
        }
        return await self.hub.emit(session.connection_handle, MATCH_EVENT, payload)
