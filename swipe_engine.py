from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, Dict, Any
import logging
import threading
import zlib

session_logger = logging.getLogger("coupleswipe.session")
match_logger = logging.getLogger("coupleswipe.match")

# Fallback labels per item category (keep in sync with the mobile app tabs)
ITEM_FALLBACK_TITLES = {
    "movies": "Unknown Movie",
    "shows": "Unknown Show",
    "places": "Unknown Place",
    "restaurants": "Unknown Restaurant",
    "recipes": "Unknown Recipe",
}

LEDGER_LOCK_STRIPES = 64

STATUS_MATCHED = "matched"
STATUS_PENDING = "pending"
STATUS_REJECTED = "rejected"


@dataclass(frozen=True)
class Session:
    user_id: str
    connection_handle: str
    push_address: Optional[str] = None
    display_name: Optional[str] = None


@dataclass(frozen=True)
class InterestRecord:
    user_id: str
    interested: bool
    partner_id: str
    push_address: Optional[str] = None
    display_name: Optional[str] = None


@dataclass(frozen=True)
class ItemMetadata:
    item_type: Optional[str]
    title: str
    image: str


@dataclass(frozen=True)
class MatchOutcome:
    status: str
    item_id: Optional[str]
    record: Optional[InterestRecord] = None
    partner_record: Optional[InterestRecord] = None
    item: Optional[ItemMetadata] = None
    partner_display_name: Optional[str] = None

    @property
    def matched(self) -> bool:
        return self.status == STATUS_MATCHED


def _clean(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


class SessionDirectory:
    """user_id -> live Session. One entry per user, last registration wins."""

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()

    def register(
        self,
        user_id: str,
        connection_handle: str,
        push_address: str | None = None,
        display_name: str | None = None,
    ) -> Session:
        session = Session(
            user_id=user_id,
            connection_handle=connection_handle,
            push_address=push_address or None,
            display_name=display_name or None,
        )
        with self._lock:
            previous = self._sessions.get(user_id)
            self._sessions[user_id] = session
        if previous and previous.connection_handle != connection_handle:
            session_logger.info(
                "session_replaced user_id=%s old_handle=%s new_handle=%s",
                user_id,
                previous.connection_handle,
                connection_handle,
            )
        session_logger.info(
            "session_registered user_id=%s handle=%s has_push=%s display_name=%s",
            user_id,
            connection_handle,
            bool(session.push_address),
            session.display_name,
        )
        return session

    def lookup(self, user_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(user_id)

    def remove_by_connection(self, connection_handle: str) -> Optional[str]:
        """Drop the session owned by connection_handle; returns its user_id."""
        with self._lock:
            for user_id, session in self._sessions.items():
                if session.connection_handle == connection_handle:
                    del self._sessions[user_id]
                    break
            else:
                return None
        session_logger.info("session_removed user_id=%s handle=%s", user_id, connection_handle)
        return user_id

    def clear(self) -> None:
        with self._lock:
            self._sessions.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


def resolve_item_metadata(item_type: str | None, title: str | None, image: str | None) -> ItemMetadata:
    fallback = ITEM_FALLBACK_TITLES.get(item_type or "")
    if fallback is None:
        match_logger.error("unknown_item_type item_type=%s", item_type)
        return ItemMetadata(item_type=item_type, title="", image="")
    return ItemMetadata(item_type=item_type, title=title or fallback, image=image or "")


class SwipeLedger:
    """item_id -> {user_id -> InterestRecord}, with match detection.

    Matching for one item_id is serialized on a striped lock so that
    "write record, check partner, purge item" is atomic per item.
    """

    def __init__(self, stripes: int = LEDGER_LOCK_STRIPES) -> None:
        self._entries: Dict[str, Dict[str, InterestRecord]] = {}
        self._entries_lock = threading.Lock()
        self._stripes = [threading.Lock() for _ in range(max(int(stripes), 1))]

    def _lock_for(self, item_id: str) -> threading.Lock:
        return self._stripes[zlib.crc32(item_id.encode("utf-8")) % len(self._stripes)]

    def record_interest(
        self,
        *,
        item_id: Any,
        user_id: Any,
        interested: bool,
        partner_id: Any,
        push_address: str | None = None,
        item_type: str | None = None,
        title: str | None = None,
        image: str | None = None,
        user_display_name: str | None = None,
        partner_display_name: str | None = None,
    ) -> MatchOutcome:
        item_norm = _clean(item_id)
        user_norm = _clean(user_id)
        partner_norm = _clean(partner_id)
        if not (item_norm and user_norm and partner_norm):
            match_logger.error(
                "swipe_rejected reason=missing_identifier item_id=%r user_id=%r partner_id=%r",
                item_id,
                user_id,
                partner_id,
            )
            return MatchOutcome(status=STATUS_REJECTED, item_id=item_norm or None)

        record = InterestRecord(
            user_id=user_norm,
            interested=bool(interested),
            partner_id=partner_norm,
            push_address=push_address or None,
            display_name=user_display_name or None,
        )

        with self._lock_for(item_norm):
            with self._entries_lock:
                entry = self._entries.setdefault(item_norm, {})
                entry[user_norm] = record
                partner_record = entry.get(partner_norm)

            # Linkage is checked from this swipe's side only; the partner's
            # own partner_id is not compared back.
            if not (partner_record and partner_record.interested and record.interested):
                match_logger.info(
                    "swipe_pending item_id=%s user_id=%s partner_id=%s interested=%s",
                    item_norm,
                    user_norm,
                    partner_norm,
                    record.interested,
                )
                return MatchOutcome(status=STATUS_PENDING, item_id=item_norm, record=record)

            with self._entries_lock:
                discarded = self._entries.pop(item_norm, {})

        match_logger.info(
            "match_created item_id=%s user_id=%s partner_id=%s purged_records=%s",
            item_norm,
            user_norm,
            partner_norm,
            len(discarded),
        )
        return MatchOutcome(
            status=STATUS_MATCHED,
            item_id=item_norm,
            record=record,
            partner_record=partner_record,
            item=resolve_item_metadata(item_type, title, image),
            partner_display_name=partner_display_name or None,
        )

    def get_record(self, item_id: str, user_id: str) -> Optional[InterestRecord]:
        with self._entries_lock:
            return self._entries.get(item_id, {}).get(user_id)

    def has_item(self, item_id: str) -> bool:
        with self._entries_lock:
            return item_id in self._entries

    def pending_items(self) -> int:
        with self._entries_lock:
            return len(self._entries)

    def clear(self) -> None:
        with self._entries_lock:
            self._entries.clear()
