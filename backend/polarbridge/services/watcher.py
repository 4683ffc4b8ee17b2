"""
Polar Bridge - Chain Watcher

Polls one chain's contract events past a persisted cursor and hands each
recognised event to the Settlement Dispatcher.

Ordering guarantee: every event of a page is durably recorded before the
cursor moves past it. A crash in between re-delivers the page; the
dispatcher's unique key makes that harmless. A lock or payback whose
payload cannot be mapped is recorded as a failed settlement, so locked
funds never slip past the cursor unseen. Unknown topics are ignored.
"""

import logging
from collections import OrderedDict
from typing import Optional

from pydantic import ValidationError

from polarbridge.bridges.chain import ChainClient
from polarbridge.core.errors import (
    ChainCallFailed,
    ErrorKind,
    EventNotFound,
    InvalidAddress,
    InvalidAmount,
    MalformedEvent,
    SigningUnavailable,
)
from polarbridge.models.schemas import (
    CanonicalEvent,
    CanonicalEventType,
    RawChainEvent,
    SettlementStatus,
)
from polarbridge.services.dispatcher import SettlementDispatcher

logger = logging.getLogger(__name__)


TOPICS: dict[str, CanonicalEventType] = {
    "lock": CanonicalEventType.LOCKED,
    "locked": CanonicalEventType.LOCKED,
    "payback": CanonicalEventType.PAID_BACK,
    "paid_back": CanonicalEventType.PAID_BACK,
    "paidback": CanonicalEventType.PAID_BACK,
}


class SeenCache:
    """Bounded LRU of recently handled event keys."""

    def __init__(self, size: int = 1000):
        self.size = size
        self._keys: OrderedDict[str, None] = OrderedDict()

    def __contains__(self, key: str) -> bool:
        if key in self._keys:
            self._keys.move_to_end(key)
            return True
        return False

    def __len__(self) -> int:
        return len(self._keys)

    def add(self, key: str) -> None:
        self._keys[key] = None
        self._keys.move_to_end(key)
        while len(self._keys) > self.size:
            self._keys.popitem(last=False)


def map_event(
    chain: str,
    raw: RawChainEvent,
    default_assets: dict[CanonicalEventType, str],
) -> Optional[CanonicalEvent]:
    """
    Raw contract event -> canonical event.

    Returns None for topics the core does not handle.
    Raises MalformedEvent for known topics with unusable data; its code
    names the offending part (invalid_address, invalid_amount, malformed_event).
    """
    event_type = TOPICS.get(raw.topic.lower())
    if event_type is None:
        return None

    data = raw.data
    memo = data.get("memo") or {}
    if not isinstance(memo, dict):
        raise MalformedEvent(f"{raw.topic} {raw.id} memo is not an object")
    source_address = data.get("from")
    dest_address = data.get("to")
    loan_id = memo.get("loan_id") or data.get("loan_id")

    if not source_address:
        raise MalformedEvent(f"{raw.topic} {raw.id} has no sender address", code=InvalidAddress.code)
    if event_type == CanonicalEventType.LOCKED and not loan_id and not dest_address:
        raise MalformedEvent(f"lock {raw.id} has no destination address", code=InvalidAddress.code)

    try:
        return CanonicalEvent(
            event_type=event_type,
            source_chain=chain,
            source_event_id=f"{chain}:{raw.id}",
            source_tx_ref=raw.tx_ref,
            amount=data.get("amount"),
            asset=data.get("asset") or default_assets[event_type],
            source_address=source_address,
            dest_address=dest_address,
            ledger_cursor=raw.cursor,
            loan_id=loan_id,
            duration_days=memo.get("duration_days"),
            ltv=memo.get("ltv"),
        )
    except ValidationError as e:
        errors = e.errors()
        fields = {str(err["loc"][0]) for err in errors if err["loc"]}
        if "amount" in fields:
            code = InvalidAmount.code
        elif fields & {"source_address", "dest_address"}:
            code = InvalidAddress.code
        else:
            code = None
        raise MalformedEvent(
            f"{raw.topic} {raw.id}: {e.error_count()} invalid fields ({errors[0]['msg']})",
            code=code,
        )


class ChainWatcher:

    def __init__(
        self,
        chain: str,
        client: ChainClient,
        dispatcher: SettlementDispatcher,
        store,
        default_assets: dict[CanonicalEventType, str],
        page_size: int = 20,
        seen_cache_size: int = 1000,
    ):
        self.chain = chain
        self.client = client
        self.dispatcher = dispatcher
        self.store = store
        self.default_assets = default_assets
        self.page_size = page_size
        self.seen = SeenCache(seen_cache_size)

    async def poll(self, cursor: Optional[str]) -> tuple[list[CanonicalEvent], Optional[str]]:
        """One page of canonical events after `cursor`, plus the cursor past them."""
        page = await self.client.query_events(cursor, self.page_size)
        if not page.ok:
            if page.error_kind == ErrorKind.FATAL:
                raise SigningUnavailable(f"[{self.chain}] event query rejected: {page.error}")
            raise ChainCallFailed(
                f"[{self.chain}] event query failed: {page.error}",
                kind=page.error_kind or ErrorKind.TRANSIENT,
            )

        events = []
        for raw in page.events:
            try:
                event = map_event(self.chain, raw, self.default_assets)
            except MalformedEvent as e:
                await self._quarantine(raw, e)
                continue
            if event is None:
                logger.debug(f"[WATCHER:{self.chain}] Ignoring topic {raw.topic} ({raw.id})")
                continue
            events.append(event)
        return events, page.cursor or cursor

    async def fetch(self, event_id: str) -> CanonicalEvent:
        """Look up one event on this chain by id and map it, for settling out of band."""
        result = await self.client.get_event(event_id)
        if not result.ok:
            if result.error_kind == ErrorKind.FATAL:
                raise SigningUnavailable(f"[{self.chain}] event lookup rejected: {result.error}")
            raise ChainCallFailed(
                f"[{self.chain}] event lookup failed: {result.error}",
                kind=result.error_kind or ErrorKind.TRANSIENT,
            )
        if result.event is None:
            raise EventNotFound(f"No {self.chain} event {event_id}")

        event = map_event(self.chain, result.event, self.default_assets)
        if event is None:
            raise MalformedEvent(
                f"{self.chain} event {event_id} has unhandled topic {result.event.topic}",
                code="unsupported_topic",
            )
        return event

    async def _quarantine(self, raw: RawChainEvent, error: MalformedEvent) -> None:
        """Malformed events of known topics become failed records before the cursor moves."""
        if not raw.id:
            logger.error(f"[WATCHER:{self.chain}] Dropping {raw.topic} event without id: {error.message}")
            return
        key = f"{self.chain}:{raw.id}"
        if key in self.seen:
            return
        await self.dispatcher.quarantine(key, raw, error)
        self.seen.add(key)

    async def tick(self) -> int:
        """Load cursor, poll, record, persist cursor. Returns the number of new events."""
        cursor = await self.store.get_cursor(self.chain)
        try:
            events, new_cursor = await self.poll(cursor)
        except ChainCallFailed as e:
            if e.kind == ErrorKind.PERMANENT:
                logger.error(f"[WATCHER:{self.chain}] {e.message}")
            else:
                logger.warning(f"[WATCHER:{self.chain}] {e.message}, cursor stays at {cursor}")
            return 0

        handed_off = 0
        for event in events:
            if event.key in self.seen:
                logger.debug(f"[WATCHER:{self.chain}] Duplicate {event.key} (seen)")
                continue

            record, created = await self.dispatcher.record(event)
            self.seen.add(event.key)
            if created:
                handed_off += 1
            if record.status in (SettlementStatus.PENDING, SettlementStatus.SUBMITTED):
                self.dispatcher.spawn(event)
            else:
                logger.debug(f"[WATCHER:{self.chain}] {event.key} already {record.status.value}")

        if new_cursor and new_cursor != cursor:
            await self.store.save_cursor(self.chain, new_cursor)

        if handed_off:
            logger.info(f"[WATCHER:{self.chain}] {handed_off} new events, cursor {cursor} -> {new_cursor}")
        return handed_off
