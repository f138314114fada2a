"""Order snapshot persistence and resync bookkeeping.

The per-user order store is one JSON document read and written whole. Status
rules:

* ``complete``: a departure-complete timestamp exists; never resynced.
* ``incomplete``: only a departure-incomplete timestamp; resynced while the
  last status change is younger than the resync window.
* ``future``: no departure yet; always resynced.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Mapping, Tuple

from hns_sync.common.json_logger import JsonLogger, log_event
from hns_sync.common.kv_store import KeyValueStore

from .constants import RESYNC_WINDOW_DAYS, archive_key, db_key
from .dates import is_within_days
from .models import OrderRecord

RESYNC_WINDOW = timedelta(days=RESYNC_WINDOW_DAYS)

OrderMap = Dict[str, OrderRecord]


def _status_kind(order: OrderRecord) -> str:
    if order.departure_complete_ts is not None:
        return "complete"
    if order.departure_incomplete_ts is not None:
        return "incomplete"
    return "future"


def _within_window(last_sync: datetime | None, now: datetime) -> bool:
    return last_sync is not None and (now - last_sync) < RESYNC_WINDOW


def determine_sync_status(order: OrderRecord, now: datetime) -> Tuple[str, bool]:
    kind = _status_kind(order)
    if kind == "complete":
        return kind, False
    if kind == "incomplete":
        return kind, _within_window(order.last_sync_timestamp, now)
    return kind, True


def is_payment_transition(previous: OrderRecord | None, current: OrderRecord, now: datetime) -> bool:
    if previous is None or previous.sync_status != "incomplete":
        return False
    if current.departure_complete_ts is None or previous.departure_incomplete_ts is None:
        return False
    return _within_window(previous.last_sync_timestamp, now)


def order_service_date(order: OrderRecord) -> date | None:
    if order.scheduled_date is not None:
        return order.scheduled_date
    if order.arrival_ts is not None:
        return order.arrival_ts.date()
    return None


@dataclass(frozen=True)
class MergeResult:
    stored: bool
    payment_update: bool = False


def merge_parsed_order(orders: OrderMap, parsed: OrderRecord, now: datetime) -> MergeResult:
    """Fold a freshly parsed detail page into ``orders``.

    Pages without an address never replace a record; a record that never had
    an address is marked ``failed`` instead.
    """

    previous = orders.get(parsed.id)
    if not parsed.address:
        if previous is not None and not previous.address:
            previous.status = "failed"
        return MergeResult(stored=False)

    parsed.status = None
    if previous is not None:
        parsed.restored_from_archive = previous.restored_from_archive
    kind = _status_kind(parsed)
    if previous is None or previous.sync_status != kind or previous.last_sync_timestamp is None:
        parsed.last_sync_timestamp = now
    else:
        parsed.last_sync_timestamp = previous.last_sync_timestamp
    parsed.sync_status, parsed.needs_resync = determine_sync_status(parsed, now)

    payment_update = is_payment_transition(previous, parsed, now)
    if payment_update:
        parsed.last_payment_update_timestamp = now
    elif previous is not None:
        parsed.last_payment_update_timestamp = previous.last_payment_update_timestamp
    orders[parsed.id] = parsed
    return MergeResult(stored=True, payment_update=payment_update)


def flag_resync_candidates(orders: OrderMap, now: datetime) -> List[str]:
    """Recompute ``needs_resync`` for downloaded orders; returns ids whose flag changed."""

    changed: List[str] = []
    for order_id, order in orders.items():
        if order.sync_status is None and order.departure_complete_ts is None:
            continue
        kind, needs_resync = determine_sync_status(order, now)
        if order.sync_status != kind or order.needs_resync != needs_resync:
            order.sync_status = kind
            order.needs_resync = needs_resync
            changed.append(order_id)
    return changed


def orders_needing_download(orders: OrderMap, *, recent_only: bool, today: date) -> List[str]:
    selected: List[str] = []
    for order_id, order in orders.items():
        if order.needs_resync:
            service_date = order_service_date(order)
            if recent_only and service_date is not None and not is_within_days(service_date, today, RESYNC_WINDOW_DAYS):
                continue
            selected.append(order_id)
        elif order.status == "failed":
            continue
        elif order.status == "pending" or not order.address:
            selected.append(order_id)
    return selected


class OrderStore:
    """Whole-snapshot persistence of a user's orders under ``hns:db:{user}``."""

    def __init__(self, store: KeyValueStore, *, logger: JsonLogger) -> None:
        self.store = store
        self.logger = logger

    async def load_raw(self, user_id: str) -> str | None:
        return await self.store.get(db_key(user_id))

    async def load(self, user_id: str) -> OrderMap:
        raw = await self.load_raw(user_id)
        if not raw:
            return {}
        return self.decode(raw)

    def decode(self, raw: str) -> OrderMap:
        try:
            payload = json.loads(raw)
            if not isinstance(payload, Mapping):
                raise ValueError("order snapshot is not a JSON object")
            return {str(order_id): OrderRecord.from_dict(value) for order_id, value in payload.items()}
        except (ValueError, TypeError, KeyError) as exc:
            log_event(
                logger=self.logger,
                phase="sync",
                status="warn",
                message="Order snapshot is corrupt; starting from an empty store",
                error=str(exc),
            )
            return {}

    @staticmethod
    def encode(orders: OrderMap) -> str:
        return json.dumps({order_id: order.to_dict() for order_id, order in orders.items()})

    async def save(self, user_id: str, orders: OrderMap) -> None:
        await self.store.put(db_key(user_id), self.encode(orders))

    async def restore_raw(self, user_id: str, raw: str | None) -> None:
        if raw is None:
            await self.store.delete(db_key(user_id))
        else:
            await self.store.put(db_key(user_id), raw)

    async def clear(self, user_id: str) -> None:
        await self.store.delete(db_key(user_id))


class OrderArchive:
    """Long-lived copy of every downloaded order, keyed by order id with its owner."""

    PREFIX = "hns:order:"

    def __init__(self, store: KeyValueStore, *, logger: JsonLogger) -> None:
        self.store = store
        self.logger = logger

    async def put(self, owner_id: str, order: OrderRecord, now: datetime) -> None:
        payload = {"owner_id": owner_id, "stored_at": now.isoformat(), "order": order.to_dict()}
        await self.store.put(archive_key(order.id), json.dumps(payload))

    async def get(self, order_id: str) -> Tuple[str, OrderRecord] | None:
        raw = await self.store.get(archive_key(order_id))
        if not raw:
            return None
        try:
            payload = json.loads(raw)
            return str(payload["owner_id"]), OrderRecord.from_dict(payload["order"])
        except (ValueError, TypeError, KeyError) as exc:
            log_event(
                logger=self.logger,
                phase="sync",
                status="warn",
                message="Skipping corrupt archived order",
                order_id=order_id,
                error=str(exc),
            )
            return None

    async def owned_ids(self, owner_id: str) -> List[str]:
        owned: List[str] = []
        for key in await self.store.list_keys(self.PREFIX):
            order_id = key[len(self.PREFIX) :]
            entry = await self.get(order_id)
            if entry is not None and entry[0] == owner_id:
                owned.append(order_id)
        return owned

    async def put_many(self, owner_id: str, orders: Iterable[OrderRecord], now: datetime) -> None:
        for order in orders:
            await self.put(owner_id, order, now)
