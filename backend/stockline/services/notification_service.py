# Overview: Notification relay and transactional outbox; events are stored with the sale and emitted after commit.

"""
Notification Relay

Services never talk to listeners while a transaction is open. They call
enqueue_event() inside the unit of work, which writes an OutboxEvent row that
commits or rolls back with everything else. After commit the caller runs
dispatch_events(ids), which hands each row to the configured relay.

Relays:
- LoggingRelay ("log", default): writes each event to the app logger
- InMemoryRelay ("memory"): keeps a history and fans out to in-process
  subscribers; used by tests and by embedding code that wants callbacks

Dispatch never raises. A failing relay bumps attempts and records
last_error on the row, which stays pending for `flask events push`.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Callable

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import OutboxEvent
from ..time_utils import utcnow


SALE_COMPLETED = "saleCompleted"
INVENTORY_UPDATED = "inventoryUpdated"
LOW_STOCK_ALERT = "lowStockAlert"
REFUND_PROCESSED = "refundProcessed"

RELAY_EXTENSION_KEY = "stockline_relay"


class Relay(ABC):
    """Publish side of the notification channel."""

    @abstractmethod
    def emit(self, event_name: str, payload: dict) -> None:
        ...


class LoggingRelay(Relay):
    def __init__(self, log: logging.Logger | None = None):
        self._log = log

    def emit(self, event_name: str, payload: dict) -> None:
        log = self._log or current_app.logger
        log.info("event %s %s", event_name, json.dumps(payload, sort_keys=True))


class InMemoryRelay(Relay):
    def __init__(self):
        self.history: list[tuple[str, dict]] = []
        self._subscribers: dict[str, list[Callable[[dict], None]]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: Callable[[dict], None]) -> None:
        self._subscribers[event_name].append(handler)

    def emit(self, event_name: str, payload: dict) -> None:
        self.history.append((event_name, payload))
        for handler in list(self._subscribers.get(event_name, [])):
            handler(payload)

    def events(self, event_name: str | None = None) -> list[tuple[str, dict]]:
        if event_name is None:
            return list(self.history)
        return [e for e in self.history if e[0] == event_name]

    def clear(self) -> None:
        self.history.clear()


def build_relay(kind: str) -> Relay:
    kind = (kind or "log").lower()
    if kind == "log":
        return LoggingRelay()
    if kind == "memory":
        return InMemoryRelay()
    raise ValueError(f"Unknown NOTIFICATION_RELAY: {kind}")


def get_relay() -> Relay:
    return current_app.extensions[RELAY_EXTENSION_KEY]


def enqueue_event(event_name: str, payload: dict) -> OutboxEvent:
    """Write an event in the current transaction. Flushes to obtain the id."""
    event = OutboxEvent(
        event_name=event_name,
        payload=json.dumps(payload, sort_keys=True),
        attempts=0,
        created_at=utcnow(),
    )
    db.session.add(event)
    db.session.flush()
    return event


def _dispatch(rows: list[OutboxEvent], relay: Relay) -> int:
    sent = 0
    for row in rows:
        row.attempts = (row.attempts or 0) + 1
        try:
            relay.emit(row.event_name, row.payload_data)
        except Exception as exc:
            row.last_error = str(exc)[:500]
            current_app.logger.warning(
                "Event dispatch failed: id=%s event=%s attempts=%s error=%s",
                row.id, row.event_name, row.attempts, exc,
            )
            continue
        row.dispatched_at = utcnow()
        row.last_error = None
        sent += 1

    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Failed to record event dispatch state")
    return sent


def _undispatched(event_ids: list[int]) -> list[OutboxEvent]:
    return (
        db.session.query(OutboxEvent)
        .filter(OutboxEvent.id.in_(event_ids), OutboxEvent.dispatched_at.is_(None))
        .order_by(OutboxEvent.id.asc())
        .all()
    )


def dispatch_events(event_ids: list[int], relay: Relay | None = None) -> int:
    """
    Emit the given committed events in id order. Returns how many were sent.

    Runs after the caller has committed, so a storage failure here is logged
    and the events stay pending for `flask events push`.
    """
    if not event_ids:
        return 0
    try:
        rows = _undispatched(event_ids)
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Failed to load events %s for dispatch", event_ids)
        return 0
    return _dispatch(rows, relay or get_relay())


def dispatch_pending(limit: int = 100, relay: Relay | None = None) -> int:
    """Drain undispatched events, oldest first."""
    rows = (
        db.session.query(OutboxEvent)
        .filter(OutboxEvent.dispatched_at.is_(None))
        .order_by(OutboxEvent.id.asc())
        .limit(limit)
        .all()
    )
    return _dispatch(rows, relay or get_relay())


def pending_count() -> int:
    return db.session.query(OutboxEvent).filter(OutboxEvent.dispatched_at.is_(None)).count()


def stock_events(change, *, reason: str, sale_id: int | None = None,
                 adjustment_id: int | None = None) -> list[OutboxEvent]:
    """inventoryUpdated for a StockChange, plus lowStockAlert when it lands at or below minimum."""
    events = [enqueue_event(INVENTORY_UPDATED, {
        "product_id": change.product_id,
        "variant_id": change.variant_id,
        "quantity_change": change.quantity_change,
        "new_stock": change.new_stock,
        "reason": reason,
        "sale_id": sale_id,
        "adjustment_id": adjustment_id,
    })]
    if change.quantity_change < 0 and change.is_low_stock:
        events.append(enqueue_event(LOW_STOCK_ALERT, {
            "product_id": change.product_id,
            "variant_id": change.variant_id,
            "stock_quantity": change.new_stock,
            "min_stock_level": change.min_stock_level,
        }))
    return events
