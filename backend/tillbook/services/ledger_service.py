# Overview: Append-only audit spine for domain events and side-effect failures.

from __future__ import annotations

from datetime import datetime
from typing import Optional

from ..extensions import db
from ..models import LedgerEvent

"""
Ledger invariants

- Append-only: no updates or deletes of existing events.
- No domain logic here; callers decide what is worth recording.
- Events are written inside the same DB transaction as the change they
  describe, or in their own transaction when they record a failure.
- occurred_at is business time; created_at is system time (DB default).
"""


def append_ledger_event(
    *,
    event_type: str,
    event_category: str,
    entity_type: str,
    entity_id: int | None = None,
    store_id: int | None = None,
    actor_user_id: int | None = None,
    transaction_id: int | None = None,
    occurred_at: Optional[datetime] = None,
    note: Optional[str] = None,
    payload: Optional[dict] = None,
) -> LedgerEvent:
    ev = LedgerEvent(
        store_id=store_id,
        event_type=event_type,
        event_category=event_category,
        entity_type=entity_type,
        entity_id=entity_id,
        actor_user_id=actor_user_id,
        transaction_id=transaction_id,
        occurred_at=occurred_at,  # if None, db default applies
        note=note[:255] if note else note,
        payload=payload,
    )
    db.session.add(ev)
    db.session.flush()  # ensures ev.id is assigned without committing
    return ev


def list_ledger_events(
    *,
    store_id: int | None = None,
    transaction_id: int | None = None,
    event_type: str | None = None,
    limit: int = 100,
) -> list[LedgerEvent]:
    query = db.session.query(LedgerEvent)
    if store_id is not None:
        query = query.filter(LedgerEvent.store_id == store_id)
    if transaction_id is not None:
        query = query.filter(LedgerEvent.transaction_id == transaction_id)
    if event_type:
        query = query.filter(LedgerEvent.event_type == event_type)
    return query.order_by(LedgerEvent.id.asc()).limit(limit).all()
