"""
billing/webhooks.py -- Idempotency records for at-least-once payment webhooks.

PayPal retries a delivery until it sees a 2xx, and may deliver the same event
more than once even after a 2xx. Each event is processed at most once to
completion:

  claim(event_id)    single INSERT that silently does nothing if the
                     (provider, event_id) row already exists. rowcount tells
                     the caller whether it won. Two concurrent deliveries
                     cannot both see True.
  complete(event_id) PROCESSING -> COMPLETED, stamps processed_at.
  release(event_id)  deletes the row, but only while it is still PROCESSING,
                     so a failed attempt can be retried by the next delivery
                     and a completed event is never forgotten.

The insert-or-ignore is dialect specific:
  sqlite, postgresql -> INSERT ... ON CONFLICT DO NOTHING
  mysql, mariadb     -> INSERT IGNORE

A check-then-insert in Python would race; do not replace claim() with one.

Layer rule: no imports from api/, auth/, workspace/, or sharing/.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, PrimaryKeyConstraint, String, Table, Text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine

from core.config import get_settings
from core.db import make_engine

logger = logging.getLogger("pecal.billing.webhooks")

STATUS_PROCESSING = "PROCESSING"
STATUS_COMPLETED = "COMPLETED"

_metadata = MetaData()

_webhook_events = Table(
    "paypal_webhook_events",
    _metadata,
    Column("provider", String(20), nullable=False),
    Column("event_id", String(255), nullable=False),
    Column("event_type", String(100), nullable=False),
    Column("status", String(20), nullable=False),
    Column("payload_json", Text),
    Column("received_at", String(32), nullable=False),
    Column("processed_at", String(32)),
    Column("attempt_count", Integer, nullable=False, server_default="1"),
    PrimaryKeyConstraint("provider", "event_id", name="pk_webhook_events"),
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class WebhookEvent:
    provider: str
    event_id: str
    event_type: str
    status: str
    received_at: str
    processed_at: str | None = None
    attempt_count: int = 1
    payload_json: str | None = None


class WebhookEventStore:
    """Atomic claim/complete/release for one webhook provider.

    Usage:
        events = WebhookEventStore()
        if not events.claim(event_id, event_type, payload):
            return  # duplicate delivery, already handled or in flight
        try:
            process(payload)
        except Exception:
            events.release(event_id)
            raise
        events.complete(event_id)
    """

    def __init__(self, db_url: str | None = None, provider: str = "paypal") -> None:
        self.engine: Engine = make_engine(db_url or get_settings().database_url)
        self.provider = provider
        _metadata.create_all(self.engine)

    def claim(self, event_id: str, event_type: str, payload: dict | None = None) -> bool:
        """Record the event as PROCESSING. Returns True only for the first delivery."""
        values = {
            "provider": self.provider,
            "event_id": event_id,
            "event_type": event_type or "",
            "status": STATUS_PROCESSING,
            "payload_json": json.dumps(payload, ensure_ascii=False, default=str) if payload is not None else None,
            "received_at": _now_iso(),
            "attempt_count": 1,
        }
        with self.engine.begin() as conn:
            result = conn.execute(self._insert_ignore().values(**values))
        claimed = result.rowcount > 0
        if not claimed:
            logger.info("Duplicate %s webhook delivery ignored: %s", self.provider, event_id)
        return claimed

    def complete(self, event_id: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                _webhook_events.update()
                .where((_webhook_events.c.provider == self.provider) & (_webhook_events.c.event_id == event_id))
                .values(status=STATUS_COMPLETED, processed_at=_now_iso())
            )

    def release(self, event_id: str) -> bool:
        """Forget a failed PROCESSING claim so a retried delivery can claim it again."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _webhook_events.delete().where(
                    (_webhook_events.c.provider == self.provider)
                    & (_webhook_events.c.event_id == event_id)
                    & (_webhook_events.c.status == STATUS_PROCESSING)
                )
            )
        return result.rowcount > 0

    def get(self, event_id: str) -> WebhookEvent | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _webhook_events.select().where(
                    (_webhook_events.c.provider == self.provider) & (_webhook_events.c.event_id == event_id)
                )
            ).fetchone()
        if row is None:
            return None
        return WebhookEvent(
            provider=row.provider,
            event_id=row.event_id,
            event_type=row.event_type,
            status=row.status,
            received_at=row.received_at,
            processed_at=row.processed_at,
            attempt_count=row.attempt_count,
            payload_json=row.payload_json,
        )

    def close(self) -> None:
        self.engine.dispose()

    def _insert_ignore(self):
        dialect = self.engine.dialect.name
        if dialect == "sqlite":
            return sqlite.insert(_webhook_events).on_conflict_do_nothing()
        if dialect == "postgresql":
            return postgresql.insert(_webhook_events).on_conflict_do_nothing()
        if dialect in ("mysql", "mariadb"):
            return _webhook_events.insert().prefix_with("IGNORE")
        raise RuntimeError(f"No atomic insert-or-ignore available for dialect {dialect!r}")
