"""Transactional outbox relay for the payment event feed.

Rows are written in the same transaction as the payment transition they
describe. The relay claims a batch (PENDING, or PROCESSING rows whose claim
went stale), publishes each row and marks it SENT, or hands it back to PENDING
when the broker refuses it.
"""

import asyncio
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, or_, select, update

from rcmpay.common.db import as_utc
from rcmpay.common.events import EventEnvelope
from rcmpay.common.logging import logger
from rcmpay.common.metrics import outbox_oldest_pending_age_seconds, outbox_pending_total

PENDING = "PENDING"
PROCESSING = "PROCESSING"
SENT = "SENT"


class OutboxRelay:
    """Moves outbox rows of one table onto the event bus."""

    def __init__(
        self,
        session_factory,
        outbox_model,
        bus,
        service_name: str,
        batch_size: int = 100,
        claim_timeout_seconds: int = 30,
    ) -> None:
        self.session_factory = session_factory
        self.table = outbox_model.__table__
        self.bus = bus
        self.service_name = service_name
        self.batch_size = batch_size
        self.claim_timeout_seconds = claim_timeout_seconds

    def claim(self, db) -> list[dict]:
        """Flip up to `batch_size` deliverable rows to PROCESSING and return them."""

        t = self.table
        now = datetime.now(timezone.utc)
        stale = (t.c.status == PROCESSING) & t.c.sent_at.is_not(None)
        stale = stale & (t.c.sent_at < now - timedelta(seconds=self.claim_timeout_seconds))
        candidates = (
            select(t.c.id)
            .where(or_(t.c.status == PENDING, stale))
            .order_by(t.c.created_at)
            .limit(self.batch_size)
            .with_for_update(skip_locked=True)
        )
        claimed = db.execute(
            update(t)
            .where(t.c.id.in_(candidates.scalar_subquery()))
            .values(status=PROCESSING, sent_at=now)
            .returning(t.c.id, t.c.topic, t.c.payload)
        ).all()
        return [{"id": row.id, "topic": row.topic, "payload": row.payload} for row in claimed]

    def settle(self, row_id: str, delivered: bool) -> None:
        """Close out one claimed row: SENT when delivered, back to PENDING otherwise."""

        if delivered:
            values = {"status": SENT, "sent_at": datetime.now(timezone.utc)}
        else:
            values = {"status": PENDING, "sent_at": None}
        t = self.table
        with self.session_factory() as db:
            db.execute(update(t).where(t.c.id == row_id, t.c.status == PROCESSING).values(**values))
            self.refresh_backlog(db)
            db.commit()

    def refresh_backlog(self, db) -> None:
        """Export undelivered row count and the age of the oldest one."""

        t = self.table
        undelivered = t.c.status.in_((PENDING, PROCESSING))
        count, oldest = db.execute(select(func.count(), func.min(t.c.created_at)).where(undelivered)).one()
        oldest = as_utc(oldest)
        age = 0.0 if oldest is None else max(0.0, (datetime.now(timezone.utc) - oldest).total_seconds())
        outbox_pending_total.labels(service=self.service_name).set(float(count))
        outbox_oldest_pending_age_seconds.labels(service=self.service_name).set(age)

    async def publish_pending(self) -> int:
        """Publish one claimed batch; return how many rows were delivered."""

        with self.session_factory() as db:
            rows = self.claim(db)
            self.refresh_backlog(db)
            db.commit()

        delivered = 0
        for row in rows:
            try:
                await self.bus.publish(row["topic"], EventEnvelope(**row["payload"]))
            except Exception as exc:
                logger.warning("outbox_publish_failed topic=%s id=%s error=%s", row["topic"], row["id"], exc)
                self.settle(row["id"], delivered=False)
                continue
            self.settle(row["id"], delivered=True)
            delivered += 1
        return delivered

    async def run_forever(self, interval_seconds: float = 0.5) -> None:
        while True:
            try:
                await self.publish_pending()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("outbox_loop_error error=%s", exc)
            await asyncio.sleep(interval_seconds)
