"""Analytics input table.

`transaction_records` is an append-only projection of settled/refunded payment
intents plus claim lifecycle events. Rows are never updated.
"""

from datetime import date, datetime
from uuid import uuid4

from sqlalchemy import Date, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from rcmpay.common.db import Base, utcnow

PAYMENT_SETTLED = "payment_settled"
PAYMENT_REFUNDED = "payment_refunded"
CLAIM_SUBMITTED = "claim_submitted"
CLAIM_PAID = "claim_paid"
CLAIM_DENIED = "claim_denied"

RECORD_KINDS = (PAYMENT_SETTLED, PAYMENT_REFUNDED, CLAIM_SUBMITTED, CLAIM_PAID, CLAIM_DENIED)
CLAIM_KINDS = (CLAIM_SUBMITTED, CLAIM_PAID, CLAIM_DENIED)


class TransactionRecord(Base):
    """One financial fact dated at `occurred_at`."""

    __tablename__ = "transaction_records"
    # `source_key` makes appends idempotent (one settle record per intent, one row per claim event).
    __table_args__ = (UniqueConstraint("tenant_id", "source_key", name="uq_transaction_source"),)

    record_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    kind: Mapped[str] = mapped_column(String, index=True)
    amount: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3))
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    source_key: Mapped[str] = mapped_column(String)
    intent_id: Mapped[str | None] = mapped_column(String, nullable=True)
    claim_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    service_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    denial_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
