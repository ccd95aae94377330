"""Gateway registry persistence models (tenant configs + idempotency records)."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from rcmpay.common.db import Base, JSONType, utcnow


class GatewayConfigRecord(Base):
    """One tenant's configuration of one payment gateway provider."""

    __tablename__ = "gateway_configs"
    __table_args__ = (UniqueConstraint("tenant_id", "gateway_id", name="uq_gateway_tenant"),)

    config_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    gateway_id: Mapped[str] = mapped_column(String)
    display_name: Mapped[str] = mapped_column(String)
    # Opaque pointer (e.g. `env:STRIPE_SECRET_KEY`); resolved only at call time.
    credentials_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    capabilities: Mapped[list] = mapped_column(JSONType)
    options: Mapped[dict] = mapped_column(JSONType, default=dict)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)
    is_sandbox: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class GatewayRequestRecord(Base):
    """Recorded result of one idempotent gateway side effect."""

    __tablename__ = "gateway_requests"

    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    gateway_id: Mapped[str] = mapped_column(String, primary_key=True)
    idempotency_key: Mapped[str] = mapped_column(String, primary_key=True)
    operation: Mapped[str] = mapped_column(String)
    request_hash: Mapped[str] = mapped_column(String)
    response: Mapped[dict] = mapped_column(JSONType)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
