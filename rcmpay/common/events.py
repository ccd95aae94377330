"""Payment event envelope and the Kafka producer behind the outbox relay."""

import json
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from aiokafka import AIOKafkaProducer
from pydantic import BaseModel, Field

from rcmpay.common.config import settings


class EventEnvelope(BaseModel):
    """One payment lifecycle fact as published on `rcm.payments.*`."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    aggregate_id: str
    tenant_id: str
    occurred_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    trace_id: str = ""
    payload: dict[str, Any]

    def encode(self) -> bytes:
        return json.dumps(self.model_dump(), separators=(",", ":")).encode("utf-8")


class KafkaBus:
    """Producer started on first publish.

    Messages are keyed by tenant so one tenant's events keep their order
    within a partition.
    """

    def __init__(self, bootstrap_servers: str | None = None, client_id: str | None = None) -> None:
        self.bootstrap_servers = bootstrap_servers or settings.kafka_bootstrap_servers
        self.client_id = client_id or settings.service_name
        self._producer: AIOKafkaProducer | None = None

    async def _started(self) -> AIOKafkaProducer:
        if self._producer is None:
            producer = AIOKafkaProducer(
                bootstrap_servers=self.bootstrap_servers,
                client_id=self.client_id,
                acks="all",
                enable_idempotence=True,
            )
            await producer.start()
            self._producer = producer
        return self._producer

    async def publish(self, topic: str, event: EventEnvelope) -> None:
        producer = await self._started()
        await producer.send_and_wait(topic, event.encode(), key=event.tenant_id.encode("utf-8"))

    async def close(self) -> None:
        if self._producer is not None:
            producer, self._producer = self._producer, None
            await producer.stop()
