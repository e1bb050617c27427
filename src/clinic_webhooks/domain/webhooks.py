"""Webhook domain primitives."""
from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, model_validator


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


class WebhookSubscription(BaseModel):
    id: UUID
    tenant_id: UUID
    name: str
    target_url: str
    secret: str
    event_types: list[str] = Field(default_factory=list)
    is_active: bool = True
    consecutive_failures: int = 0
    last_delivery_at: datetime | None = None
    last_success_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    def public_dump(self) -> dict[str, Any]:
        """JSON view without the secret; the secret is only shown on creation/rotation."""
        return self.model_dump(mode="json", exclude={"secret"})


class WebhookDeliveryLog(BaseModel):
    id: UUID
    subscription_id: UUID
    logical_delivery_id: UUID
    delivery_id: UUID
    event_type: str
    # exact JSON text that was signed and sent
    raw_payload: str
    attempt: int
    status: DeliveryStatus
    http_status_code: int | None = None
    response_body: str | None = None
    error: str | None = None
    created_at: datetime
    completed_at: datetime | None = None
    scheduled_for: datetime | None = None
    retry_claimed_at: datetime | None = None

    @property
    def payload(self) -> dict[str, Any]:
        return json.loads(self.raw_payload)

    def public_dump(self) -> dict[str, Any]:
        data = self.model_dump(mode="json", exclude={"raw_payload", "retry_claimed_at"})
        data["payload"] = self.payload
        return data


class WebhookPayload(BaseModel):
    """Wire envelope: ``{event, timestamp, data}``."""

    event: str
    timestamp: str
    data: dict[str, Any] = Field(default_factory=dict)

    def serialize(self) -> str:
        return json.dumps(
            self.model_dump(mode="json"), separators=(",", ":"), ensure_ascii=False
        )


class DeliveryResult(BaseModel):
    success: bool
    status: str
    http_status_code: int | None = None
    response_body: str | None = None
    error: str | None = None
    delivered_at: datetime | None = None
    timed_out: bool = False
    log_id: UUID | None = None
    retry_scheduled_for: datetime | None = None

    @model_validator(mode="after")
    def _success_means_delivered(self) -> "DeliveryResult":
        if self.success and self.status != DeliveryStatus.DELIVERED.value:
            raise ValueError("successful result must have status 'delivered'")
        return self
