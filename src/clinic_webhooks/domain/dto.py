"""Request DTOs for the configuration API."""
from __future__ import annotations

from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from clinic_webhooks.domain.webhooks import DeliveryStatus


def _normalize_events(value: list[str]) -> list[str]:
    events = [e.strip() for e in value if e and e.strip()]
    events = list(dict.fromkeys(events))
    if not events:
        raise ValueError("event_types must be a non-empty list")
    return events


class WebhookCreateDTO(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    target_url: str = Field(min_length=1, max_length=2048)
    event_types: list[str] = Field(min_length=1)

    @field_validator("event_types")
    @classmethod
    def _normalize(cls, value: list[str]) -> list[str]:
        return _normalize_events(value)


class WebhookUpdateDTO(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    target_url: str | None = Field(default=None, min_length=1, max_length=2048)
    event_types: list[str] | None = Field(default=None, min_length=1)
    is_active: bool | None = None
    regenerate_secret: bool = False

    @field_validator("event_types")
    @classmethod
    def _normalize(cls, value: list[str] | None) -> list[str] | None:
        return None if value is None else _normalize_events(value)


class DeliveryLogFilter(BaseModel):
    subscription_id: UUID | None = None
    event_type: str | None = None
    status: DeliveryStatus | None = None


class TriggerEventDTO(BaseModel):
    event_type: str
    data: dict[str, Any] = Field(default_factory=dict)
