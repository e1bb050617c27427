"""Catalog of webhook event types.

The catalog is static: business code announces one of these identifiers
through the trigger layer, and tenants subscribe to a subset of them.
"""
from __future__ import annotations

from enum import Enum
from typing import Iterable, List

from pydantic import BaseModel, ConfigDict, Field


class EventCategory(str, Enum):
    """Groups shown on the subscription configuration screen."""

    PETS = "pets"
    APPOINTMENTS = "appointments"
    INVENTORY = "inventory"
    SALES = "sales"


class EventDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_type: str
    category: EventCategory
    description: str


class EventListValidation(BaseModel):
    model_config = ConfigDict(frozen=True)

    valid: bool
    invalid: List[str] = Field(default_factory=list)


def _event(event_type: str, category: EventCategory, description: str) -> EventDefinition:
    return EventDefinition(event_type=event_type, category=category, description=description)


_CATALOG: tuple[EventDefinition, ...] = (
    _event("pet.created", EventCategory.PETS, "A new pet was registered"),
    _event("pet.updated", EventCategory.PETS, "A pet record was updated"),
    _event("pet.deleted", EventCategory.PETS, "A pet was removed or marked as deceased"),
    _event("appointment.created", EventCategory.APPOINTMENTS, "A new appointment was scheduled"),
    _event(
        "appointment.updated",
        EventCategory.APPOINTMENTS,
        "An appointment was rescheduled or edited",
    ),
    _event("appointment.cancelled", EventCategory.APPOINTMENTS, "An appointment was cancelled"),
    _event(
        "inventory.low_stock",
        EventCategory.INVENTORY,
        "An inventory item fell below its minimum stock",
    ),
    _event(
        "inventory.transfer_completed",
        EventCategory.INVENTORY,
        "A stock transfer between locations finished",
    ),
    _event("sale.completed", EventCategory.SALES, "A sale was completed at the point of sale"),
)

EVENTS: dict[str, EventDefinition] = {event.event_type: event for event in _CATALOG}
ALL_EVENT_TYPES: tuple[str, ...] = tuple(EVENTS)

# Synthetic event used only by connectivity tests; never subscribable.
TEST_EVENT_TYPE = "test.ping"


def is_valid_event_type(event_type: str) -> bool:
    return event_type in EVENTS


def validate_event_list(event_types: Iterable[str]) -> EventListValidation:
    invalid = [event_type for event_type in event_types if not is_valid_event_type(event_type)]
    return EventListValidation(valid=not invalid, invalid=invalid)


def describe(event_type: str) -> str:
    event = EVENTS.get(event_type)
    return event.description if event else ""


def category_of(event_type: str) -> EventCategory | None:
    event = EVENTS.get(event_type)
    return event.category if event else None


def events_by_category() -> dict[EventCategory, list[EventDefinition]]:
    """Group the catalog for configuration screens, preserving catalog order."""
    grouped: dict[EventCategory, list[EventDefinition]] = {}
    for event in _CATALOG:
        grouped.setdefault(event.category, []).append(event)
    return grouped
