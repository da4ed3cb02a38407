"""
Billing event types and event emission helpers.

Events are immutable rows in the ``events`` table. Each one carries a
deterministic content hash; ``insert_events`` skips hashes that are already
stored, so emitting the same business transition twice records it once.
"""

import hashlib
import json
from datetime import datetime
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from flowledger.platform.billing.config import get_billing_config
from flowledger.platform.billing.core.entities import Customer, Event, Purchase, Subscription
from flowledger.platform.billing.core.enums import EventNoun, FlowEventType
from flowledger.platform.db import utcnow

logger = structlog.get_logger(__name__)


# ============================================================================
# Event records
# ============================================================================


class EventInsert(BaseModel):
    """An event ready to be written to the event log."""

    model_config = ConfigDict(frozen=True)

    type: FlowEventType
    occurred_at: datetime
    organization_id: str
    livemode: bool
    hash: str
    payload: dict[str, Any]
    object_entity: EventNoun
    object_id: str
    submitted_at: datetime = Field(default_factory=utcnow)


def construct_event_hash(data: dict[str, Any]) -> str:
    """Deterministic hash of ``data`` (key order does not matter)."""
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    algorithm = get_billing_config().events.hash_algorithm
    return hashlib.new(algorithm, canonical.encode("utf-8")).hexdigest()


def customer_event_payload(
    object_id: str, noun: EventNoun, customer: Customer
) -> dict[str, Any]:
    return {
        "id": object_id,
        "object": noun.value,
        "customer": {"id": customer.id, "externalId": customer.external_id},
    }


def _customer_attributed_event(
    event_type: FlowEventType,
    noun: EventNoun,
    object_id: str,
    customer: Customer,
    occurred_at: datetime | None,
) -> EventInsert:
    return EventInsert(
        type=event_type,
        occurred_at=occurred_at or utcnow(),
        organization_id=customer.organization_id,
        livemode=customer.livemode,
        hash=construct_event_hash({"type": event_type.value, "id": object_id}),
        payload=customer_event_payload(object_id, noun, customer),
        object_entity=noun,
        object_id=object_id,
    )


def subscription_created_event(
    subscription: Subscription, customer: Customer, occurred_at: datetime | None = None
) -> EventInsert:
    return _customer_attributed_event(
        FlowEventType.SUBSCRIPTION_CREATED,
        EventNoun.SUBSCRIPTION,
        subscription.id,
        customer,
        occurred_at,
    )


def subscription_canceled_event(
    subscription: Subscription, customer: Customer, occurred_at: datetime | None = None
) -> EventInsert:
    return _customer_attributed_event(
        FlowEventType.SUBSCRIPTION_CANCELED,
        EventNoun.SUBSCRIPTION,
        subscription.id,
        customer,
        occurred_at,
    )


def purchase_completed_event(
    purchase: Purchase, customer: Customer, occurred_at: datetime | None = None
) -> EventInsert:
    return _customer_attributed_event(
        FlowEventType.PURCHASE_COMPLETED,
        EventNoun.PURCHASE,
        purchase.id,
        customer,
        occurred_at,
    )


def customer_created_event(customer: Customer, occurred_at: datetime | None = None) -> EventInsert:
    return _customer_attributed_event(
        FlowEventType.CUSTOMER_CREATED,
        EventNoun.CUSTOMER,
        customer.id,
        customer,
        occurred_at,
    )


# ============================================================================
# Event emission
# ============================================================================


async def insert_events(session: AsyncSession, events: list[EventInsert]) -> list[Event]:
    """Write events whose hash is not stored yet; returns the rows written."""
    if not events:
        return []
    unique: dict[str, EventInsert] = {}
    for event in events:
        unique.setdefault(event.hash, event)

    result = await session.execute(select(Event.hash).where(Event.hash.in_(list(unique))))
    stored = set(result.scalars().all())

    written: list[Event] = []
    for event_hash, event in unique.items():
        if event_hash in stored:
            logger.debug("Duplicate event skipped", event_type=event.type.value, hash=event_hash)
            continue
        row = Event(
            type=event.type,
            occurred_at=event.occurred_at,
            submitted_at=event.submitted_at,
            organization_id=event.organization_id,
            livemode=event.livemode,
            hash=event.hash,
            payload=event.payload,
            object_entity=event.object_entity,
            object_id=event.object_id,
        )
        session.add(row)
        written.append(row)
        logger.info(
            "Billing event emitted",
            event_type=event.type.value,
            object_entity=event.object_entity.value,
            object_id=event.object_id,
            organization_id=event.organization_id,
        )
    await session.flush()
    return written


__all__ = [
    "EventInsert",
    "construct_event_hash",
    "customer_event_payload",
    "customer_created_event",
    "insert_events",
    "purchase_completed_event",
    "subscription_canceled_event",
    "subscription_created_event",
]
