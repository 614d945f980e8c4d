"""
Event Broadcaster

In-process publish/subscribe for stock, order and reservation mutations.

Subscribers register a (collection, event type) pair and receive a
RealtimeEvent for every matching publication. Delivery is best-effort:
a failing subscriber is logged and never affects the publisher or the
other subscribers.

Scope: single process. Running several API instances requires a real
message broker behind publish() so every instance observes every mutation.
"""
import asyncio
import inspect
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from stockroom.core.clock import utc_now
from stockroom.schemas.events import AdminNotification, Collection, EventType, RealtimeEvent

logger = logging.getLogger(__name__)

ANY_EVENT = "*"

EventCallback = Callable[[RealtimeEvent], Any]


@dataclass
class Subscription:
    id: str
    collection: str
    event_type: str
    callback: EventCallback
    filters: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)

    def matches(self, event: RealtimeEvent) -> bool:
        if self.collection != event.collection:
            return False
        if self.event_type != ANY_EVENT and self.event_type != event.event.value:
            return False
        return all(event.document.get(key) == value for key, value in self.filters.items())


class EventBroadcaster:
    """Registry of subscriptions plus ordered fan-out of events."""

    def __init__(self):
        self._subscriptions: Dict[str, Subscription] = {}

    def subscribe(
        self,
        collection: Union[str, Collection],
        event_type: Union[str, EventType],
        callback: EventCallback,
        filters: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Register a callback and return its subscription id."""
        subscription = Subscription(
            id=f"sub_{uuid.uuid4().hex[:12]}",
            collection=_value(collection),
            event_type=_value(event_type),
            callback=callback,
            filters=dict(filters or {}),
        )
        self._subscriptions[subscription.id] = subscription
        logger.debug(f"Subscribed {subscription.id} to {subscription.collection}.{subscription.event_type}")
        return subscription.id

    def unsubscribe(self, subscription_id: str) -> bool:
        removed = self._subscriptions.pop(subscription_id, None)
        if removed:
            logger.debug(f"Unsubscribed {subscription_id}")
        return removed is not None

    def get_active_subscriptions(self) -> List[Dict[str, Any]]:
        return [
            {
                "id": sub.id,
                "collection": sub.collection,
                "event_type": sub.event_type,
                "filters": dict(sub.filters),
                "created_at": sub.created_at,
            }
            for sub in self._subscriptions.values()
        ]

    async def publish(
        self,
        event_type: Union[str, EventType],
        collection: Union[str, Collection],
        document: Dict[str, Any],
    ) -> int:
        """
        Deliver one event to every matching subscriber, in registration order.

        Async callbacks are awaited before the next subscriber is called, so a
        caller that awaits publish() sees its events delivered in the order it
        published them.

        Returns:
            Number of subscribers that handled the event without raising.
        """
        event = RealtimeEvent(
            event=EventType(_value(event_type)),
            collection=_value(collection),
            document=document,
        )
        logger.debug(f"Publishing {event.collection}.{event.event.value}")

        delivered = 0
        for subscription in list(self._subscriptions.values()):
            if not subscription.matches(event):
                continue
            scoped = event.model_copy(update={"subscription_id": subscription.id})
            try:
                result = subscription.callback(scoped)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    f"Subscriber {subscription.id} failed handling "
                    f"{event.collection}.{event.event.value}"
                )
        return delivered


def format_for_admin_display(event: RealtimeEvent) -> AdminNotification:
    """Turn a raw event into a toast-style notification for the admin console."""
    document = event.document
    if event.collection == Collection.PRODUCTS.value and event.event == EventType.UPDATE:
        name = document.get("product_name") or document.get("product_id")
        return AdminNotification(
            type="info",
            title="Product Stock Updated",
            message=f"{name} stock updated to {document.get('available_units')} units",
        )
    if event.collection == Collection.ORDERS.value and event.event == EventType.CREATE:
        return AdminNotification(
            type="success",
            title="New Order Received",
            message=f"Order {document.get('order_number')} placed",
        )
    if event.collection == Collection.INVENTORY_ALERTS.value:
        return AdminNotification(
            type="warning",
            title="Inventory Alert",
            message=document.get("message") or f"Alert for {document.get('product_id')}",
        )
    return AdminNotification(
        type="info",
        title="System Update",
        message=f"{event.collection} {event.event.value}",
    )


def _value(item: Union[str, Any]) -> str:
    return item.value if hasattr(item, "value") else str(item)
