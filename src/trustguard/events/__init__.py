"""Event and alert fan-out."""

from .broadcaster import Event, EventBroadcaster, EventType, Subscription

__all__ = ["Event", "EventBroadcaster", "EventType", "Subscription"]
