"""Core module - shared event plumbing."""

from mcpbridge.core.events import Event, EventBus, Subscription

__all__ = ["Event", "EventBus", "Subscription"]
