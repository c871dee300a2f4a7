"""Event bus construction."""

from dedup.eventsourcing.bus.factory import create_event_bus

__all__ = ["create_event_bus"]
