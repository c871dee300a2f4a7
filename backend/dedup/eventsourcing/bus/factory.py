"""
Event bus factory.

Consolidation audit events go to an in-process bus; the host application
subscribes its activity log handlers to it.
"""

import logging

from eventsource import EventBus, InMemoryEventBus

from dedup.core.config import settings

logger = logging.getLogger(__name__)


def create_event_bus() -> EventBus:
    """
    Create the audit event bus.

    Returns:
        EventBus: In-memory bus, tracing per ``settings.EVENT_BUS_TRACING``
    """
    logger.info("Creating InMemoryEventBus for consolidation audit events")
    return InMemoryEventBus(enable_tracing=settings.EVENT_BUS_TRACING)
