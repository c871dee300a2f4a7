"""
Audit event delivery.

Events are published only after the data transaction committed, and a
delivery failure is logged and dropped: the merge or undo has already
happened and must not be reported as failed.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Optional

from dedup.core.config import settings

if TYPE_CHECKING:
    from eventsource import DomainEvent, EventBus

logger = logging.getLogger(__name__)


class AuditPublisher:
    """Fire-and-forget publisher over an eventsource bus."""

    def __init__(self, event_bus: Optional["EventBus"] = None, enabled: Optional[bool] = None):
        self.event_bus = event_bus
        self.enabled = settings.AUDIT_EVENTS_ENABLED if enabled is None else enabled

    async def publish(self, event_class: type["DomainEvent"], **fields: Any) -> bool:
        """
        Build and publish one event. Returns False when skipped or delivery failed.

        Errors building the event are logged like delivery failures.
        """
        if self.event_bus is None or not self.enabled:
            return False
        event_name = event_class.__name__
        try:
            event = event_class(**fields)
            await self.event_bus.publish([event])
        except Exception as e:
            logger.error(
                f"Failed to publish {event_name} audit event: {e}",
                extra={"aggregate_id": str(fields.get("aggregate_id", ""))},
                exc_info=True,
            )
            return False
        logger.debug(f"Published {event_name} for {event.aggregate_id}")
        return True
