"""
Azure Service Bus event publishing for bill posting events.

Enables downstream systems to react to posted bills:
- Accounting exports can pick up new journal entries
- Payables dashboards can refresh open schedules
- Audit systems can track which extraction path produced each bill
"""

import json
from datetime import datetime, UTC
from typing import Optional
from dataclasses import dataclass, asdict
from loguru import logger
from ...core.config import settings


@dataclass
class BillPostedEvent:
    """
    Event published after a bill is saved and its journal entry posted.

    Carries provenance (provider, fallback) so consumers can tell a model
    extraction from a heuristic fallback or a manual entry.
    """

    document_id: int
    bill_id: int
    journal_id: int
    vendor: str
    total: float
    provider: str
    fallback: bool
    payment_status: str
    verification_status: str
    bill_number: Optional[str] = None
    event_type: str = "BillPosted"
    timestamp: Optional[str] = None

    def __post_init__(self):
        """Set timestamp if not provided"""
        if self.timestamp is None:
            self.timestamp = datetime.now(UTC).isoformat()

    def to_dict(self) -> dict:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


class EventPublisher:
    """
    Publishes events to an Azure Service Bus queue.

    Usage:
        from azure.servicebus import ServiceBusClient
        client = ServiceBusClient.from_connection_string(conn_str)
        sender = client.get_queue_sender(queue_name="bill-events")
        publisher = EventPublisher(service_bus_sender=sender)

        # Disabled mode (no Service Bus configured)
        publisher = EventPublisher(service_bus_sender=None)
    """

    def __init__(self, service_bus_sender: Optional[object] = None, entity_name: str = "bill-events"):
        self.service_bus_sender = service_bus_sender
        self.entity_name = entity_name

    @property
    def enabled(self) -> bool:
        return self.service_bus_sender is not None

    def publish_bill_posted(self, event: BillPostedEvent) -> None:
        """
        Publish a bill posted event.

        Note:
            If service_bus_sender is None, this is a no-op (disabled mode).
        """
        if self.service_bus_sender is None:
            return

        from azure.servicebus import ServiceBusMessage

        message = ServiceBusMessage(
            event.to_json(),
            content_type="application/json",
            subject=event.event_type,
        )
        self.service_bus_sender.send_messages(message)
        logger.info("Published BillPosted event", bill_id=event.bill_id, queue=self.entity_name)


_default_publisher: Optional[EventPublisher] = None


def get_event_publisher() -> EventPublisher:
    """
    Get the default event publisher, created on first use.

    Returns:
        EventPublisher sending to SERVICE_BUS_QUEUE, or disabled when
        SERVICE_BUS_CONNECTION_STRING is not set
    """
    global _default_publisher
    if _default_publisher is None:
        sender = None
        if settings.service_bus_connection_string:
            from azure.servicebus import ServiceBusClient

            client = ServiceBusClient.from_connection_string(settings.service_bus_connection_string)
            sender = client.get_queue_sender(queue_name=settings.service_bus_queue)
        _default_publisher = EventPublisher(service_bus_sender=sender, entity_name=settings.service_bus_queue)
    return _default_publisher
