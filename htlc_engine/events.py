"""Event sinks for swap lifecycle notifications."""

import json
from abc import ABC, abstractmethod
from typing import Any, List, Optional

import structlog
from apprise import Apprise

from .config import config

logger = structlog.get_logger()

SWAP_INITIATED = "swap_initiated"
SWAP_CLAIMED = "swap_claimed"
SWAP_REFUNDED = "swap_refunded"


class EventSink(ABC):
    """Base class for event sinks."""

    @abstractmethod
    def publish(self, topic: str, payload: dict[str, Any]):
        """Deliver one event."""
        pass

    def format_event_message(self, topic: str, payload: dict[str, Any]) -> str:
        """Format an event into a short human readable message."""
        swap_id = payload.get("swap_id", "")
        short_id = f"{swap_id[:16]}..." if swap_id else "?"

        if topic == SWAP_INITIATED:
            lines = [
                "🔒 Swap initiated",
                f"ID: {short_id}",
                f"{payload.get('sender')} → {payload.get('receiver')}",
                f"Amount: {payload.get('amount')}",
            ]
        elif topic == SWAP_CLAIMED:
            lines = [
                "🔓 Swap claimed",
                f"ID: {short_id}",
                f"Preimage: {payload.get('preimage')}",
            ]
        elif topic == SWAP_REFUNDED:
            lines = ["↩️ Swap refunded", f"ID: {short_id}"]
        else:
            lines = [topic, json.dumps(payload, sort_keys=True)]

        return "\n".join(lines)


class LogEventSink(EventSink):
    """Writes every event to the structured log."""

    def publish(self, topic: str, payload: dict[str, Any]):
        logger.info("Swap event", topic=topic, **payload)


class ConsoleEventSink(EventSink):
    """Simple console output sink for local runs."""

    def publish(self, topic: str, payload: dict[str, Any]):
        print("\n" + "=" * 60)
        print(self.format_event_message(topic, payload))
        print("=" * 60 + "\n")


class RecordingEventSink(EventSink):
    """Keeps published events in memory, in order."""

    def __init__(self):
        self.events: list[tuple[str, dict[str, Any]]] = []

    def publish(self, topic: str, payload: dict[str, Any]):
        self.events.append((topic, dict(payload)))

    def topics(self) -> list[str]:
        return [topic for topic, _ in self.events]


class AppriseEventSink(EventSink):
    """Multi-platform notifications through Apprise."""

    def __init__(self, urls: Optional[List[str]] = None):
        """Initialize Apprise with notification URLs."""
        self.apprise = Apprise()

        urls = urls or config.apprise_urls
        for url in urls:
            self.apprise.add(url)

        if not self.apprise.urls():
            logger.warning("No Apprise URLs configured")

    def publish(self, topic: str, payload: dict[str, Any]):
        message = self.format_event_message(topic, payload)
        title = f"HTLC {topic.replace('_', ' ')}"

        if self.apprise.notify(body=message, title=title):
            logger.info("Sent Apprise notification", topic=topic)
        else:
            logger.warning("Apprise notification failed", topic=topic)


class EventBus:
    """
    Fans events out to every registered sink.

    Delivery is best-effort: a sink that raises is logged and skipped, and
    the swap operation that published the event still succeeds.
    """

    def __init__(self, sinks: Optional[List[EventSink]] = None):
        self.sinks: List[EventSink] = list(sinks or [])

    def add(self, sink: EventSink):
        self.sinks.append(sink)

    def publish(self, topic: str, payload: dict[str, Any]):
        delivered = 0
        for sink in self.sinks:
            try:
                sink.publish(topic, payload)
                delivered += 1
            except Exception as e:
                logger.error(
                    "Event sink failed",
                    sink=type(sink).__name__,
                    topic=topic,
                    error=str(e),
                )

        logger.debug(
            "Published event",
            topic=topic,
            delivered=delivered,
            total=len(self.sinks),
        )


def build_event_bus() -> EventBus:
    """Create the bus with the sinks enabled in the configuration."""
    bus = EventBus([LogEventSink()])
    if config.enable_apprise:
        bus.add(AppriseEventSink())
    return bus
