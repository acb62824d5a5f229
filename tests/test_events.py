"""Tests for event sinks."""

import pytest

from htlc_engine.events import (
    SWAP_CLAIMED,
    SWAP_INITIATED,
    SWAP_REFUNDED,
    AppriseEventSink,
    ConsoleEventSink,
    EventBus,
    EventSink,
    LogEventSink,
    RecordingEventSink,
)

SWAP_ID = "ab" * 32


@pytest.fixture
def initiated_payload():
    return {"swap_id": SWAP_ID, "sender": "alice", "receiver": "bob", "amount": 100}


class ExplodingSink(EventSink):
    """Sink that always fails."""

    def publish(self, topic, payload):
        raise ConnectionError("notification service down")


class TestEventBus:
    """Fan-out and failure isolation."""

    def test_delivers_to_every_sink_in_order(self, initiated_payload):
        first, second = RecordingEventSink(), RecordingEventSink()
        bus = EventBus([first, second])

        bus.publish(SWAP_INITIATED, initiated_payload)
        bus.publish(SWAP_REFUNDED, {"swap_id": SWAP_ID})

        for sink in (first, second):
            assert sink.topics() == [SWAP_INITIATED, SWAP_REFUNDED]
            assert sink.events[0][1] == initiated_payload

    def test_failing_sink_does_not_stop_delivery(self, initiated_payload):
        recorder = RecordingEventSink()
        bus = EventBus([ExplodingSink(), recorder])

        bus.publish(SWAP_INITIATED, initiated_payload)

        assert recorder.topics() == [SWAP_INITIATED]

    def test_recording_sink_copies_payload(self, initiated_payload):
        recorder = RecordingEventSink()
        recorder.publish(SWAP_INITIATED, initiated_payload)
        initiated_payload["amount"] = 1

        assert recorder.events[0][1]["amount"] == 100


class TestFormatting:
    """Human readable event messages."""

    def test_initiated_message(self, initiated_payload):
        message = LogEventSink().format_event_message(SWAP_INITIATED, initiated_payload)

        assert "Swap initiated" in message
        assert SWAP_ID[:16] in message
        assert "alice → bob" in message
        assert "Amount: 100" in message

    def test_claimed_message_shows_preimage(self):
        message = LogEventSink().format_event_message(
            SWAP_CLAIMED, {"swap_id": SWAP_ID, "preimage": "736563726574"}
        )

        assert "Swap claimed" in message
        assert "736563726574" in message

    def test_unknown_topic_falls_back_to_json(self):
        message = LogEventSink().format_event_message("custom", {"b": 2, "a": 1})

        assert message == 'custom\n{"a": 1, "b": 2}'

    def test_console_output(self, capsys):
        ConsoleEventSink().publish(SWAP_REFUNDED, {"swap_id": SWAP_ID})

        captured = capsys.readouterr()
        assert "Swap refunded" in captured.out
        assert SWAP_ID[:16] in captured.out


class TestAppriseEventSink:
    """Apprise delivery."""

    def test_sends_formatted_notification(self, mocker):
        apprise_cls = mocker.patch("htlc_engine.events.Apprise")
        apprise = apprise_cls.return_value
        apprise.urls.return_value = ["json://localhost"]
        apprise.notify.return_value = True

        sink = AppriseEventSink(urls=["json://localhost"])
        sink.publish(SWAP_REFUNDED, {"swap_id": SWAP_ID})

        apprise.add.assert_called_once_with("json://localhost")
        kwargs = apprise.notify.call_args.kwargs
        assert kwargs["title"] == "HTLC swap refunded"
        assert "Swap refunded" in kwargs["body"]

    def test_failed_notification_does_not_raise(self, mocker):
        apprise_cls = mocker.patch("htlc_engine.events.Apprise")
        apprise_cls.return_value.urls.return_value = []
        apprise_cls.return_value.notify.return_value = False

        sink = AppriseEventSink(urls=[])
        sink.publish(SWAP_CLAIMED, {"swap_id": SWAP_ID, "preimage": "00"})

        apprise_cls.return_value.notify.assert_called_once()
