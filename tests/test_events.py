"""
Tests for the event dispatcher
"""

import pytest
from datetime import datetime
from unittest.mock import Mock

from loan_engine.events import DomainEvent, EventPayload, EventDispatcher


def make_event(event_type=DomainEvent.LOAN_APPROVED, entity_id="loan-1"):
    return EventPayload(
        event_type=event_type,
        entity_type="loan",
        entity_id=entity_id,
        data={"reference": "LN-1", "status": "approved"}
    )


class TestEventPayload:
    """Test EventPayload creation and serialization"""

    def test_event_payload_creation(self):
        event = make_event()
        assert event.event_type == DomainEvent.LOAN_APPROVED
        assert event.entity_id == "loan-1"
        assert isinstance(event.timestamp, datetime)
        assert len(event.event_id) > 0

    def test_to_dict(self):
        data = make_event().to_dict()
        assert data["event_type"] == "loan.approved"
        assert data["entity_type"] == "loan"
        assert data["data"]["reference"] == "LN-1"
        assert "timestamp" in data


class TestEventDispatcher:
    """Subscription and delivery"""

    @pytest.fixture
    def dispatcher(self):
        return EventDispatcher()

    def test_specific_subscription(self, dispatcher):
        handler = Mock()
        dispatcher.subscribe(DomainEvent.LOAN_APPROVED, handler)

        event = make_event()
        dispatcher.publish(event)
        dispatcher.publish(make_event(DomainEvent.LOAN_REJECTED))

        handler.assert_called_once_with(event)

    def test_global_subscription(self, dispatcher):
        handler = Mock()
        dispatcher.subscribe_all(handler)
        dispatcher.publish_all([make_event(), make_event(DomainEvent.PAYMENT_VOIDED)])
        assert handler.call_count == 2

    def test_failing_handler_does_not_stop_others(self, dispatcher):
        """Subscribers see committed work; one failure must not hide it from the rest"""
        failing = Mock(side_effect=RuntimeError("notification service down"))
        working = Mock()
        dispatcher.subscribe(DomainEvent.LOAN_APPROVED, failing)
        dispatcher.subscribe(DomainEvent.LOAN_APPROVED, working)

        dispatcher.publish(make_event())

        failing.assert_called_once()
        working.assert_called_once()

    def test_unsubscribe(self, dispatcher):
        handler = Mock()
        dispatcher.subscribe(DomainEvent.LOAN_APPROVED, handler)
        dispatcher.unsubscribe(DomainEvent.LOAN_APPROVED, handler)
        dispatcher.publish(make_event())
        handler.assert_not_called()

    def test_handler_count_and_clear(self, dispatcher):
        dispatcher.subscribe(DomainEvent.LOAN_APPROVED, Mock())
        dispatcher.subscribe(DomainEvent.PAYMENT_APPLIED, Mock())
        dispatcher.subscribe_all(Mock())

        assert dispatcher.get_handler_count(DomainEvent.LOAN_APPROVED) == 1
        assert dispatcher.get_handler_count() == 3
        dispatcher.clear()
        assert dispatcher.get_handler_count() == 0
