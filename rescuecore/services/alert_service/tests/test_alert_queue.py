"""Tests for AlertQueue ordering and delayed promotion."""
import pytest
from datetime import datetime, timedelta, timezone

from rescuecore.shared.models import Channel, PriorityLevel, RecipientKind
from rescuecore.shared.utils import configure_pii_salt
from rescuecore.services.alert_service import AlertPayload, AlertQueue, DispatchItem, Recipient

NOW = datetime(2026, 5, 1, 8, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


def item(alert_id, priority=PriorityLevel.MEDIUM):
    recipient = Recipient(
        recipient_id=f"r_{alert_id}",
        kind=RecipientKind.CONTACT,
        addresses=((Channel.SMS, "+15550100"),),
    )
    payload = AlertPayload(
        incident_id="inc_1",
        emergency_type="Medical",
        priority=priority.value,
        latitude=1.0,
        longitude=2.0,
        profile_summary={},
        recipient_kind=RecipientKind.CONTACT,
    )
    return DispatchItem(
        alert_id=alert_id,
        incident_id="inc_1",
        priority=priority,
        recipient=recipient,
        payload=payload,
        enqueued_at=NOW,
    )


class TestOrdering:

    def test_high_before_medium_before_low(self):
        queue = AlertQueue()
        queue.put(item("low", PriorityLevel.LOW))
        queue.put(item("med", PriorityLevel.MEDIUM))
        queue.put(item("high", PriorityLevel.HIGH))

        assert [i.alert_id for i in queue.pop_ready(NOW)] == ["high", "med", "low"]

    def test_fifo_within_tier(self):
        queue = AlertQueue()
        for alert_id in ("a", "b", "c"):
            queue.put(item(alert_id, PriorityLevel.HIGH))

        assert [i.alert_id for i in queue.pop_ready(NOW)] == ["a", "b", "c"]

    def test_pop_empties_queue_but_claims_alert(self):
        queue = AlertQueue()
        queue.put(item("a"))

        queue.pop_ready(NOW)

        assert len(queue) == 0
        assert queue.contains("a")
        assert queue.counts()["in_flight"] == 1

        queue.done("a")

        assert not queue.contains("a")


class TestDelayed:

    def test_delayed_item_held_until_due(self):
        queue = AlertQueue()
        queue.schedule(item("retry"), NOW + timedelta(seconds=2))

        assert queue.pop_ready(NOW) == []
        assert queue.contains("retry")
        assert queue.counts() == {"ready": 0, "delayed": 1, "in_flight": 0}

        due = queue.pop_ready(NOW + timedelta(seconds=2))
        assert [i.alert_id for i in due] == ["retry"]

    def test_promoted_item_respects_priority(self):
        queue = AlertQueue()
        queue.put(item("fresh_low", PriorityLevel.LOW))
        queue.schedule(item("retry_high", PriorityLevel.HIGH), NOW)

        assert [i.alert_id for i in queue.pop_ready(NOW)] == ["retry_high", "fresh_low"]

    def test_next_due_at(self):
        queue = AlertQueue()
        assert queue.next_due_at() is None

        queue.schedule(item("late"), NOW + timedelta(seconds=4))
        queue.schedule(item("soon"), NOW + timedelta(seconds=1))

        assert queue.next_due_at() == NOW + timedelta(seconds=1)

    def test_next_attempt_increments(self):
        assert item("a").next_attempt().attempt == 2
