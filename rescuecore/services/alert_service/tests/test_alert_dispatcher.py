"""Tests for AlertDispatcher fan-out, retry and broadcast."""
import pytest
from unittest.mock import MagicMock

from rescuecore.shared.errors import DeliveryFailed, InvalidTransitionError
from rescuecore.shared.models import (
    SYSTEM_ACTOR,
    Actor,
    ActorRole,
    AlertResult,
    Channel,
    Classification,
    ContactPreference,
    DeliveryStatus,
    EmergencyService,
    EmergencySignal,
    EmergencyType,
    EventType,
    GPSLocation,
    IncidentStatus,
    PriorityLevel,
    RecipientKind,
    RoutingResult,
    ServiceType,
    TrustedContact,
    UserProfile,
)
from rescuecore.shared.utils import configure_pii_salt, share_token
from rescuecore.services.alert_service import (
    AlertConfig,
    AlertDispatcher,
    AlertQueue,
    NotificationGateway,
    build_payload,
)
from rescuecore.services.incident_manager import IncidentManager, InMemoryIncidentStore

RESPONDER = Actor("medic_7", ActorRole.EMERGENCY_RESPONDER)
SHARE_URL = "https://share.example.test/incident"


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


@pytest.fixture
def ambulance():
    return EmergencyService(
        service_id="amb_1",
        name="Central Ambulance",
        service_type=ServiceType.AMBULANCE,
        location=GPSLocation(52.51, 13.40),
        dispatch_channel=Channel.SMS,
        dispatch_address="+15550199",
    )


@pytest.fixture
def profile():
    return UserProfile(
        user_id="user_1",
        display_name="Dana",
        trusted_contacts=[
            TrustedContact("c1", "Sam", "+15550101", ContactPreference.BOTH),
        ],
        medical_summary="asthma",
    )


@pytest.fixture
def manager():
    return IncidentManager(InMemoryIncidentStore())


@pytest.fixture
def gateway():
    return MagicMock(spec=NotificationGateway)


@pytest.fixture
def dispatcher(manager, gateway, profile):
    config = AlertConfig(
        base_backoff_seconds=1.0,
        delivery_timeout_seconds=2.0,
        location_share_base_url=SHARE_URL,
    )
    dispatcher = AlertDispatcher(
        manager, gateway, profile_lookup=lambda user_id: profile, config=config
    )
    yield dispatcher
    dispatcher.shutdown()


@pytest.fixture
def incident_id(manager, ambulance):
    incident = manager.create_incident(
        EmergencySignal("sig_1", "user_1", GPSLocation(52.52, 13.40))
    )
    manager.classify_incident(
        incident.incident_id,
        Classification(EmergencyType.MEDICAL, PriorityLevel.HIGH, 0.92),
    )
    manager.attach_routing_result(
        incident.incident_id,
        RoutingResult(primary_services=(ambulance,), reasoning="nearest ambulance"),
    )
    return incident.incident_id


def drain(dispatcher, limit=20):
    """Run the queue at each due time until it is empty."""
    for _ in range(limit):
        if not len(dispatcher.queue):
            return
        dispatcher.process_queue(dispatcher.queue.next_due_at())
    raise AssertionError("queue did not drain")


class TestResponderAlerts:

    def test_one_alert_per_primary_service(self, dispatcher, manager, incident_id):
        alerts = dispatcher.alert_responders(incident_id)

        assert [a.recipient_id for a in alerts] == ["amb_1"]
        stored = manager.get_incident(incident_id).alerts
        assert stored[0].status == DeliveryStatus.PENDING
        assert stored[0].channels == [Channel.SMS]

    def test_already_alerted_service_skipped(self, dispatcher, incident_id):
        dispatcher.alert_responders(incident_id)

        assert dispatcher.alert_responders(incident_id) == []

    def test_delivered_on_success(self, dispatcher, manager, gateway, incident_id):
        dispatcher.alert_responders(incident_id)

        drain(dispatcher)

        alert = manager.get_incident(incident_id).alerts[0]
        assert alert.status == DeliveryStatus.DELIVERED
        assert alert.delivered_at is not None
        assert alert.retry_count == 0
        channel, address, payload = gateway.deliver.call_args[0]
        assert (channel, address) == (Channel.SMS, "+15550199")
        assert payload.location_share_link is None

    def test_exhausted_after_three_failures(self, dispatcher, manager, gateway, incident_id):
        gateway.deliver.side_effect = DeliveryFailed("carrier rejected", channel="sms")
        dispatcher.alert_responders(incident_id)

        drain(dispatcher)

        incident = manager.get_incident(incident_id)
        alert = incident.alerts[0]
        assert gateway.deliver.call_count == 3
        assert alert.retry_count == 3
        assert alert.status == DeliveryStatus.FAILED
        assert alert.exhausted
        assert "carrier rejected" in alert.error

        failed = [e for e in incident.timeline if e.event_type == EventType.ALERT_FAILED]
        assert len(failed) == 1
        assert failed[0].metadata["retry_count"] == 3

    def test_recovers_on_second_attempt(self, dispatcher, manager, gateway, incident_id):
        gateway.deliver.side_effect = [DeliveryFailed("busy"), None]
        dispatcher.alert_responders(incident_id)

        drain(dispatcher)

        alert = manager.get_incident(incident_id).alerts[0]
        assert alert.status == DeliveryStatus.DELIVERED
        assert alert.retry_count == 1
        assert not alert.exhausted

    def test_no_routing_result_means_no_alerts(self, dispatcher, manager):
        incident = manager.create_incident(
            EmergencySignal("sig_2", "user_1", GPSLocation(0.0, 0.0))
        )

        assert dispatcher.alert_responders(incident.incident_id) == []


class TestContactAlerts:

    def test_both_preference_delivers_when_one_channel_works(
        self, dispatcher, manager, gateway, incident_id
    ):
        def deliver(channel, address, payload):
            if channel == Channel.CALL:
                raise DeliveryFailed("no answer", channel="call")

        gateway.deliver.side_effect = deliver
        alerts = dispatcher.alert_contacts(incident_id)

        assert alerts[0].channels == [Channel.SMS, Channel.CALL]
        drain(dispatcher)

        alert = manager.get_incident(incident_id).alerts[0]
        assert alert.status == DeliveryStatus.DELIVERED
        assert gateway.deliver.call_count == 2

    def test_contact_payload_carries_share_link(self, dispatcher, gateway, incident_id):
        dispatcher.alert_contacts(incident_id)

        drain(dispatcher)

        payload = gateway.deliver.call_args[0][2]
        assert payload.recipient_kind == RecipientKind.CONTACT
        assert payload.location_share_link == (
            f"{SHARE_URL}/{incident_id}?t={share_token(incident_id)}"
        )
        assert payload.profile_summary["display_name"] == "Dana"

    def test_no_contacts(self, manager, gateway, incident_id):
        dispatcher = AlertDispatcher(manager, gateway, profile_lookup=lambda user_id: None)
        try:
            assert dispatcher.alert_contacts(incident_id) == []
        finally:
            dispatcher.shutdown()


class TestClosedIncident:

    def test_new_alerts_rejected(self, dispatcher, manager, incident_id):
        for status in (
            IncidentStatus.DISPATCHED,
            IncidentStatus.ACKNOWLEDGED,
            IncidentStatus.RESPONDING,
            IncidentStatus.ON_SCENE,
            IncidentStatus.RESOLVED,
        ):
            manager.update_status(incident_id, status, RESPONDER)
        manager.close_incident(incident_id, RESPONDER, "treated on scene")

        with pytest.raises(InvalidTransitionError):
            dispatcher.alert_responders(incident_id)
        with pytest.raises(InvalidTransitionError):
            dispatcher.alert_contacts(incident_id)


class TestRetryFailedAlerts:

    def test_lost_queue_entries_requeued(self, dispatcher, manager, incident_id):
        dispatcher.alert_responders(incident_id)
        dispatcher.queue = AlertQueue()

        requeued = dispatcher.retry_failed_alerts(incident_id)

        assert [a.recipient_id for a in requeued] == ["amb_1"]
        drain(dispatcher)
        assert manager.get_incident(incident_id).alerts[0].status == DeliveryStatus.DELIVERED

    def test_persisted_retry_count_carries_over(self, dispatcher, manager, gateway, incident_id):
        manager.record_alert_result(incident_id, AlertResult(
            alert_id="alr_restart",
            incident_id=incident_id,
            recipient_id="amb_1",
            recipient_kind=RecipientKind.RESPONDER,
            channels=[Channel.SMS],
            status=DeliveryStatus.FAILED,
            retry_count=2,
        ))
        gateway.deliver.side_effect = DeliveryFailed("down")

        dispatcher.retry_failed_alerts(incident_id)
        drain(dispatcher)

        alert = manager.get_incident(incident_id).alerts[0]
        assert gateway.deliver.call_count == 1
        assert alert.retry_count == 3
        assert alert.exhausted

    def test_delivered_and_queued_alerts_skipped(self, dispatcher, incident_id):
        dispatcher.alert_responders(incident_id)

        assert dispatcher.retry_failed_alerts(incident_id) == []

        drain(dispatcher)
        assert dispatcher.retry_failed_alerts(incident_id) == []

    def test_alert_in_delivery_not_requeued(self, dispatcher, manager, gateway, incident_id):
        gateway.deliver.side_effect = DeliveryFailed("down")
        dispatcher.alert_responders(incident_id)
        dispatcher.process_queue(dispatcher.queue.next_due_at())
        dispatcher.process_queue(dispatcher.queue.next_due_at())

        due = dispatcher.queue.next_due_at()
        [third] = dispatcher.queue.pop_ready(due)

        assert dispatcher.queue.contains(third.alert_id)
        assert dispatcher.retry_failed_alerts(incident_id) == []

        dispatcher._attempt(third, due)

        alert = manager.get_incident(incident_id).alerts[0]
        assert gateway.deliver.call_count == 3
        assert alert.retry_count == 3
        assert alert.exhausted
        assert not dispatcher.queue.contains(third.alert_id)
        assert dispatcher.retry_failed_alerts(incident_id) == []
        assert len(dispatcher.queue) == 0

    def test_exhausted_alert_never_sent_again(self, dispatcher, manager, gateway, incident_id):
        gateway.deliver.side_effect = DeliveryFailed("down")
        dispatcher.alert_responders(incident_id)
        [item] = dispatcher.queue.pop_ready()
        dispatcher.queue.done(item.alert_id)
        dispatcher.queue.put(item)
        drain(dispatcher)

        dispatcher.queue.put(item)
        dispatcher.process_queue()

        assert gateway.deliver.call_count == 3
        assert manager.get_incident(incident_id).alerts[0].retry_count == 3
        assert not dispatcher.queue.contains(item.alert_id)


class TestStatusBroadcast:

    def test_alerted_services_notified(self, dispatcher, manager, gateway, incident_id):
        dispatcher.alert_responders(incident_id)
        drain(dispatcher)
        gateway.deliver.reset_mock()

        incident = manager.update_status(incident_id, IncidentStatus.DISPATCHED, SYSTEM_ACTOR)
        future = dispatcher.broadcast_status_change(
            incident, IncidentStatus.ROUTED, IncidentStatus.DISPATCHED, SYSTEM_ACTOR
        )

        assert future.result(timeout=5) == 1
        channel, address, payload = gateway.deliver.call_args[0]
        assert address == "+15550199"
        assert payload.status == "dispatched"

    def test_contacts_not_notified(self, dispatcher, manager, incident_id):
        dispatcher.alert_contacts(incident_id)
        incident = manager.get_incident(incident_id)

        assert dispatcher.broadcast_status_change(
            incident, IncidentStatus.ROUTED, IncidentStatus.DISPATCHED, SYSTEM_ACTOR
        ) is None

    def test_services_dropped_by_reroute_not_notified(
        self, dispatcher, manager, gateway, incident_id
    ):
        police = EmergencyService(
            service_id="pol_1",
            name="District Police",
            service_type=ServiceType.POLICE,
            location=GPSLocation(52.50, 13.42),
            dispatch_channel=Channel.SMS,
            dispatch_address="+15550110",
        )
        dispatcher.alert_responders(incident_id)
        drain(dispatcher)

        manager.reclassify_incident(
            incident_id, Classification(EmergencyType.SAFETY, PriorityLevel.HIGH, 0.9)
        )
        manager.attach_routing_result(
            incident_id, RoutingResult(primary_services=(police,), reasoning="nearest police")
        )
        dispatcher.alert_responders(incident_id)
        drain(dispatcher)
        gateway.deliver.reset_mock()

        incident = manager.update_status(incident_id, IncidentStatus.DISPATCHED, SYSTEM_ACTOR)
        future = dispatcher.broadcast_status_change(
            incident, IncidentStatus.ROUTED, IncidentStatus.DISPATCHED, SYSTEM_ACTOR
        )

        assert future.result(timeout=5) == 1
        addresses = [c[0][1] for c in gateway.deliver.call_args_list]
        assert addresses == ["+15550110"]


class TestPayload:

    def test_unclassified_incident_defaults(self, manager):
        incident = manager.create_incident(
            EmergencySignal("sig_3", "user_1", GPSLocation(10.0, 20.0))
        )

        payload = build_payload(incident, None, RecipientKind.RESPONDER, SHARE_URL)

        assert payload.emergency_type == "Unknown"
        assert payload.priority == "High"
        assert (payload.latitude, payload.longitude) == (10.0, 20.0)
        assert payload.profile_summary == {"display_name": None}

    def test_text_form(self, manager, incident_id, profile):
        incident = manager.get_incident(incident_id)

        text = build_payload(incident, profile, RecipientKind.RESPONDER, SHARE_URL).to_text()

        assert text.startswith("EMERGENCY (High) Medical | Dana needs help")
        assert text.endswith(f"Ref {incident_id}")
