"""Tests for the SNS / Connect notification gateway."""
import json
import pytest
from unittest.mock import MagicMock, patch

from botocore.exceptions import ClientError

from rescuecore.shared.errors import DeliveryFailed
from rescuecore.shared.models import Channel, RecipientKind
from rescuecore.shared.utils import configure_pii_salt
from rescuecore.services.alert_service import AlertConfig, AlertPayload, SnsNotificationGateway


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


@pytest.fixture
def payload():
    return AlertPayload(
        incident_id="inc_42",
        emergency_type="Accident",
        priority="High",
        latitude=48.8566,
        longitude=2.3522,
        profile_summary={"display_name": "Alex"},
        recipient_kind=RecipientKind.RESPONDER,
    )


@pytest.fixture
def mock_client():
    with patch("rescuecore.services.alert_service.gateway.boto3.client") as factory:
        client = MagicMock()
        factory.return_value = client
        yield client


class TestSnsChannels:

    def test_sms_is_transactional(self, mock_client, payload):
        gateway = SnsNotificationGateway(AlertConfig())

        gateway.deliver(Channel.SMS, "+15550100", payload)

        kwargs = mock_client.publish.call_args.kwargs
        assert kwargs["PhoneNumber"] == "+15550100"
        assert "Accident" in kwargs["Message"]
        assert kwargs["MessageAttributes"]["AWS.SNS.SMS.SMSType"]["StringValue"] == "Transactional"

    def test_dispatch_api_publishes_json_to_topic(self, mock_client, payload):
        gateway = SnsNotificationGateway(AlertConfig())

        gateway.deliver(Channel.DISPATCH_API, "arn:aws:sns:us-east-1:1:amb", payload)

        kwargs = mock_client.publish.call_args.kwargs
        assert kwargs["TopicArn"] == "arn:aws:sns:us-east-1:1:amb"
        assert json.loads(kwargs["Message"])["incident_id"] == "inc_42"

    def test_push_targets_endpoint(self, mock_client, payload):
        gateway = SnsNotificationGateway(AlertConfig())

        gateway.deliver(Channel.PUSH, "arn:aws:sns:endpoint/1", payload)

        assert mock_client.publish.call_args.kwargs["TargetArn"] == "arn:aws:sns:endpoint/1"

    def test_client_error_becomes_delivery_failed(self, mock_client, payload):
        mock_client.publish.side_effect = ClientError(
            {"Error": {"Code": "Throttling", "Message": "Rate exceeded"}}, "Publish"
        )
        gateway = SnsNotificationGateway(AlertConfig())

        with pytest.raises(DeliveryFailed) as exc_info:
            gateway.deliver(Channel.SMS, "+15550100", payload)

        assert exc_info.value.channel == "sms"


class TestCalls:

    def test_call_uses_connect(self, mock_client, payload):
        config = AlertConfig(connect_instance_id="inst", connect_contact_flow_id="flow")
        gateway = SnsNotificationGateway(config)

        gateway.deliver(Channel.CALL, "+15550100", payload)

        kwargs = mock_client.start_outbound_voice_contact.call_args.kwargs
        assert kwargs["DestinationPhoneNumber"] == "+15550100"
        assert kwargs["InstanceId"] == "inst"
        assert "SourcePhoneNumber" not in kwargs

    def test_call_without_connect_config_fails(self, mock_client, payload):
        gateway = SnsNotificationGateway(AlertConfig())

        with pytest.raises(DeliveryFailed):
            gateway.deliver(Channel.CALL, "+15550100", payload)

        mock_client.start_outbound_voice_contact.assert_not_called()


class TestDisabled:

    def test_disabled_gateway_never_creates_clients(self, payload):
        with patch("rescuecore.services.alert_service.gateway.boto3.client") as factory:
            gateway = SnsNotificationGateway(AlertConfig(enabled=False))

            with pytest.raises(DeliveryFailed):
                gateway.deliver(Channel.SMS, "+15550100", payload)

            factory.assert_not_called()

    def test_empty_address_fails(self, mock_client, payload):
        gateway = SnsNotificationGateway(AlertConfig())

        with pytest.raises(DeliveryFailed):
            gateway.deliver(Channel.DISPATCH_API, "", payload)


class TestAlertConfig:

    def test_backoff_doubles_and_caps(self):
        config = AlertConfig(base_backoff_seconds=1.0, max_backoff_seconds=3.0)

        assert [config.backoff_seconds(n) for n in (1, 2, 3)] == [1.0, 2.0, 3.0]

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("RESCUE_ALERT_MAX_ATTEMPTS", "5")
        monkeypatch.setenv("RESCUE_ALERTS_ENABLED", "false")

        config = AlertConfig.from_env()

        assert config.max_attempts == 5
        assert config.enabled is False
