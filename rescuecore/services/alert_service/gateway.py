"""Notification gateway for alert delivery.

Outbound SMS, push and dispatch-API messages go through SNS; voice
calls go through Amazon Connect. Both clients are created lazily so a
disabled gateway never touches AWS.
"""
import logging
from abc import ABC, abstractmethod
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from rescuecore.shared.errors import DeliveryFailed
from rescuecore.shared.models import Channel
from .config import AlertConfig
from .payload import AlertPayload

logger = logging.getLogger(__name__)


class NotificationGateway(ABC):
    """Sends one payload to one address on one channel."""

    @abstractmethod
    def deliver(self, channel: Channel, address: str, payload: AlertPayload) -> None:
        """Deliver or raise DeliveryFailed."""
        pass


class SnsNotificationGateway(NotificationGateway):
    """AWS-backed gateway.

    Address formats:
        SMS, CALL: E.164 phone number
        PUSH: SNS platform endpoint ARN
        DISPATCH_API: SNS topic ARN the service subscribes to
    """

    def __init__(self, config: Optional[AlertConfig] = None):
        self.config = config or AlertConfig()
        self.enabled = self.config.enabled
        self._sns_client = None
        self._connect_client = None

        logger.info(
            "NOTIFICATION_GATEWAY_INITIALIZED",
            extra={"enabled": self.enabled, "region": self.config.aws_region}
        )

    @property
    def sns_client(self):
        """Lazy initialization of SNS client."""
        if self._sns_client is None and self.enabled:
            self._sns_client = boto3.client("sns", region_name=self.config.aws_region)
        return self._sns_client

    @property
    def connect_client(self):
        """Lazy initialization of Amazon Connect client."""
        if self._connect_client is None and self.enabled:
            self._connect_client = boto3.client("connect", region_name=self.config.aws_region)
        return self._connect_client

    def deliver(self, channel: Channel, address: str, payload: AlertPayload) -> None:
        if not self.enabled:
            raise DeliveryFailed("notification delivery disabled", channel=channel.value)
        if not address:
            raise DeliveryFailed("recipient has no address", channel=channel.value)

        try:
            if channel == Channel.SMS:
                self.sns_client.publish(
                    PhoneNumber=address,
                    Message=payload.to_text(),
                    MessageAttributes={
                        "AWS.SNS.SMS.SMSType": {
                            "DataType": "String",
                            "StringValue": "Transactional",
                        }
                    },
                )
            elif channel == Channel.PUSH:
                self.sns_client.publish(TargetArn=address, Message=payload.to_json())
            elif channel == Channel.DISPATCH_API:
                self.sns_client.publish(
                    TopicArn=address,
                    Subject=f"Emergency {payload.priority}: {payload.incident_id}",
                    Message=payload.to_json(),
                )
            elif channel == Channel.CALL:
                self._place_call(address, payload)
            else:
                raise DeliveryFailed(f"unsupported channel {channel}", channel=str(channel))
        except (BotoCoreError, ClientError) as e:
            logger.warning(
                "ALERT_CHANNEL_SEND_FAILED",
                extra={
                    "incident_id": payload.incident_id,
                    "channel": channel.value,
                    "error": str(e),
                }
            )
            raise DeliveryFailed(str(e), channel=channel.value) from e

    def _place_call(self, address: str, payload: AlertPayload) -> None:
        if not (self.config.connect_instance_id and self.config.connect_contact_flow_id):
            raise DeliveryFailed("voice calls not configured", channel=Channel.CALL.value)

        params = {
            "DestinationPhoneNumber": address,
            "ContactFlowId": self.config.connect_contact_flow_id,
            "InstanceId": self.config.connect_instance_id,
            "Attributes": {
                "incident_id": payload.incident_id,
                "message": payload.to_text(),
            },
        }
        if self.config.connect_source_phone:
            params["SourcePhoneNumber"] = self.config.connect_source_phone
        self.connect_client.start_outbound_voice_contact(**params)
