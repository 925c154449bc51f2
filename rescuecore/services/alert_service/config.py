"""Alert delivery configuration."""
import os
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class AlertConfig:
    """Worker pool, retry and channel settings for alert delivery."""

    # Concurrent delivery workers
    worker_count: int = 4

    # Total delivery attempts per alert (first try included)
    max_attempts: int = 3

    # Retry back-off (seconds): base doubles per failure, capped
    base_backoff_seconds: float = 1.0
    max_backoff_seconds: float = 30.0

    # Latency targets the scheduler biases toward (seconds)
    responder_latency_target_seconds: float = 3.0
    contact_latency_target_seconds: float = 5.0

    # A single channel send slower than this counts as failed
    delivery_timeout_seconds: float = 2.0

    # Idle wait of the background dispatch loop
    poll_interval_seconds: float = 0.2

    location_share_base_url: str = "https://share.rescuecore.local/incident"
    aws_region: str = "us-east-1"
    connect_instance_id: Optional[str] = None
    connect_contact_flow_id: Optional[str] = None
    connect_source_phone: Optional[str] = None
    enabled: bool = True

    @classmethod
    def from_env(cls) -> "AlertConfig":
        """Create config from environment variables.

        Environment variables:
            RESCUE_ALERT_WORKERS: Delivery workers (default 4)
            RESCUE_ALERT_MAX_ATTEMPTS: Attempts per alert (default 3)
            RESCUE_ALERT_BASE_BACKOFF: First retry delay seconds (default 1)
            RESCUE_ALERT_MAX_BACKOFF: Retry delay cap seconds (default 30)
            RESCUE_ALERT_DELIVERY_TIMEOUT: Per-send timeout seconds (default 2)
            RESCUE_LOCATION_SHARE_URL: Base URL for live location links
            AWS_REGION: Region for SNS and Connect
            RESCUE_CONNECT_INSTANCE_ID: Amazon Connect instance for calls
            RESCUE_CONNECT_CONTACT_FLOW_ID: Contact flow for calls
            RESCUE_CONNECT_SOURCE_PHONE: Caller id for calls
            RESCUE_ALERTS_ENABLED: "false" disables outbound delivery
        """
        return cls(
            worker_count=int(os.getenv("RESCUE_ALERT_WORKERS", "4")),
            max_attempts=int(os.getenv("RESCUE_ALERT_MAX_ATTEMPTS", "3")),
            base_backoff_seconds=float(os.getenv("RESCUE_ALERT_BASE_BACKOFF", "1")),
            max_backoff_seconds=float(os.getenv("RESCUE_ALERT_MAX_BACKOFF", "30")),
            delivery_timeout_seconds=float(os.getenv("RESCUE_ALERT_DELIVERY_TIMEOUT", "2")),
            location_share_base_url=os.getenv(
                "RESCUE_LOCATION_SHARE_URL", "https://share.rescuecore.local/incident"
            ),
            aws_region=os.getenv("AWS_REGION", "us-east-1"),
            connect_instance_id=os.getenv("RESCUE_CONNECT_INSTANCE_ID"),
            connect_contact_flow_id=os.getenv("RESCUE_CONNECT_CONTACT_FLOW_ID"),
            connect_source_phone=os.getenv("RESCUE_CONNECT_SOURCE_PHONE"),
            enabled=os.getenv("RESCUE_ALERTS_ENABLED", "true").lower() != "false",
        )

    def backoff_seconds(self, retry_count: int) -> float:
        """Delay before the retry that follows failure number `retry_count`."""
        delay = self.base_backoff_seconds * (2 ** max(retry_count - 1, 0))
        return min(delay, self.max_backoff_seconds)
