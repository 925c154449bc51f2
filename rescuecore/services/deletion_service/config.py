"""Deletion scheduler configuration."""
import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional


@dataclass(frozen=True)
class DeletionConfig:
    """Timing and operator-channel settings for personal-data deletion."""

    # Personal data is purged this long after closure
    deletion_delay: timedelta = timedelta(hours=24)

    # Wait between failed attempts
    retry_interval: timedelta = timedelta(hours=1)

    # Total time after scheduled_for before the job is escalated
    escalation_window: timedelta = timedelta(hours=48)

    # SNS topic for manual-intervention alerts
    operator_topic_arn: Optional[str] = None

    # Background loop wake-up interval (seconds)
    poll_interval_seconds: float = 60.0

    aws_region: str = "us-east-1"
    notifications_enabled: bool = True

    @classmethod
    def from_env(cls) -> "DeletionConfig":
        """Create config from environment variables.

        Environment variables:
            RESCUE_DELETION_DELAY_HOURS: Hours after closure (default 24)
            RESCUE_DELETION_RETRY_HOURS: Hours between retries (default 1)
            RESCUE_DELETION_ESCALATION_HOURS: Retry window (default 48)
            RESCUE_OPERATOR_TOPIC_ARN: SNS topic for operator alerts
            RESCUE_DELETION_POLL_SECONDS: Scheduler poll interval (default 60)
            AWS_REGION: Region for SNS
            RESCUE_DELETION_NOTIFICATIONS_ENABLED: "false" disables SNS
        """
        return cls(
            deletion_delay=timedelta(hours=float(os.getenv("RESCUE_DELETION_DELAY_HOURS", "24"))),
            retry_interval=timedelta(hours=float(os.getenv("RESCUE_DELETION_RETRY_HOURS", "1"))),
            escalation_window=timedelta(
                hours=float(os.getenv("RESCUE_DELETION_ESCALATION_HOURS", "48"))
            ),
            operator_topic_arn=os.getenv("RESCUE_OPERATOR_TOPIC_ARN"),
            poll_interval_seconds=float(os.getenv("RESCUE_DELETION_POLL_SECONDS", "60")),
            aws_region=os.getenv("AWS_REGION", "us-east-1"),
            notifications_enabled=(
                os.getenv("RESCUE_DELETION_NOTIFICATIONS_ENABLED", "true").lower() != "false"
            ),
        )
