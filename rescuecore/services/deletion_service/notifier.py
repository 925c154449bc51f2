"""User confirmations and operator alerts for the deletion scheduler.

Both go out over SNS. When SNS is unavailable the operator alert falls
back to a CRITICAL log line so that the escalation is still visible.
"""
import json
import logging
from typing import Callable, Dict, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from rescuecore.shared.models import DeletionJob, UserProfile
from rescuecore.shared.utils import hash_pii
from .config import DeletionConfig

logger = logging.getLogger(__name__)

CONFIRMATION_MESSAGE = (
    "Your emergency incident has been closed and the personal data "
    "associated with it has now been deleted."
)


class DeletionNotifier:
    """Sends deletion confirmations to users and escalations to operators."""

    def __init__(
        self,
        config: Optional[DeletionConfig] = None,
        profile_lookup: Optional[Callable[[str], Optional[UserProfile]]] = None,
    ):
        """Initialize notifier.

        Args:
            config: Deletion settings (operator topic, region)
            profile_lookup: Resolves the user's phone or push endpoint
        """
        self.config = config or DeletionConfig()
        self.profile_lookup = profile_lookup
        self.enabled = self.config.notifications_enabled
        self._sns_client = None

    @property
    def sns_client(self):
        """Lazy initialization of SNS client."""
        if self._sns_client is None and self.enabled:
            try:
                self._sns_client = boto3.client("sns", region_name=self.config.aws_region)
            except (BotoCoreError, ClientError) as e:
                logger.error("SNS_CLIENT_INIT_FAILED", extra={"error": str(e)})
        return self._sns_client

    def send_confirmation(self, job: DeletionJob) -> bool:
        """Tell the user their incident data is gone.

        Returns:
            True if the confirmation was handed to SNS
        """
        user_id_hash = hash_pii(job.user_id)
        profile = self.profile_lookup(job.user_id) if self.profile_lookup else None
        if profile is None or not (profile.push_token or profile.phone):
            logger.warning(
                "DELETION_CONFIRMATION_NO_ADDRESS",
                extra={"job_id": job.job_id, "user_id_hash": user_id_hash}
            )
            return False
        if self.sns_client is None:
            logger.warning(
                "DELETION_CONFIRMATION_SKIPPED",
                extra={"job_id": job.job_id, "reason": "sns_unavailable"}
            )
            return False

        try:
            if profile.push_token:
                self.sns_client.publish(
                    TargetArn=profile.push_token,
                    Message=json.dumps({
                        "type": "data_deleted",
                        "incident_id": job.incident_id,
                        "message": CONFIRMATION_MESSAGE,
                    }),
                )
            else:
                self.sns_client.publish(PhoneNumber=profile.phone, Message=CONFIRMATION_MESSAGE)
        except (BotoCoreError, ClientError) as e:
            logger.error(
                "DELETION_CONFIRMATION_FAILED",
                extra={"job_id": job.job_id, "user_id_hash": user_id_hash, "error": str(e)}
            )
            return False

        logger.info(
            "DELETION_CONFIRMATION_SENT",
            extra={"job_id": job.job_id, "user_id_hash": user_id_hash}
        )
        return True

    def alert_operator(self, job: DeletionJob, details: Optional[Dict[str, str]] = None) -> bool:
        """Raise a manual-intervention alert for a job that exhausted its retries."""
        payload = {
            "type": "deletion_escalated",
            "job_id": job.job_id,
            "incident_id": job.incident_id,
            "attempts": job.attempts,
            "scheduled_for": job.scheduled_for.isoformat(),
            "last_error": job.last_error,
            **(details or {}),
        }

        if self.sns_client is None or not self.config.operator_topic_arn:
            logger.critical(
                "OPERATOR_ALERT_FALLBACK_LOG",
                extra={
                    "payload": json.dumps(payload),
                    "reason": "operator_topic_unavailable",
                    "action": "MANUAL_DELETION_REQUIRED",
                }
            )
            return False

        try:
            self.sns_client.publish(
                TopicArn=self.config.operator_topic_arn,
                Subject=f"Deletion job {job.job_id} needs manual intervention",
                Message=json.dumps(payload),
            )
        except (BotoCoreError, ClientError) as e:
            logger.critical(
                "OPERATOR_ALERT_FAILED",
                extra={
                    "payload": json.dumps(payload),
                    "error": str(e),
                    "action": "MANUAL_DELETION_REQUIRED",
                }
            )
            return False
        return True
