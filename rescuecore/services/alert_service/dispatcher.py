"""Alert Dispatcher - responder and contact fan-out with retry.

Deliveries are pulled from the AlertQueue in priority order by a bounded
worker pool. A failed attempt increments the AlertResult retry count and
is requeued with a doubling back-off; after the final attempt the alert
stays failed and an `alert_failed` event is written to the timeline.
"""
import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeout
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from rescuecore.shared.errors import DeliveryFailed, InvalidTransitionError
from rescuecore.shared.models import (
    Actor,
    AlertResult,
    DeliveryStatus,
    EmergencyService,
    EventType,
    Incident,
    IncidentStatus,
    PriorityLevel,
    RecipientKind,
    UserProfile,
    utcnow,
)
from rescuecore.shared.utils import hash_pii
from .config import AlertConfig
from .gateway import NotificationGateway
from .payload import AlertPayload, build_payload
from .queue import AlertQueue, DispatchItem, Recipient

logger = logging.getLogger(__name__)

ProfileLookup = Callable[[str], Optional[UserProfile]]
ServiceDirectory = Callable[[str], Optional[EmergencyService]]


def _new_alert_id() -> str:
    return f"alr_{uuid.uuid4().hex[:12]}"


class AlertDispatcher:
    """Owns AlertResult state for every incident.

    All writes go back through `IncidentManager.record_alert_result` so
    retry counts survive a restart with the incident store.
    """

    def __init__(
        self,
        incident_manager,
        gateway: NotificationGateway,
        profile_lookup: ProfileLookup,
        config: Optional[AlertConfig] = None,
        service_directory: Optional[ServiceDirectory] = None,
        id_factory: Callable[[], str] = _new_alert_id,
    ):
        """Initialize dispatcher.

        Args:
            incident_manager: Sole writer of incident state
            gateway: Notification delivery primitive
            profile_lookup: Returns the user profile (contacts, summary)
            config: Worker, retry and channel settings
            service_directory: Resolves a service id that is no longer in
                the incident's routing result when its alert is requeued
            id_factory: Alert id generator
        """
        self.incident_manager = incident_manager
        self.gateway = gateway
        self.profile_lookup = profile_lookup
        self.config = config or AlertConfig()
        self.service_directory = service_directory
        self.id_factory = id_factory
        self.queue = AlertQueue()

        self._workers = ThreadPoolExecutor(
            max_workers=self.config.worker_count, thread_name_prefix="alert-worker"
        )
        self._channel_pool = ThreadPoolExecutor(
            max_workers=self.config.worker_count * 2, thread_name_prefix="alert-channel"
        )
        self._broadcast_pool = ThreadPoolExecutor(
            max_workers=2, thread_name_prefix="alert-broadcast"
        )
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        logger.info(
            "ALERT_DISPATCHER_INITIALIZED",
            extra={
                "worker_count": self.config.worker_count,
                "max_attempts": self.config.max_attempts,
            }
        )

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    def alert_responders(self, incident_id: str) -> List[AlertResult]:
        """Enqueue one alert per primary service of the routing result.

        Services that already hold an alert for this incident are skipped.
        """
        incident = self.incident_manager.get_incident(incident_id)
        self._ensure_open(incident)

        routing = incident.routing_result
        if routing is None or not routing.primary_services:
            logger.warning(
                "ALERT_NO_RESPONDERS",
                extra={"incident_id": incident_id}
            )
            return []

        payload = self._payload(incident, RecipientKind.RESPONDER)
        already = self._recipients(incident, RecipientKind.RESPONDER)
        results = []
        for service in routing.primary_services:
            if service.service_id in already:
                continue
            results.append(
                self._enqueue(incident, self._service_recipient(service), payload)
            )
        return results

    def alert_contacts(
        self,
        incident_id: str,
        profile: Optional[UserProfile] = None,
    ) -> List[AlertResult]:
        """Enqueue one alert per trusted contact, honoring channel preference."""
        incident = self.incident_manager.get_incident(incident_id)
        self._ensure_open(incident)

        profile = profile or self._lookup_profile(incident.user_id)
        if profile is None or not profile.trusted_contacts:
            logger.warning(
                "ALERT_NO_CONTACTS",
                extra={
                    "incident_id": incident_id,
                    "user_id_hash": hash_pii(incident.user_id),
                }
            )
            return []

        payload = self._payload(incident, RecipientKind.CONTACT, profile)
        already = self._recipients(incident, RecipientKind.CONTACT)
        results = []
        for contact in profile.trusted_contacts:
            if contact.contact_id in already:
                continue
            recipient = Recipient(
                recipient_id=contact.contact_id,
                kind=RecipientKind.CONTACT,
                addresses=tuple((ch, contact.phone) for ch in contact.preference.channels),
            )
            results.append(self._enqueue(incident, recipient, payload))
        return results

    def retry_failed_alerts(self, incident_id: str) -> List[AlertResult]:
        """Requeue alerts that are neither delivered nor exhausted.

        Covers pending alerts whose queue entry was lost on restart. Alerts
        the queue still holds, including one being delivered, are skipped.
        The persisted retry count carries over, so the attempt cap holds.
        """
        incident = self.incident_manager.get_incident(incident_id)
        if incident.personal_data_redacted:
            return []

        profile = None
        requeued = []
        for alert in incident.alerts:
            if alert.status == DeliveryStatus.DELIVERED or alert.exhausted:
                continue
            if alert.retry_count >= self.config.max_attempts:
                continue
            if self.queue.contains(alert.alert_id):
                continue

            if alert.recipient_kind == RecipientKind.CONTACT and profile is None:
                profile = self._lookup_profile(incident.user_id)
            recipient = self._resolve_recipient(incident, alert, profile)
            if recipient is None:
                logger.warning(
                    "ALERT_RECIPIENT_UNRESOLVED",
                    extra={"incident_id": incident_id, "alert_id": alert.alert_id}
                )
                continue

            payload = self._payload(incident, alert.recipient_kind, profile)
            self.queue.put(DispatchItem(
                alert_id=alert.alert_id,
                incident_id=incident_id,
                priority=self._priority(incident),
                recipient=recipient,
                payload=payload,
                attempt=alert.retry_count + 1,
            ))
            requeued.append(alert)

        if requeued:
            logger.info(
                "ALERTS_REQUEUED",
                extra={"incident_id": incident_id, "count": len(requeued)}
            )
        return requeued

    def broadcast_status_change(
        self,
        incident: Incident,
        previous: IncidentStatus,
        new: IncidentStatus,
        actor: Actor,
    ) -> Optional[Future]:
        """Status listener: notify the currently associated services.

        A service is associated when it has been alerted and is still in
        the incident's routing result; services dropped by a re-route are
        not notified. Best-effort and independent of the original alert's
        delivery state. Trusted contacts are not notified. Returns the
        future of the background send, or None when there is no recipient.
        """
        if incident.routing_result is None:
            return None

        alerted = self._recipients(incident, RecipientKind.RESPONDER)
        recipients = [
            self._service_recipient(service)
            for service in incident.routing_result.ranked_services
            if service.service_id in alerted
        ]
        if not recipients:
            return None

        logger.info(
            "STATUS_BROADCAST_SCHEDULED",
            extra={
                "incident_id": incident.incident_id,
                "from_status": previous.value,
                "to_status": new.value,
                "recipients": len(recipients),
            }
        )
        return self._broadcast_pool.submit(self._broadcast, incident, new, recipients)

    # ------------------------------------------------------------------
    # Queue processing
    # ------------------------------------------------------------------

    def process_queue(self, now: Optional[datetime] = None) -> int:
        """Deliver every runnable item and wait for the batch.

        Returns:
            Number of delivery attempts made
        """
        now = now or utcnow()
        items = self.queue.pop_ready(now)
        if not items:
            return 0

        futures = [self._workers.submit(self._attempt, item, now) for item in items]
        for item, future in zip(items, futures):
            try:
                future.result()
            except Exception as e:
                logger.error(
                    "ALERT_ATTEMPT_ERROR",
                    extra={
                        "incident_id": item.incident_id,
                        "alert_id": item.alert_id,
                        "error": str(e),
                    }
                )
        return len(items)

    def start(self) -> None:
        """Run `process_queue` on a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="alert-dispatcher", daemon=True
        )
        self._thread.start()
        logger.info("ALERT_DISPATCHER_STARTED")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("ALERT_DISPATCHER_STOPPED", extra={"pending": len(self.queue)})

    def shutdown(self) -> None:
        self.stop()
        self._workers.shutdown(wait=False)
        self._channel_pool.shutdown(wait=False)
        self._broadcast_pool.shutdown(wait=False)

    def _run(self) -> None:
        while not self._stop_event.is_set():
            if not self.process_queue():
                self.queue.wait(self.config.poll_interval_seconds)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def _attempt(self, item: DispatchItem, now: datetime) -> None:
        try:
            self._deliver_item(item, now)
        finally:
            self.queue.done(item.alert_id)

    def _deliver_item(self, item: DispatchItem, now: datetime) -> None:
        alert = self._load_alert(item)
        if alert is None:
            logger.error(
                "ALERT_RESULT_MISSING",
                extra={"incident_id": item.incident_id, "alert_id": item.alert_id}
            )
            return
        if (
            alert.status == DeliveryStatus.DELIVERED
            or alert.exhausted
            or alert.retry_count >= self.config.max_attempts
        ):
            logger.warning(
                "ALERT_ATTEMPT_SKIPPED",
                extra={
                    "incident_id": item.incident_id,
                    "alert_id": item.alert_id,
                    "status": alert.status.value,
                    "retry_count": alert.retry_count,
                }
            )
            return

        delivered, error = self._send(item.recipient, item.payload)

        # Re-read: the incident may have changed while the send ran
        alert = self._load_alert(item)
        if alert is None:
            return

        if delivered:
            alert.status = DeliveryStatus.DELIVERED
            alert.delivered_at = utcnow()
            alert.error = None
            self.incident_manager.record_alert_result(item.incident_id, alert)
            self._log_latency(item, alert)
            return

        alert.retry_count += 1
        alert.status = DeliveryStatus.FAILED
        alert.error = error

        if alert.retry_count >= self.config.max_attempts:
            alert.exhausted = True
            self.incident_manager.record_alert_result(item.incident_id, alert)
            self.incident_manager.append_timeline_event(
                item.incident_id,
                EventType.ALERT_FAILED,
                f"Alert to {alert.recipient_kind.value} failed after "
                f"{alert.retry_count} attempts",
                metadata={
                    "alert_id": alert.alert_id,
                    "recipient_kind": alert.recipient_kind.value,
                    "retry_count": alert.retry_count,
                    "error": error,
                },
            )
            logger.critical(
                "ALERT_DELIVERY_EXHAUSTED",
                extra={
                    "incident_id": item.incident_id,
                    "alert_id": alert.alert_id,
                    "recipient_kind": alert.recipient_kind.value,
                    "retry_count": alert.retry_count,
                    "error": error,
                }
            )
            return

        self.incident_manager.record_alert_result(item.incident_id, alert)
        delay = self.config.backoff_seconds(alert.retry_count)
        self.queue.schedule(item.next_attempt(), now + timedelta(seconds=delay))
        logger.warning(
            "ALERT_DELIVERY_RETRY_SCHEDULED",
            extra={
                "incident_id": item.incident_id,
                "alert_id": alert.alert_id,
                "retry_count": alert.retry_count,
                "delay_seconds": delay,
                "error": error,
            }
        )

    def _send(self, recipient: Recipient, payload: AlertPayload) -> Tuple[bool, Optional[str]]:
        """Send on every channel of the recipient concurrently.

        Delivered when any channel succeeds within the delivery timeout.
        """
        if not recipient.addresses:
            return False, "recipient has no delivery channel"

        futures = {
            self._channel_pool.submit(self.gateway.deliver, channel, address, payload): channel
            for channel, address in recipient.addresses
        }
        delivered = False
        errors = []
        try:
            for future in as_completed(futures, timeout=self.config.delivery_timeout_seconds):
                channel = futures[future]
                try:
                    future.result()
                    delivered = True
                except DeliveryFailed as e:
                    errors.append(f"{channel.value}: {e}")
                except Exception as e:
                    logger.error(
                        "ALERT_GATEWAY_ERROR",
                        extra={"channel": channel.value, "error": str(e)}
                    )
                    errors.append(f"{channel.value}: {e}")
        except FuturesTimeout:
            errors.append(
                f"delivery timed out after {self.config.delivery_timeout_seconds}s"
            )

        if delivered:
            return True, None
        return False, "; ".join(errors)

    def _broadcast(
        self,
        incident: Incident,
        status: IncidentStatus,
        recipients: List[Recipient],
    ) -> int:
        payload = self._payload(incident, RecipientKind.RESPONDER, status=status.value)
        sent = 0
        for recipient in recipients:
            delivered, error = self._send(recipient, payload)
            if delivered:
                sent += 1
            else:
                logger.warning(
                    "STATUS_BROADCAST_FAILED",
                    extra={
                        "incident_id": incident.incident_id,
                        "service_id": recipient.recipient_id,
                        "status": status.value,
                        "error": error,
                    }
                )
        return sent

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _enqueue(
        self,
        incident: Incident,
        recipient: Recipient,
        payload: AlertPayload,
    ) -> AlertResult:
        alert = AlertResult(
            alert_id=self.id_factory(),
            incident_id=incident.incident_id,
            recipient_id=recipient.recipient_id,
            recipient_kind=recipient.kind,
            channels=recipient.channels,
        )
        self.incident_manager.record_alert_result(incident.incident_id, alert)
        self.queue.put(DispatchItem(
            alert_id=alert.alert_id,
            incident_id=incident.incident_id,
            priority=self._priority(incident),
            recipient=recipient,
            payload=payload,
        ))
        logger.info(
            "ALERT_ENQUEUED",
            extra={
                "incident_id": incident.incident_id,
                "alert_id": alert.alert_id,
                "recipient_kind": recipient.kind.value,
                "channels": [c.value for c in recipient.channels],
            }
        )
        return alert

    def _ensure_open(self, incident: Incident) -> None:
        if incident.is_closed:
            raise InvalidTransitionError(
                incident.incident_id, incident.status.value, "alert",
                reason="no new alerts for a closed incident",
            )

    def _load_alert(self, item: DispatchItem) -> Optional[AlertResult]:
        incident = self.incident_manager.get_incident(item.incident_id)
        for alert in incident.alerts:
            if alert.alert_id == item.alert_id:
                return alert
        return None

    def _lookup_profile(self, user_id: str) -> Optional[UserProfile]:
        try:
            return self.profile_lookup(user_id)
        except Exception as e:
            logger.error(
                "PROFILE_LOOKUP_FAILED",
                extra={"user_id_hash": hash_pii(user_id), "error": str(e)}
            )
            return None

    def _payload(
        self,
        incident: Incident,
        kind: RecipientKind,
        profile: Optional[UserProfile] = None,
        status: Optional[str] = None,
    ) -> AlertPayload:
        if profile is None and not incident.personal_data_redacted:
            profile = self._lookup_profile(incident.user_id)
        return build_payload(
            incident, profile, kind, self.config.location_share_base_url, status=status
        )

    def _find_service(self, incident: Incident, service_id: str) -> Optional[EmergencyService]:
        if incident.routing_result is not None:
            for service in incident.routing_result.ranked_services:
                if service.service_id == service_id:
                    return service
        if self.service_directory is not None:
            return self.service_directory(service_id)
        return None

    def _resolve_recipient(
        self,
        incident: Incident,
        alert: AlertResult,
        profile: Optional[UserProfile],
    ) -> Optional[Recipient]:
        if alert.recipient_kind == RecipientKind.RESPONDER:
            service = self._find_service(incident, alert.recipient_id)
            return self._service_recipient(service) if service else None

        if profile is None:
            return None
        for contact in profile.trusted_contacts:
            if contact.contact_id == alert.recipient_id:
                return Recipient(
                    recipient_id=contact.contact_id,
                    kind=RecipientKind.CONTACT,
                    addresses=tuple((ch, contact.phone) for ch in alert.channels),
                )
        return None

    def _log_latency(self, item: DispatchItem, alert: AlertResult) -> None:
        latency = (alert.delivered_at - alert.created_at).total_seconds()
        target = (
            self.config.responder_latency_target_seconds
            if alert.recipient_kind == RecipientKind.RESPONDER
            else self.config.contact_latency_target_seconds
        )
        extra = {
            "incident_id": item.incident_id,
            "alert_id": alert.alert_id,
            "recipient_kind": alert.recipient_kind.value,
            "attempt": item.attempt,
            "latency_seconds": round(latency, 3),
        }
        if latency > target:
            logger.warning("ALERT_LATENCY_TARGET_MISSED", extra={**extra, "target_seconds": target})
        else:
            logger.info("ALERT_DELIVERED", extra=extra)

    @staticmethod
    def _recipients(incident: Incident, kind: RecipientKind) -> set:
        return {a.recipient_id for a in incident.alerts if a.recipient_kind == kind}

    @staticmethod
    def _priority(incident: Incident) -> PriorityLevel:
        if incident.classification is None:
            return PriorityLevel.HIGH
        return incident.classification.priority

    @staticmethod
    def _service_recipient(service: EmergencyService) -> Recipient:
        return Recipient(
            recipient_id=service.service_id,
            kind=RecipientKind.RESPONDER,
            addresses=((service.dispatch_channel, service.dispatch_address or ""),),
        )
