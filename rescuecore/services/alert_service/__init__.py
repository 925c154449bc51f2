"""Alert Service - prioritized multi-channel delivery with retry."""
from .config import AlertConfig
from .dispatcher import AlertDispatcher
from .gateway import NotificationGateway, SnsNotificationGateway
from .payload import AlertPayload, build_payload
from .queue import AlertQueue, DispatchItem, Recipient

__all__ = [
    "AlertConfig",
    "AlertDispatcher",
    "NotificationGateway",
    "SnsNotificationGateway",
    "AlertPayload",
    "build_payload",
    "AlertQueue",
    "DispatchItem",
    "Recipient",
]
