"""User profile directory.

Profiles are owned by the profile-management layer. The device app
sends the current profile with each signal; this directory keeps the
latest copy so alerting and deletion confirmations can resolve it.
"""
import threading
from typing import Dict, Optional

from rescuecore.shared.models import UserProfile


class InMemoryProfileDirectory:
    """Latest known profile per user id."""

    def __init__(self):
        self._profiles: Dict[str, UserProfile] = {}
        self._lock = threading.Lock()

    def put(self, profile: UserProfile) -> None:
        with self._lock:
            self._profiles[profile.user_id] = profile

    def get(self, user_id: str) -> Optional[UserProfile]:
        with self._lock:
            return self._profiles.get(user_id)
