"""Shared utilities for the rescuecore platform."""
from .pii import hash_pii, configure_pii_salt, share_token
from .geo import haversine_km, distance_km, generalize_region

__all__ = [
    "hash_pii",
    "configure_pii_salt",
    "share_token",
    "haversine_km",
    "distance_km",
    "generalize_region",
]
