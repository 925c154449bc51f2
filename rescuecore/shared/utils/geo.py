"""Geographic helpers: great-circle distance and region generalization."""
import math

from rescuecore.shared.models import GPSLocation

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two points in kilometers."""
    lat1_r = math.radians(lat1)
    lat2_r = math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)

    a = (math.sin(dlat / 2) ** 2 +
         math.cos(lat1_r) * math.cos(lat2_r) * math.sin(dlng / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_KM * c


def distance_km(a: GPSLocation, b: GPSLocation) -> float:
    return haversine_km(a.latitude, a.longitude, b.latitude, b.longitude)


def generalize_region(location: GPSLocation, cell_degrees: float = 0.5) -> str:
    """Snap a location to a coarse grid cell label.

    A 0.5 degree cell is roughly 55 km on a side, wide enough that a
    single incident cannot be traced back to an address.
    """
    lat_cell = math.floor(location.latitude / cell_degrees) * cell_degrees
    lng_cell = math.floor(location.longitude / cell_degrees) * cell_degrees
    return f"grid:{lat_cell:+.1f}:{lng_cell:+.1f}"
