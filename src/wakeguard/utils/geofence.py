import math
from dataclasses import dataclass
from typing import Optional

# Mean earth radius (meters)
EARTH_RADIUS_METERS = 6371000


@dataclass(frozen=True)
class Judgment:
    passed: bool
    distance_meters: float


def haversine_distance(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two points in meters."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lng2 - lng1)

    a = (
        math.sin(delta_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_METERS * c


def _valid_coordinate(lat, lng) -> bool:
    if lat is None or lng is None:
        return False
    if not (math.isfinite(lat) and math.isfinite(lng)):
        return False
    return -90 <= lat <= 90 and -180 <= lng <= 180


def is_reliable(ping) -> bool:
    """Whether a ping may be judged at all."""
    if ping is None or not getattr(ping, "is_valid", False):
        return False
    accuracy = getattr(ping, "accuracy_meters", None)
    if accuracy is None or not math.isfinite(accuracy) or accuracy < 0:
        return False
    return _valid_coordinate(getattr(ping, "lat", None), getattr(ping, "lng", None))


def passes_quality_filter(accuracy_meters: Optional[float], max_accuracy_meters: float) -> bool:
    """Post-filter applied when a ping is recorded; sets ``LocationPing.is_valid``."""
    if accuracy_meters is None or not math.isfinite(accuracy_meters):
        return False
    return 0 <= accuracy_meters <= max_accuracy_meters


def judge(ping, target_lat: float, target_lng: float, radius_meters: float) -> Judgment:
    """Judge whether ``ping`` lies inside the circular target area.

    An unreliable ping is a failure at infinite distance, never an error.
    """
    if not is_reliable(ping) or not _valid_coordinate(target_lat, target_lng):
        return Judgment(passed=False, distance_meters=math.inf)

    distance = haversine_distance(ping.lat, ping.lng, target_lat, target_lng)
    return Judgment(passed=distance <= radius_meters, distance_meters=distance)
