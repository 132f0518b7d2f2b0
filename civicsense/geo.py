# Proximity helpers: heatmap clustering and bounding-box prefilters.
#
# Distances are measured in raw degrees (Euclidean), not geodesically. At the
# fixed 0.001 degree threshold the error is small near the equator and grows
# with latitude (a degree of longitude shrinks by cos(lat)). Switching to a
# geodesic metric would change cluster membership at the margins.

import math
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .models import HeatCluster

CLUSTER_RADIUS_DEG = 0.001       # ~100 m
DUPLICATE_BOX_DEG = 0.0005       # ~50 m
DUPLICATE_DETAIL_BOX_DEG = 0.001 # ~100 m
SIMILAR_BOX_DEG = 0.01           # ~1 km
FALLBACK_INTENSITY = 0.3


def valid_coordinates(lat: Any, lng: Any) -> Optional[Tuple[float, float]]:
    """Return ``(lat, lng)`` as floats when both are numeric, in range and non-zero."""
    try:
        lat_f, lng_f = float(lat), float(lng)
    except (TypeError, ValueError):
        return None
    if math.isnan(lat_f) or math.isnan(lng_f):
        return None
    if lat_f == 0 or lng_f == 0:
        return None
    if not (-90 <= lat_f <= 90 and -180 <= lng_f <= 180):
        return None
    return lat_f, lng_f


def bounding_box_query(lat: float, lng: float, delta: float) -> dict:
    return {"lat": {"$gte": lat - delta, "$lte": lat + delta},
            "lng": {"$gte": lng - delta, "$lte": lng + delta}}


def build_heat_clusters(issues: Iterable[Dict[str, Any]],
                        radius: float = CLUSTER_RADIUS_DEG) -> List[HeatCluster]:
    """Group issues into heat clusters by first-fit proximity.

    Clusters are seeded in input order; each issue joins the first existing
    cluster whose seed lies strictly within ``radius`` degrees, even if a
    later cluster is nearer. Intensity is ``min(members / 10, 1.0)``.
    """
    seeds: List[Tuple[float, float]] = []
    counts: List[int] = []
    for issue in issues:
        coords = valid_coordinates(issue.get("lat"), issue.get("lng"))
        if coords is None:
            continue
        lat, lng = coords
        for i, (c_lat, c_lng) in enumerate(seeds):
            if math.sqrt((lat - c_lat) ** 2 + (lng - c_lng) ** 2) < radius:
                counts[i] += 1
                break
        else:
            seeds.append((lat, lng))
            counts.append(1)
    return [HeatCluster(centroid_lat=lat, centroid_lng=lng, member_count=n,
                        intensity=min(n / 10, 1.0))
            for (lat, lng), n in zip(seeds, counts)]


def heat_points(issues: List[Dict[str, Any]]) -> List[HeatCluster]:
    """Clusters for the heatmap, or one point per issue at a fixed intensity if clustering yields none."""
    clusters = build_heat_clusters(issues)
    if clusters:
        return clusters
    points = []
    for issue in issues:
        try:
            lat, lng = float(issue.get("lat")), float(issue.get("lng"))
        except (TypeError, ValueError):
            continue
        if lat and lng:
            points.append(HeatCluster(centroid_lat=lat, centroid_lng=lng, member_count=1,
                                      intensity=FALLBACK_INTENSITY))
    return points
