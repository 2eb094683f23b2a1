"""
Great-circle distance and decoded-path similarity.

Assumption
----------
Haversine distance is the last-resort estimate when no routing service
answers.  Road distances come from the route estimator; this module only
supplies the geometry the estimator and the route synthesis fall back on.

Complexity: O(1) per distance call and per path comparison.
"""

import math

EARTH_RADIUS_KM = 6_371.0

# Two paths whose endpoints are this far apart score 0 on that endpoint
SIMILARITY_RADIUS_KM = 5.0


def haversine_km(
    lat1: float, lng1: float, lat2: float, lng2: float
) -> float:
    """Return the great-circle distance in **km** between two points."""
    lat1_r, lat2_r = math.radians(lat1), math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)

    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1_r) * math.cos(lat2_r) * math.sin(dlng / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def path_similarity(
    path1: list[tuple[float, float]],
    path2: list[tuple[float, float]],
    radius_km: float = SIMILARITY_RADIUS_KM,
) -> float:
    """
    Score two decoded paths 0-100 by how close their endpoints are.

    Each endpoint contributes ``max(0, 100 - d / radius x 100)``; the score
    is the mean of the start and end contributions.
    """
    if not path1 or not path2:
        return 0.0

    start_km = haversine_km(*path1[0], *path2[0])
    end_km = haversine_km(*path1[-1], *path2[-1])

    start_score = max(0.0, 100 - (start_km / radius_km) * 100)
    end_score = max(0.0, 100 - (end_km / radius_km) * 100)
    return min(100.0, max(0.0, (start_score + end_score) / 2))
