"""
Heatmap clustering and coordinate validation tests.
"""

import pytest

from civicsense.geo import (CLUSTER_RADIUS_DEG, FALLBACK_INTENSITY, bounding_box_query,
                            build_heat_clusters, heat_points, valid_coordinates)


def issue(lat, lng):
    return {"lat": lat, "lng": lng}


# ═══════════════════════════════════════════════════════════════════════════════
# COORDINATES
# ═══════════════════════════════════════════════════════════════════════════════

class TestValidCoordinates:
    def test_accepts_numeric_strings(self):
        assert valid_coordinates("27.7", "85.3") == (27.7, 85.3)

    @pytest.mark.parametrize("lat,lng", [
        (None, 85.3), ("abc", 85.3), (0, 85.3), (27.7, 0), (95, 85.3), (27.7, -181),
        (float("nan"), 85.3),
    ])
    def test_rejects_invalid_or_zero(self, lat, lng):
        assert valid_coordinates(lat, lng) is None

    def test_bounding_box_query(self):
        q = bounding_box_query(10.0, 20.0, 0.5)
        assert q == {"lat": {"$gte": 9.5, "$lte": 10.5}, "lng": {"$gte": 19.5, "$lte": 20.5}}


# ═══════════════════════════════════════════════════════════════════════════════
# CLUSTERING
# ═══════════════════════════════════════════════════════════════════════════════

class TestBuildHeatClusters:
    @pytest.mark.parametrize("n", [1, 3, 10, 14])
    def test_close_issues_form_one_cluster(self, n):
        issues = [issue(27.7000 + i * 0.00003, 85.3000 + i * 0.00003) for i in range(n)]
        clusters = build_heat_clusters(issues)
        assert len(clusters) == 1
        assert clusters[0].member_count == n
        assert clusters[0].intensity == min(n / 10, 1.0)

    def test_distant_issues_form_separate_clusters(self):
        clusters = build_heat_clusters([issue(27.70, 85.30), issue(27.71, 85.31), issue(27.70, 85.30)])
        assert [c.member_count for c in clusters] == [2, 1]

    def test_seed_point_is_the_centroid(self):
        clusters = build_heat_clusters([issue(27.7, 85.3), issue(27.7005, 85.3)])
        assert (clusters[0].centroid_lat, clusters[0].centroid_lng) == (27.7, 85.3)

    def test_first_fit_not_nearest(self):
        # Joins the first cluster within range even though the second seed is closer
        issues = [issue(27.7000, 85.3000), issue(27.7000, 85.3015), issue(27.7000, 85.3009)]
        clusters = build_heat_clusters(issues)
        assert [c.member_count for c in clusters] == [2, 1]

    def test_threshold_is_strict(self):
        clusters = build_heat_clusters([issue(27.5, 85.5), issue(27.5, 85.5 + CLUSTER_RADIUS_DEG * 2)])
        assert len(clusters) == 2

    def test_invalid_coordinates_skipped(self):
        clusters = build_heat_clusters([issue(0, 0), issue(None, 85.3), issue("x", "y"), issue(27.7, 85.3)])
        assert len(clusters) == 1
        assert clusters[0].member_count == 1

    def test_empty_input(self):
        assert build_heat_clusters([]) == []


class TestHeatPoints:
    def test_uses_clusters_when_available(self):
        points = heat_points([issue(27.7, 85.3), issue(27.7001, 85.3001)])
        assert len(points) == 1
        assert points[0].member_count == 2

    def test_no_valid_issue_yields_no_points(self):
        assert heat_points([issue(0, 0), issue(None, None)]) == []

    def test_unclusterable_points_fall_back_to_fixed_intensity(self):
        points = heat_points([issue(95.0, 200.0), issue(91.0, 181.0)])
        assert len(points) == 2
        assert all(p.intensity == FALLBACK_INTENSITY and p.member_count == 1 for p in points)
