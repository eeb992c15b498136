import os
import sys

import httpx
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from app.services.distance_estimator import (
    CoordinateValidationError,
    DistanceCache,
    DistanceEstimator,
)
from app.services.geodesy import haversine_km

SAN_SALVADOR = (13.6929, -89.2182)
SANTA_TECLA = (13.6769, -89.2797)
SAN_MIGUEL = (13.4833, -88.1833)


def _matrix_ok(request: httpx.Request) -> httpx.Response:
    assert request.url.params["mode"] == "driving"
    assert request.url.params["units"] == "metric"
    return httpx.Response(
        200,
        json={
            "status": "OK",
            "rows": [
                {
                    "elements": [
                        {
                            "status": "OK",
                            "distance": {"value": 12345, "text": "12.3 km"},
                            "duration": {"value": 1530, "text": "26 min"},
                        }
                    ]
                }
            ],
        },
    )


def _estimator(tmp_path, handler, api_key="test-key", with_cache=True) -> DistanceEstimator:
    cache = DistanceCache(db_path=str(tmp_path / "cache.sqlite3")) if with_cache else None
    return DistanceEstimator(
        api_key=api_key,
        cache=cache,
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
    )


def _expected_fallback_km(a, b) -> float:
    return haversine_km(a[0], a[1], b[0], b[1]) * 1.3


def test_trip_distance_from_provider(tmp_path):
    estimator = _estimator(tmp_path, _matrix_ok)
    result = estimator.trip_distance(*SAN_SALVADOR, *SANTA_TECLA)
    assert result.is_fallback is False
    assert result.distance_km == 12.3
    assert result.duration_minutes == 26
    assert result.distance_text == "12.3 km"


def test_trip_distance_is_cached(tmp_path):
    calls = []

    def handler(request):
        calls.append(request)
        return _matrix_ok(request)

    estimator = _estimator(tmp_path, handler)
    first = estimator.trip_distance(*SAN_SALVADOR, *SANTA_TECLA)
    # Sub-meter jitter maps to the same key.
    second = estimator.trip_distance(SAN_SALVADOR[0] + 0.00001, SAN_SALVADOR[1], *SANTA_TECLA)
    assert first == second
    assert len(calls) == 1

    fresh = DistanceEstimator(
        api_key="test-key",
        cache=DistanceCache(db_path=str(tmp_path / "cache.sqlite3")),
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
    )
    assert fresh.trip_distance(*SAN_SALVADOR, *SANTA_TECLA).distance_km == 12.3
    assert len(calls) == 1


def test_unconfigured_provider_falls_back(tmp_path):
    def handler(request):
        raise AssertionError("provider must not be called without an api key")

    estimator = _estimator(tmp_path, handler, api_key="")
    result = estimator.trip_distance(*SAN_SALVADOR, *SAN_MIGUEL)
    assert result.is_fallback is True
    assert result.fallback_reason == "not_configured"
    assert result.distance_km == pytest.approx(_expected_fallback_km(SAN_SALVADOR, SAN_MIGUEL), abs=0.05)
    assert result.distance_text.startswith("~")
    assert result.duration_minutes == round(_expected_fallback_km(SAN_SALVADOR, SAN_MIGUEL) / 30 * 60)


@pytest.mark.parametrize(
    ("handler", "reason"),
    [
        (lambda request: httpx.Response(500, json={}), "http_500"),
        (lambda request: httpx.Response(200, json={"status": "REQUEST_DENIED"}), "provider_status_REQUEST_DENIED"),
        (
            lambda request: httpx.Response(200, json={"status": "OK", "rows": [{"elements": [{"status": "ZERO_RESULTS"}]}]}),
            "element_status_ZERO_RESULTS",
        ),
        (lambda request: httpx.Response(200, content=b"not json"), "invalid_response"),
        (lambda request: httpx.Response(200, json={"status": "OK", "rows": []}), "invalid_response"),
    ],
)
def test_provider_failures_are_tagged_fallbacks(tmp_path, handler, reason):
    estimator = _estimator(tmp_path, handler)
    result = estimator.trip_distance(*SAN_SALVADOR, *SANTA_TECLA)
    assert result.is_fallback is True
    assert result.fallback_reason == reason
    assert result.distance_km == pytest.approx(_expected_fallback_km(SAN_SALVADOR, SANTA_TECLA), abs=0.05)


def test_timeout_falls_back_and_is_not_cached(tmp_path):
    state = {"fail": True}

    def handler(request):
        if state["fail"]:
            raise httpx.ReadTimeout("slow", request=request)
        return _matrix_ok(request)

    estimator = _estimator(tmp_path, handler)
    degraded = estimator.trip_distance(*SAN_SALVADOR, *SANTA_TECLA)
    assert degraded.is_fallback is True
    assert degraded.fallback_reason == "timeout"

    state["fail"] = False
    recovered = estimator.trip_distance(*SAN_SALVADOR, *SANTA_TECLA)
    assert recovered.is_fallback is False


def test_network_error_falls_back(tmp_path):
    def handler(request):
        raise httpx.ConnectError("down", request=request)

    result = _estimator(tmp_path, handler).trip_distance(*SAN_SALVADOR, *SANTA_TECLA)
    assert result.fallback_reason == "network_error"


def test_points_outside_service_area_are_rejected(tmp_path):
    estimator = _estimator(tmp_path, _matrix_ok)
    with pytest.raises(CoordinateValidationError):
        estimator.trip_distance(40.7128, -74.0060, *SANTA_TECLA)
    with pytest.raises(CoordinateValidationError):
        estimator.eta(*SAN_SALVADOR, 19.4326, -99.1332)


def test_trip_shorter_than_minimum_is_rejected(tmp_path):
    estimator = _estimator(tmp_path, _matrix_ok)
    with pytest.raises(CoordinateValidationError, match="too close"):
        estimator.trip_distance(*SAN_SALVADOR, SAN_SALVADOR[0] + 0.001, SAN_SALVADOR[1])


def test_eta_prefers_traffic_duration_and_returns_polyline(tmp_path):
    def handler(request):
        assert request.url.params["departure_time"] == "now"
        assert request.url.params["traffic_model"] == "best_guess"
        return httpx.Response(
            200,
            json={
                "status": "OK",
                "routes": [
                    {
                        "legs": [
                            {
                                "distance": {"value": 8200, "text": "8.2 km"},
                                "duration": {"value": 900, "text": "15 min"},
                                "duration_in_traffic": {"value": 1261, "text": "22 min"},
                            }
                        ],
                        "overview_polyline": {"points": "abc123"},
                    }
                ],
            },
        )

    result = _estimator(tmp_path, handler, with_cache=False).eta(*SAN_SALVADOR, *SANTA_TECLA)
    assert result.is_fallback is False
    assert result.eta_minutes == 22
    assert result.distance_km == 8.2
    assert result.overview_polyline == "abc123"


def test_eta_fallback_has_one_minute_floor(tmp_path):
    estimator = _estimator(tmp_path, lambda request: httpx.Response(503), with_cache=False)
    result = estimator.eta(*SAN_SALVADOR, SAN_SALVADOR[0] + 0.0001, SAN_SALVADOR[1])
    assert result.is_fallback is True
    assert result.eta_minutes == 1
    assert result.overview_polyline is None


def test_expired_cache_entries_are_ignored(tmp_path):
    cache = DistanceCache(db_path=str(tmp_path / "cache.sqlite3"), ttl_hours=1)
    estimator = DistanceEstimator(
        api_key="test-key",
        cache=cache,
        http_client=httpx.Client(transport=httpx.MockTransport(_matrix_ok)),
    )
    estimator.trip_distance(*SAN_SALVADOR, *SANTA_TECLA)
    key = DistanceCache.key(*SAN_SALVADOR, *SANTA_TECLA)
    assert cache.get(key) is not None

    cache.ttl_seconds = -1
    assert cache.get(key) is None
    assert cache.clear() == 0
