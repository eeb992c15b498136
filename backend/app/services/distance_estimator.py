import json
import logging
import math
import os
import sqlite3
import time
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional, Tuple

import httpx

from app.models import DistanceResult, EtaResult
from app.services.geodesy import road_distance_km
from app.settings import (
    DATA_DIR,
    DEFAULT_SERVICE_AREA_BOUNDS,
    read_bounds_env,
    read_float_env,
    read_int_env,
)

logger = logging.getLogger(__name__)

DISTANCE_MATRIX_URL = "https://maps.googleapis.com/maps/api/distancematrix/json"
DIRECTIONS_URL = "https://maps.googleapis.com/maps/api/directions/json"

TRIP_FALLBACK_SPEED_KMH = 30.0
ETA_FALLBACK_SPEED_KMH = 25.0


class CoordinateValidationError(ValueError):
    pass


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _round_km(value: float) -> float:
    return _round_half_up(value * 10) / 10


def fallback_trip(origin_lat: float, origin_lng: float, dest_lat: float, dest_lng: float, reason: str) -> DistanceResult:
    distance_km = road_distance_km(origin_lat, origin_lng, dest_lat, dest_lng)
    duration_minutes = _round_half_up(distance_km / TRIP_FALLBACK_SPEED_KMH * 60)
    return DistanceResult(
        distance_km=_round_km(distance_km),
        distance_text=f"~{_round_half_up(distance_km)} km",
        duration_minutes=duration_minutes,
        duration_text=f"~{duration_minutes} min",
        is_fallback=True,
        fallback_reason=reason,
    )


def fallback_eta(op_lat: float, op_lng: float, dest_lat: float, dest_lng: float, reason: str) -> EtaResult:
    distance_km = road_distance_km(op_lat, op_lng, dest_lat, dest_lng)
    eta_minutes = max(1, _round_half_up(distance_km / ETA_FALLBACK_SPEED_KMH * 60))
    return EtaResult(
        eta_minutes=eta_minutes,
        eta_text=f"~{eta_minutes} min",
        distance_km=_round_km(distance_km),
        distance_text=f"~{_round_half_up(distance_km)} km",
        is_fallback=True,
        fallback_reason=reason,
    )


class DistanceCache:
    """Trip-distance cache: in-process dict in front of a sqlite table.

    Keys round coordinates to 4 decimals (about 11 m) so GPS jitter still hits.
    """

    def __init__(self, db_path: str, ttl_hours: int = 24) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.ttl_seconds = ttl_hours * 3600
        self._lock = Lock()
        self._memory: Dict[str, Tuple[float, DistanceResult]] = {}
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS distance_cache (
                        cache_key TEXT PRIMARY KEY,
                        payload_json TEXT NOT NULL,
                        cached_at REAL NOT NULL
                    )
                    """
                )
                conn.commit()

    @staticmethod
    def key(origin_lat: float, origin_lng: float, dest_lat: float, dest_lng: float) -> str:
        return f"{origin_lat:.4f},{origin_lng:.4f}:{dest_lat:.4f},{dest_lng:.4f}"

    def get(self, key: str) -> Optional[DistanceResult]:
        now = time.time()
        with self._lock:
            hit = self._memory.get(key)
            if hit and now - hit[0] <= self.ttl_seconds:
                return hit[1]
            self._memory.pop(key, None)
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT payload_json, cached_at FROM distance_cache WHERE cache_key = ?",
                    (key,),
                ).fetchone()
                if not row:
                    return None
                if now - float(row["cached_at"]) > self.ttl_seconds:
                    conn.execute("DELETE FROM distance_cache WHERE cache_key = ?", (key,))
                    conn.commit()
                    return None
            try:
                result = DistanceResult.model_validate_json(row["payload_json"])
            except ValueError:
                logger.warning("Discarding unreadable distance cache entry %s", key)
                return None
            self._memory[key] = (float(row["cached_at"]), result)
            return result

    def set(self, key: str, result: DistanceResult) -> None:
        now = time.time()
        with self._lock:
            self._memory[key] = (now, result)
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO distance_cache (cache_key, payload_json, cached_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(cache_key) DO UPDATE SET payload_json = excluded.payload_json, cached_at = excluded.cached_at
                    """,
                    (key, result.model_dump_json(), now),
                )
                conn.commit()

    def clear(self) -> int:
        with self._lock:
            self._memory.clear()
            with self._connect() as conn:
                removed = conn.execute("DELETE FROM distance_cache").rowcount
                conn.commit()
        return removed


class DistanceEstimator:
    """Driving distance/ETA from the mapping provider, degrading to Haversine x 1.3."""

    def __init__(
        self,
        *,
        api_key: str = "",
        timeout_seconds: float = 10.0,
        bounds: Tuple[float, float, float, float] = DEFAULT_SERVICE_AREA_BOUNDS,
        min_trip_km: float = 0.5,
        cache: Optional[DistanceCache] = None,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self.api_key = api_key.strip()
        self.timeout_seconds = timeout_seconds
        self.bounds = bounds
        self.min_trip_km = min_trip_km
        self.cache = cache
        self._http = http_client or httpx.Client(timeout=timeout_seconds)
        if not self.api_key:
            logger.warning("Mapping provider disabled: GOOGLE_MAPS_API_KEY not set, estimates use fallback")

    @classmethod
    def from_env(cls) -> "DistanceEstimator":
        default_cache = str(DATA_DIR / "distance_cache.sqlite3")
        cache = DistanceCache(
            db_path=os.getenv("DISTANCE_CACHE_DB_PATH", default_cache),
            ttl_hours=read_int_env("DISTANCE_CACHE_TTL_HOURS", 24),
        )
        return cls(
            api_key=os.getenv("GOOGLE_MAPS_API_KEY", ""),
            timeout_seconds=read_float_env("MAPS_TIMEOUT_SECONDS", 10.0),
            bounds=read_bounds_env("SERVICE_AREA_BOUNDS", DEFAULT_SERVICE_AREA_BOUNDS),
            min_trip_km=read_float_env("MIN_TRIP_DISTANCE_KM", 0.5),
            cache=cache,
        )

    @property
    def provider_configured(self) -> bool:
        return bool(self.api_key)

    def in_service_area(self, lat: float, lng: float) -> bool:
        if math.isnan(lat) or math.isnan(lng):
            return False
        min_lat, max_lat, min_lng, max_lng = self.bounds
        return min_lat <= lat <= max_lat and min_lng <= lng <= max_lng

    def validate_point(self, lat: float, lng: float, *, label: str) -> None:
        if not self.in_service_area(lat, lng):
            raise CoordinateValidationError(f"Invalid {label} coordinates or outside the service area")

    def validate_trip(self, origin_lat: float, origin_lng: float, dest_lat: float, dest_lng: float) -> None:
        self.validate_point(origin_lat, origin_lng, label="origin")
        self.validate_point(dest_lat, dest_lng, label="destination")
        if road_distance_km(origin_lat, origin_lng, dest_lat, dest_lng) < self.min_trip_km:
            raise CoordinateValidationError(
                f"Origin and destination are too close (less than {int(self.min_trip_km * 1000)} m)"
            )

    def trip_distance(self, origin_lat: float, origin_lng: float, dest_lat: float, dest_lng: float) -> DistanceResult:
        self.validate_trip(origin_lat, origin_lng, dest_lat, dest_lng)
        cache_key = DistanceCache.key(origin_lat, origin_lng, dest_lat, dest_lng)
        if self.cache is not None:
            cached = self.cache.get(cache_key)
            if cached is not None:
                self._log_estimate("trip", cached, cache_hit=True)
                return cached

        result = self._provider_trip(origin_lat, origin_lng, dest_lat, dest_lng)
        if result.is_fallback:
            self._log_estimate("trip", result, cache_hit=False)
            return result
        if self.cache is not None:
            self.cache.set(cache_key, result)
        self._log_estimate("trip", result, cache_hit=False)
        return result

    def eta(self, op_lat: float, op_lng: float, dest_lat: float, dest_lng: float) -> EtaResult:
        self.validate_point(op_lat, op_lng, label="operator")
        self.validate_point(dest_lat, dest_lng, label="destination")
        result = self._provider_eta(op_lat, op_lng, dest_lat, dest_lng)
        self._log_estimate("eta", result, cache_hit=False)
        return result

    def _provider_trip(self, origin_lat: float, origin_lng: float, dest_lat: float, dest_lng: float) -> DistanceResult:
        if not self.provider_configured:
            return fallback_trip(origin_lat, origin_lng, dest_lat, dest_lng, "not_configured")
        data, reason = self._fetch_json(
            DISTANCE_MATRIX_URL,
            {
                "origins": f"{origin_lat},{origin_lng}",
                "destinations": f"{dest_lat},{dest_lng}",
                "mode": "driving",
                "units": "metric",
                "language": "es",
                "key": self.api_key,
            },
        )
        if data is None:
            return fallback_trip(origin_lat, origin_lng, dest_lat, dest_lng, reason)
        try:
            element = data["rows"][0]["elements"][0]
            if element.get("status") != "OK":
                return fallback_trip(
                    origin_lat, origin_lng, dest_lat, dest_lng, f"element_status_{element.get('status')}"
                )
            distance_km = float(element["distance"]["value"]) / 1000
            duration_minutes = _round_half_up(float(element["duration"]["value"]) / 60)
            return DistanceResult(
                distance_km=_round_km(distance_km),
                distance_text=str(element["distance"].get("text") or f"{_round_km(distance_km)} km"),
                duration_minutes=duration_minutes,
                duration_text=str(element["duration"].get("text") or f"{duration_minutes} min"),
                is_fallback=False,
            )
        except (KeyError, IndexError, TypeError, ValueError):
            logger.warning("Mapping provider returned an unexpected distance payload")
            return fallback_trip(origin_lat, origin_lng, dest_lat, dest_lng, "invalid_response")

    def _provider_eta(self, op_lat: float, op_lng: float, dest_lat: float, dest_lng: float) -> EtaResult:
        if not self.provider_configured:
            return fallback_eta(op_lat, op_lng, dest_lat, dest_lng, "not_configured")
        data, reason = self._fetch_json(
            DIRECTIONS_URL,
            {
                "origin": f"{op_lat},{op_lng}",
                "destination": f"{dest_lat},{dest_lng}",
                "mode": "driving",
                "departure_time": "now",
                "traffic_model": "best_guess",
                "language": "es",
                "key": self.api_key,
            },
        )
        if data is None:
            return fallback_eta(op_lat, op_lng, dest_lat, dest_lng, reason)
        try:
            route = data["routes"][0]
            leg = route["legs"][0]
            duration = leg.get("duration_in_traffic") or leg["duration"]
            eta_minutes = max(1, math.ceil(float(duration["value"]) / 60))
            distance_km = float(leg["distance"]["value"]) / 1000
            polyline = (route.get("overview_polyline") or {}).get("points")
            return EtaResult(
                eta_minutes=eta_minutes,
                eta_text=str(duration.get("text") or f"{eta_minutes} min"),
                distance_km=_round_km(distance_km),
                distance_text=str(leg["distance"].get("text") or f"{_round_km(distance_km)} km"),
                is_fallback=False,
                overview_polyline=polyline or None,
            )
        except (KeyError, IndexError, TypeError, ValueError):
            logger.warning("Mapping provider returned an unexpected directions payload")
            return fallback_eta(op_lat, op_lng, dest_lat, dest_lng, "invalid_response")

    def _fetch_json(self, url: str, params: Dict[str, str]) -> Tuple[Optional[Dict[str, Any]], str]:
        try:
            response = self._http.get(url, params=params, timeout=self.timeout_seconds)
        except httpx.TimeoutException:
            logger.warning("Mapping provider timed out after %.1fs", self.timeout_seconds)
            return None, "timeout"
        except httpx.HTTPError as exc:
            logger.warning("Mapping provider unreachable: %s", exc.__class__.__name__)
            return None, "network_error"
        if response.status_code >= 400:
            logger.warning("Mapping provider HTTP error: %s", response.status_code)
            return None, f"http_{response.status_code}"
        try:
            data = response.json()
        except ValueError:
            logger.warning("Mapping provider returned non-JSON body")
            return None, "invalid_response"
        if not isinstance(data, dict):
            return None, "invalid_response"
        status = str(data.get("status", ""))
        if status != "OK":
            logger.warning("Mapping provider status %s (%s)", status, data.get("error_message", ""))
            return None, f"provider_status_{status or 'MISSING'}"
        return data, ""

    def _log_estimate(self, kind: str, result: Any, *, cache_hit: bool) -> None:
        payload = {
            "kind": kind,
            "is_fallback": bool(result.is_fallback),
            "fallback_reason": result.fallback_reason,
            "distance_km": result.distance_km,
            "cache_hit": cache_hit,
        }
        logger.info("distance_estimate=%s", json.dumps(payload, sort_keys=True))

    def close(self) -> None:
        self._http.close()


distance_estimator = DistanceEstimator.from_env()
