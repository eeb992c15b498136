from typing import Any, Dict, Optional, Tuple

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from app.models import DistanceResult, EtaResult, RpcFailure
from app.services.distance_estimator import CoordinateValidationError, distance_estimator

router = APIRouter(prefix="/geo", tags=["geo"])

Coordinates = Tuple[float, float, float, float]


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _parse_pair(value: Any) -> Optional[Tuple[float, float]]:
    if not isinstance(value, str):
        return None
    parts = value.split(",")
    if len(parts) != 2:
        return None
    try:
        return float(parts[0]), float(parts[1])
    except ValueError:
        return None


def parse_coordinates(payload: Dict[str, Any], origin: str, destination: str) -> Optional[Coordinates]:
    """Accept ``{origin_lat, origin_lng, ...}`` or ``{origin: "lat,lng", ...}``."""
    explicit = [
        _as_float(payload.get(f"{origin}_lat")),
        _as_float(payload.get(f"{origin}_lng")),
        _as_float(payload.get(f"{destination}_lat")),
        _as_float(payload.get(f"{destination}_lng")),
    ]
    if all(value is not None for value in explicit):
        return tuple(explicit)  # type: ignore[return-value]
    start = _parse_pair(payload.get(origin))
    end = _parse_pair(payload.get(destination))
    if start and end:
        return start[0], start[1], end[0], end[1]
    return None


async def _read_json(request: Request) -> Optional[Dict[str, Any]]:
    try:
        payload = await request.json()
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


def _failure(message: str) -> JSONResponse:
    return JSONResponse(status_code=400, content=RpcFailure(error=message).model_dump())


@router.post("/distance", response_model=DistanceResult)
async def calculate_distance(request: Request):
    payload = await _read_json(request)
    if payload is None:
        return _failure("Invalid JSON body")
    coords = parse_coordinates(payload, "origin", "destination")
    if coords is None:
        return _failure(
            'Invalid coordinates. Send {origin_lat, origin_lng, destination_lat, destination_lng} '
            'or {origin: "lat,lng", destination: "lat,lng"}'
        )
    try:
        return await run_in_threadpool(distance_estimator.trip_distance, *coords)
    except CoordinateValidationError as exc:
        return _failure(str(exc))


@router.post("/eta", response_model=EtaResult)
async def get_eta(request: Request):
    payload = await _read_json(request)
    if payload is None:
        return _failure("Invalid JSON body")
    coords = parse_coordinates(payload, "operator", "destination")
    if coords is None:
        return _failure(
            'Invalid coordinates. Send {operator_lat, operator_lng, destination_lat, destination_lng} '
            'or {operator: "lat,lng", destination: "lat,lng"}'
        )
    try:
        return await run_in_threadpool(distance_estimator.eta, *coords)
    except CoordinateValidationError as exc:
        return _failure(str(exc))
