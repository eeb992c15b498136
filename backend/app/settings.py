import os
from pathlib import Path
from typing import Tuple

DATA_DIR = Path(__file__).resolve().parents[1] / "data"


def read_int_env(name: str, default: int, *, minimum: int = 1) -> int:
    try:
        value = int(os.getenv(name, str(default)))
    except ValueError:
        return default
    return value if value >= minimum else default


def read_float_env(name: str, default: float, *, minimum: float = 0.0) -> float:
    try:
        value = float(os.getenv(name, str(default)))
    except ValueError:
        return default
    return value if value > minimum else default


def read_bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def read_bounds_env(name: str, default: Tuple[float, float, float, float]) -> Tuple[float, float, float, float]:
    """Parse ``min_lat,max_lat,min_lng,max_lng``; anything malformed yields ``default``."""
    parts = parse_csv_env(name, "")
    if len(parts) != 4:
        return default
    try:
        min_lat, max_lat, min_lng, max_lng = (float(part) for part in parts)
    except ValueError:
        return default
    if min_lat >= max_lat or min_lng >= max_lng:
        return default
    return min_lat, max_lat, min_lng, max_lng


# El Salvador envelope.
DEFAULT_SERVICE_AREA_BOUNDS = (13.0, 14.5, -90.2, -87.5)
