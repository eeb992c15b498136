import json
import logging
import os
import re
import secrets
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple
from uuid import uuid4

import bcrypt

from app.models import (
    DistanceResult,
    LocationWithAddress,
    OperatorLocation,
    OperatorPresence,
    OperatorRatingsView,
    PricingRule,
    Profile,
    Provider,
    Rating,
    RatingView,
    RequestEvent,
    RequestMessage,
    ServiceRequest,
    ServiceStats,
    ServiceTypePricing,
)
from app.services.change_feed import (
    AVAILABLE_REQUESTS_TOPIC,
    ChangeFeed,
    change_feed,
    request_topic,
    user_topic,
)
from app.services.pricing import PricingError, compute_flat_price, compute_tow_price
from app.settings import DATA_DIR, parse_csv_env, read_int_env

logger = logging.getLogger(__name__)


OPEN_STATUSES = ("initiated", "assigned", "en_route", "active")
OPERATOR_BUSY_STATUSES = ("assigned", "en_route", "active")
CANCELLABLE_STATUSES = ("initiated", "assigned", "en_route")
CHAT_STATUSES = ("assigned", "en_route", "active")
TERMINAL_STATUSES = {"completed", "cancelled"}

ALLOWED_TRANSITIONS: Dict[str, Set[str]] = {
    "initiated": {"assigned", "cancelled"},
    "assigned": {"en_route", "cancelled"},
    "en_route": {"active", "cancelled"},
    "active": {"completed"},
}

SERVICE_TYPES = {"tow", "battery", "tire", "fuel", "locksmith"}
ROLES = {"USER", "OPERATOR", "ADMIN", "MOP"}

SERVICE_INCIDENT_TYPES = {
    "battery": "Bateria descargada",
    "tire": "Llantas ponchadas",
    "fuel": "Sin combustible",
    "locksmith": "Llaves dentro del vehiculo",
}

PIN_PATTERN = re.compile(r"^\d{4}$")
MESSAGE_MAX_LENGTH = 500
REASON_MAX_LENGTH = 500
COMMENT_MAX_LENGTH = 1000

REQUEST_SELECT = """
    SELECT r.*, op.full_name AS operator_name, pv.name AS provider_name
    FROM service_requests r
    LEFT JOIN profiles op ON op.id = r.operator_id
    LEFT JOIN providers pv ON pv.id = r.provider_id
"""


class RequestStoreError(ValueError):
    """Base class for user-visible request-store errors."""


class RequestStoreValidationError(RequestStoreError):
    pass


class RequestStoreNotFoundError(RequestStoreError):
    pass


class RequestStoreConflictError(RequestStoreError):
    pass


class RequestStorePermissionError(RequestStoreError):
    pass


class RequestUnavailableError(RequestStoreConflictError):
    """Another operator claimed the request first."""

    def __init__(self, message: str = "Request is no longer available") -> None:
        super().__init__(message)


class PinLockedError(RequestStoreConflictError):
    def __init__(self, locked_until: str) -> None:
        super().__init__("Too many incorrect PIN attempts; try again later")
        self.locked_until = locked_until


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _safe_json_object(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except ValueError:
        return {}
    return value if isinstance(value, dict) else {}


@dataclass
class RequestStore:
    db_path: str
    feed: ChangeFeed = field(default_factory=ChangeFeed)
    pin_hash_rounds: int = 10
    pin_max_attempts: int = 5
    pin_lock_seconds: int = 900
    location_stale_seconds: int = 60

    def __post_init__(self) -> None:
        self._lock = Lock()
        path = Path(self.db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        self._admin_user_ids: Set[str] = set(parse_csv_env("ADMIN_USER_IDS", ""))
        self._mop_user_ids: Set[str] = set(parse_csv_env("MOP_USER_IDS", ""))
        self._init_db()
        self._seed_if_needed()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=10)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS profiles (
                        id TEXT PRIMARY KEY,
                        role TEXT NOT NULL DEFAULT 'USER',
                        full_name TEXT NOT NULL DEFAULT '',
                        phone TEXT NOT NULL DEFAULT '',
                        provider_id TEXT,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS providers (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        tow_type_supported TEXT NOT NULL DEFAULT 'both',
                        is_active INTEGER NOT NULL DEFAULT 1,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS service_requests (
                        id TEXT PRIMARY KEY,
                        user_id TEXT NOT NULL,
                        operator_id TEXT,
                        provider_id TEXT,
                        service_type TEXT NOT NULL,
                        tow_type TEXT,
                        incident_type TEXT NOT NULL DEFAULT '',
                        service_details_json TEXT NOT NULL DEFAULT '{}',
                        notes TEXT,
                        photo_url TEXT,
                        pickup_lat REAL NOT NULL,
                        pickup_lng REAL NOT NULL,
                        pickup_address TEXT NOT NULL,
                        dropoff_lat REAL NOT NULL,
                        dropoff_lng REAL NOT NULL,
                        dropoff_address TEXT NOT NULL,
                        status TEXT NOT NULL,
                        pin_hash TEXT NOT NULL,
                        pin_failed_attempts INTEGER NOT NULL DEFAULT 0,
                        pin_locked_until TEXT,
                        distance_operator_to_pickup_km REAL,
                        distance_pickup_to_dropoff_km REAL,
                        distance_is_fallback INTEGER NOT NULL DEFAULT 0,
                        price_breakdown_json TEXT,
                        total_price REAL,
                        cancellation_reason TEXT,
                        cancelled_by TEXT,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        assigned_at TEXT,
                        en_route_at TEXT,
                        pin_verified_at TEXT,
                        completed_at TEXT,
                        cancelled_at TEXT
                    )
                    """
                )
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_service_requests_status ON service_requests (status, created_at)"
                )
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_service_requests_user ON service_requests (user_id, status)"
                )
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_service_requests_operator ON service_requests (operator_id, status)"
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS request_events (
                        seq INTEGER PRIMARY KEY AUTOINCREMENT,
                        id TEXT NOT NULL UNIQUE,
                        request_id TEXT NOT NULL,
                        actor_id TEXT NOT NULL,
                        actor_role TEXT NOT NULL,
                        event_type TEXT NOT NULL,
                        from_status TEXT,
                        to_status TEXT,
                        payload_json TEXT NOT NULL DEFAULT '{}',
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS ratings (
                        id TEXT PRIMARY KEY,
                        request_id TEXT NOT NULL,
                        rater_user_id TEXT NOT NULL,
                        rated_operator_id TEXT NOT NULL,
                        stars INTEGER NOT NULL,
                        comment TEXT,
                        created_at TEXT NOT NULL,
                        UNIQUE (request_id, rater_user_id)
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS request_messages (
                        seq INTEGER PRIMARY KEY AUTOINCREMENT,
                        id TEXT NOT NULL UNIQUE,
                        request_id TEXT NOT NULL,
                        sender_id TEXT NOT NULL,
                        message TEXT NOT NULL,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS operator_locations (
                        operator_id TEXT PRIMARY KEY,
                        lat REAL NOT NULL,
                        lng REAL NOT NULL,
                        heading REAL,
                        speed REAL,
                        is_online INTEGER NOT NULL DEFAULT 0,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS pricing_rules (
                        id TEXT PRIMARY KEY,
                        base_exit_fee REAL NOT NULL,
                        included_km REAL NOT NULL,
                        price_per_km_light REAL NOT NULL,
                        price_per_km_heavy REAL NOT NULL,
                        currency TEXT NOT NULL DEFAULT 'USD',
                        is_active INTEGER NOT NULL DEFAULT 0,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS service_type_pricing (
                        service_type TEXT PRIMARY KEY,
                        display_name TEXT NOT NULL,
                        base_price REAL NOT NULL,
                        extra_fee REAL NOT NULL DEFAULT 0,
                        currency TEXT NOT NULL DEFAULT 'USD',
                        is_active INTEGER NOT NULL DEFAULT 1,
                        sort_order INTEGER NOT NULL DEFAULT 0
                    )
                    """
                )
                self._ensure_column(conn, "operator_locations", "speed", "REAL")
                self._ensure_column(conn, "service_requests", "distance_is_fallback", "INTEGER NOT NULL DEFAULT 0")
                conn.commit()

    def _ensure_column(self, conn: sqlite3.Connection, table: str, column: str, definition: str) -> None:
        columns = conn.execute(f"PRAGMA table_info({table})").fetchall()
        existing = {row["name"] for row in columns}
        if column in existing:
            return
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")

    def _seed_if_needed(self) -> None:
        now = _utc_now().isoformat()
        seed_service_pricing = [
            ("battery", "Bateria", 25.0, 0.0, 1),
            ("tire", "Llanta", 20.0, 15.0, 2),
            ("fuel", "Combustible", 20.0, 5.0, 3),
            ("locksmith", "Cerrajeria", 30.0, 0.0, 4),
        ]
        with self._lock:
            with self._connect() as conn:
                has_rule = conn.execute("SELECT 1 FROM pricing_rules LIMIT 1").fetchone()
                if not has_rule:
                    conn.execute(
                        """
                        INSERT INTO pricing_rules (
                            id, base_exit_fee, included_km, price_per_km_light, price_per_km_heavy,
                            currency, is_active, created_at, updated_at
                        )
                        VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?)
                        """,
                        ("rule_default", 60.0, 25.0, 2.5, 4.0, "USD", now, now),
                    )
                for service_type, display_name, base_price, extra_fee, sort_order in seed_service_pricing:
                    conn.execute(
                        """
                        INSERT OR IGNORE INTO service_type_pricing (
                            service_type, display_name, base_price, extra_fee, currency, is_active, sort_order
                        )
                        VALUES (?, ?, ?, ?, 'USD', 1, ?)
                        """,
                        (service_type, display_name, base_price, extra_fee, sort_order),
                    )
                conn.commit()

    def _row_to_profile(self, row: sqlite3.Row) -> Profile:
        return Profile(
            id=row["id"],
            role=row["role"],
            full_name=row["full_name"] or "",
            phone=row["phone"] or "",
            provider_id=row["provider_id"],
            provider_name=row["provider_name"] if "provider_name" in row.keys() else None,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_provider(self, row: sqlite3.Row) -> Provider:
        return Provider(
            id=row["id"],
            name=row["name"],
            tow_type_supported=row["tow_type_supported"],
            is_active=bool(row["is_active"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_request(self, row: sqlite3.Row) -> ServiceRequest:
        breakdown = _safe_json_object(row["price_breakdown_json"]) or None
        return ServiceRequest(
            id=row["id"],
            user_id=row["user_id"],
            operator_id=row["operator_id"],
            provider_id=row["provider_id"],
            service_type=row["service_type"],
            tow_type=row["tow_type"],
            incident_type=row["incident_type"] or "",
            service_details=_safe_json_object(row["service_details_json"]),
            notes=row["notes"],
            photo_url=row["photo_url"],
            pickup_lat=row["pickup_lat"],
            pickup_lng=row["pickup_lng"],
            pickup_address=row["pickup_address"],
            dropoff_lat=row["dropoff_lat"],
            dropoff_lng=row["dropoff_lng"],
            dropoff_address=row["dropoff_address"],
            status=row["status"],
            distance_operator_to_pickup_km=row["distance_operator_to_pickup_km"],
            distance_pickup_to_dropoff_km=row["distance_pickup_to_dropoff_km"],
            distance_is_fallback=bool(row["distance_is_fallback"]),
            price_breakdown=breakdown,
            total_price=row["total_price"],
            cancellation_reason=row["cancellation_reason"],
            cancelled_by=row["cancelled_by"],
            operator_name=row["operator_name"],
            provider_name=row["provider_name"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            assigned_at=row["assigned_at"],
            en_route_at=row["en_route_at"],
            pin_verified_at=row["pin_verified_at"],
            completed_at=row["completed_at"],
            cancelled_at=row["cancelled_at"],
        )

    def _row_to_event(self, row: sqlite3.Row) -> RequestEvent:
        return RequestEvent(
            id=row["id"],
            seq=row["seq"],
            request_id=row["request_id"],
            actor_id=row["actor_id"],
            actor_role=row["actor_role"],
            event_type=row["event_type"],
            from_status=row["from_status"],
            to_status=row["to_status"],
            payload=_safe_json_object(row["payload_json"]),
            created_at=row["created_at"],
        )

    def _row_to_rating(self, row: sqlite3.Row) -> Rating:
        return Rating(
            id=row["id"],
            request_id=row["request_id"],
            rater_user_id=row["rater_user_id"],
            rated_operator_id=row["rated_operator_id"],
            stars=row["stars"],
            comment=row["comment"],
            created_at=row["created_at"],
        )

    def _row_to_location(self, row: sqlite3.Row) -> OperatorLocation:
        return OperatorLocation(
            operator_id=row["operator_id"],
            lat=row["lat"],
            lng=row["lng"],
            heading=row["heading"],
            speed=row["speed"],
            is_online=bool(row["is_online"]),
            updated_at=row["updated_at"],
        )

    def _row_to_pricing_rule(self, row: sqlite3.Row) -> PricingRule:
        return PricingRule(
            id=row["id"],
            base_exit_fee=row["base_exit_fee"],
            included_km=row["included_km"],
            price_per_km_light=row["price_per_km_light"],
            price_per_km_heavy=row["price_per_km_heavy"],
            currency=row["currency"],
            is_active=bool(row["is_active"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_service_pricing(self, row: sqlite3.Row) -> ServiceTypePricing:
        return ServiceTypePricing(
            service_type=row["service_type"],
            display_name=row["display_name"],
            base_price=row["base_price"],
            extra_fee=row["extra_fee"],
            currency=row["currency"],
            is_active=bool(row["is_active"]),
            sort_order=row["sort_order"],
        )

    def _fetch_request_row(self, conn: sqlite3.Connection, request_id: str) -> sqlite3.Row:
        row = conn.execute(REQUEST_SELECT + " WHERE r.id = ?", (request_id,)).fetchone()
        if not row:
            raise RequestStoreNotFoundError("Request not found")
        return row

    def _require_profile(self, conn: sqlite3.Connection, user_id: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM profiles WHERE id = ?", (user_id,)).fetchone()
        if not row:
            raise RequestStorePermissionError("Unknown user")
        return row

    def _require_role(self, conn: sqlite3.Connection, user_id: str, roles: Iterable[str]) -> sqlite3.Row:
        row = self._require_profile(conn, user_id)
        allowed = set(roles)
        if row["role"] not in allowed:
            raise RequestStorePermissionError(f"Requires role: {', '.join(sorted(allowed))}")
        return row

    def _append_event(
        self,
        conn: sqlite3.Connection,
        *,
        request_id: str,
        actor_id: str,
        actor_role: str,
        event_type: str,
        from_status: Optional[str] = None,
        to_status: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        conn.execute(
            """
            INSERT INTO request_events (id, request_id, actor_id, actor_role, event_type, from_status, to_status, payload_json, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                f"evt_{uuid4().hex[:12]}",
                request_id,
                actor_id,
                actor_role,
                event_type,
                from_status,
                to_status,
                json.dumps(payload or {}, sort_keys=True),
                _utc_now().isoformat(),
            ),
        )

    def _apply_transition(
        self,
        conn: sqlite3.Connection,
        *,
        request_id: str,
        from_statuses: Tuple[str, ...],
        to_status: str,
        assignments: Dict[str, Any],
        extra_where: str = "",
        extra_params: Tuple[Any, ...] = (),
    ) -> bool:
        """Conditional write: succeeds only while the row is still in ``from_statuses``."""
        now = _utc_now().isoformat()
        columns = {"status": to_status, "updated_at": now, **assignments}
        set_clause = ", ".join(f"{column} = ?" for column in columns)
        placeholders = ", ".join("?" for _ in from_statuses)
        cursor = conn.execute(
            f"UPDATE service_requests SET {set_clause} WHERE id = ? AND status IN ({placeholders}){extra_where}",
            (*columns.values(), request_id, *from_statuses, *extra_params),
        )
        return cursor.rowcount == 1

    def _explain_rejected_transition(self, conn: sqlite3.Connection, request_id: str, to_status: str) -> None:
        row = self._fetch_request_row(conn, request_id)
        current = row["status"]
        if current in TERMINAL_STATUSES:
            raise RequestStoreConflictError(f"Request is already {current}")
        if to_status not in ALLOWED_TRANSITIONS.get(current, set()):
            raise RequestStoreConflictError(f"Invalid status transition: {current} -> {to_status}")
        raise RequestStoreConflictError("Request changed concurrently; refresh and retry")

    def _log_transition(self, request_id: str, from_status: Optional[str], to_status: str, actor_role: str, event_type: str) -> None:
        payload = {
            "request_id": request_id,
            "from": from_status,
            "to": to_status,
            "actor_role": actor_role,
            "event_type": event_type,
        }
        logger.info("request_transition=%s", json.dumps(payload, sort_keys=True))

    def _publish_request(self, request: ServiceRequest, *, touches_available: bool = False) -> None:
        topics = [request_topic(request.id), user_topic(request.user_id)]
        if request.operator_id:
            topics.append(user_topic(request.operator_id))
        if touches_available:
            topics.append(AVAILABLE_REQUESTS_TOPIC)
        self.feed.publish("service_requests", request.id, request_id=request.id, topics=topics)

    def _hash_pin(self, pin: str) -> str:
        return bcrypt.hashpw(pin.encode("utf-8"), bcrypt.gensalt(rounds=self.pin_hash_rounds)).decode("utf-8")

    @staticmethod
    def _pin_matches(pin: str, pin_hash: str) -> bool:
        try:
            return bcrypt.checkpw(pin.encode("utf-8"), pin_hash.encode("utf-8"))
        except ValueError:
            logger.error("Stored PIN hash is malformed")
            return False

    def _bootstrap_role(self, user_id: str) -> str:
        if user_id in self._admin_user_ids:
            return "ADMIN"
        if user_id in self._mop_user_ids:
            return "MOP"
        return "USER"

    def ensure_profile(self, user_id: str, *, full_name: str = "", phone: str = "") -> Profile:
        user_id = user_id.strip()
        if not user_id:
            raise RequestStoreValidationError("user_id is required")
        now = _utc_now().isoformat()
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT OR IGNORE INTO profiles (id, role, full_name, phone, provider_id, created_at, updated_at)
                    VALUES (?, ?, ?, ?, NULL, ?, ?)
                    """,
                    (user_id, self._bootstrap_role(user_id), full_name.strip(), phone.strip(), now, now),
                )
                conn.commit()
                row = conn.execute("SELECT * FROM profiles WHERE id = ?", (user_id,)).fetchone()
        return self._row_to_profile(row)

    def get_profile(self, user_id: str) -> Optional[Profile]:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM profiles WHERE id = ?", (user_id,)).fetchone()
        return self._row_to_profile(row) if row else None

    def list_profiles(self, *, actor_user_id: str, role: Optional[str] = None) -> List[Profile]:
        if role is not None and role not in ROLES:
            raise RequestStoreValidationError(f"Invalid role: {role}")
        query = (
            "SELECT p.*, pr.name AS provider_name FROM profiles p"
            " LEFT JOIN providers pr ON pr.id = p.provider_id"
        )
        params: List[Any] = []
        if role:
            query += " WHERE p.role = ?"
            params.append(role)
        with self._lock:
            with self._connect() as conn:
                self._require_role(conn, actor_user_id, {"ADMIN"})
                rows = conn.execute(query + " ORDER BY p.created_at DESC", tuple(params)).fetchall()
        return [self._row_to_profile(row) for row in rows]

    def admin_update_user_role(
        self,
        *,
        actor_user_id: str,
        user_id: str,
        new_role: str,
        provider_id: Optional[str] = None,
    ) -> Profile:
        if new_role not in ROLES:
            raise RequestStoreValidationError(f"Invalid role: {new_role}")
        if new_role == "OPERATOR" and not provider_id:
            raise RequestStoreValidationError("provider_id is required for operators")
        if new_role != "OPERATOR" and provider_id:
            raise RequestStoreValidationError("provider_id is only allowed for operators")

        with self._lock:
            with self._connect() as conn:
                self._require_role(conn, actor_user_id, {"ADMIN"})
                target = conn.execute("SELECT * FROM profiles WHERE id = ?", (user_id,)).fetchone()
                if not target:
                    raise RequestStoreNotFoundError("User not found")
                if provider_id:
                    provider = conn.execute("SELECT id FROM providers WHERE id = ?", (provider_id,)).fetchone()
                    if not provider:
                        raise RequestStoreNotFoundError("Provider not found")
                if target["role"] == "OPERATOR" and new_role != "OPERATOR":
                    busy = conn.execute(
                        f"SELECT 1 FROM service_requests WHERE operator_id = ? AND status IN ({', '.join('?' for _ in OPERATOR_BUSY_STATUSES)})",
                        (user_id, *OPERATOR_BUSY_STATUSES),
                    ).fetchone()
                    if busy:
                        raise RequestStoreConflictError("Operator has an active request")
                conn.execute(
                    "UPDATE profiles SET role = ?, provider_id = ?, updated_at = ? WHERE id = ?",
                    (new_role, provider_id if new_role == "OPERATOR" else None, _utc_now().isoformat(), user_id),
                )
                conn.commit()
                updated = conn.execute("SELECT * FROM profiles WHERE id = ?", (user_id,)).fetchone()
        logger.info("Role of %s changed to %s by %s", user_id, new_role, actor_user_id)
        return self._row_to_profile(updated)

    def create_provider(self, *, actor_user_id: str, name: str, tow_type_supported: str = "both", is_active: bool = True) -> Provider:
        clean_name = name.strip()
        if not clean_name:
            raise RequestStoreValidationError("Provider name is required")
        if tow_type_supported not in {"light", "heavy", "both"}:
            raise RequestStoreValidationError("tow_type_supported must be light, heavy or both")
        now = _utc_now().isoformat()
        provider_id = f"prv_{uuid4().hex[:8]}"
        with self._lock:
            with self._connect() as conn:
                self._require_role(conn, actor_user_id, {"ADMIN"})
                conn.execute(
                    """
                    INSERT INTO providers (id, name, tow_type_supported, is_active, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (provider_id, clean_name, tow_type_supported, int(is_active), now, now),
                )
                conn.commit()
                row = conn.execute("SELECT * FROM providers WHERE id = ?", (provider_id,)).fetchone()
        return self._row_to_provider(row)

    def update_provider(
        self,
        *,
        actor_user_id: str,
        provider_id: str,
        name: Optional[str] = None,
        tow_type_supported: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> Provider:
        if tow_type_supported is not None and tow_type_supported not in {"light", "heavy", "both"}:
            raise RequestStoreValidationError("tow_type_supported must be light, heavy or both")
        if name is not None and not name.strip():
            raise RequestStoreValidationError("Provider name is required")
        with self._lock:
            with self._connect() as conn:
                self._require_role(conn, actor_user_id, {"ADMIN"})
                row = conn.execute("SELECT * FROM providers WHERE id = ?", (provider_id,)).fetchone()
                if not row:
                    raise RequestStoreNotFoundError("Provider not found")
                conn.execute(
                    "UPDATE providers SET name = ?, tow_type_supported = ?, is_active = ?, updated_at = ? WHERE id = ?",
                    (
                        name.strip() if name is not None else row["name"],
                        tow_type_supported or row["tow_type_supported"],
                        int(is_active) if is_active is not None else row["is_active"],
                        _utc_now().isoformat(),
                        provider_id,
                    ),
                )
                conn.commit()
                updated = conn.execute("SELECT * FROM providers WHERE id = ?", (provider_id,)).fetchone()
        return self._row_to_provider(updated)

    def list_providers(self, *, active_only: bool = False) -> List[Provider]:
        query = "SELECT * FROM providers"
        if active_only:
            query += " WHERE is_active = 1"
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(query + " ORDER BY name").fetchall()
        return [self._row_to_provider(row) for row in rows]

    def get_active_pricing_rule(self) -> Optional[PricingRule]:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM pricing_rules WHERE is_active = 1").fetchone()
        return self._row_to_pricing_rule(row) if row else None

    def list_pricing_rules(self) -> List[PricingRule]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute("SELECT * FROM pricing_rules ORDER BY created_at DESC").fetchall()
        return [self._row_to_pricing_rule(row) for row in rows]

    def create_pricing_rule(
        self,
        *,
        actor_user_id: str,
        base_exit_fee: float,
        included_km: float,
        price_per_km_light: float,
        price_per_km_heavy: float,
        currency: str = "USD",
    ) -> PricingRule:
        if min(base_exit_fee, included_km, price_per_km_light, price_per_km_heavy) < 0:
            raise RequestStoreValidationError("Pricing values must be non-negative")
        now = _utc_now().isoformat()
        rule_id = f"rule_{uuid4().hex[:8]}"
        with self._lock:
            with self._connect() as conn:
                self._require_role(conn, actor_user_id, {"ADMIN"})
                conn.execute(
                    """
                    INSERT INTO pricing_rules (
                        id, base_exit_fee, included_km, price_per_km_light, price_per_km_heavy,
                        currency, is_active, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?)
                    """,
                    (rule_id, base_exit_fee, included_km, price_per_km_light, price_per_km_heavy, currency.strip() or "USD", now, now),
                )
                conn.commit()
                row = conn.execute("SELECT * FROM pricing_rules WHERE id = ?", (rule_id,)).fetchone()
        return self._row_to_pricing_rule(row)

    def set_active_pricing_rule(self, *, actor_user_id: str, rule_id: str) -> PricingRule:
        with self._lock:
            with self._connect() as conn:
                self._require_role(conn, actor_user_id, {"ADMIN"})
                exists = conn.execute("SELECT id FROM pricing_rules WHERE id = ?", (rule_id,)).fetchone()
                if not exists:
                    raise RequestStoreNotFoundError("Pricing rule not found")
                # One statement flips every row, so there is never zero or two active rules.
                conn.execute(
                    "UPDATE pricing_rules SET is_active = CASE WHEN id = ? THEN 1 ELSE 0 END, updated_at = ?",
                    (rule_id, _utc_now().isoformat()),
                )
                conn.commit()
                row = conn.execute("SELECT * FROM pricing_rules WHERE id = ?", (rule_id,)).fetchone()
        logger.info("Pricing rule %s activated by %s", rule_id, actor_user_id)
        return self._row_to_pricing_rule(row)

    def delete_pricing_rule(self, *, actor_user_id: str, rule_id: str) -> None:
        with self._lock:
            with self._connect() as conn:
                self._require_role(conn, actor_user_id, {"ADMIN"})
                row = conn.execute("SELECT is_active FROM pricing_rules WHERE id = ?", (rule_id,)).fetchone()
                if not row:
                    raise RequestStoreNotFoundError("Pricing rule not found")
                if row["is_active"]:
                    raise RequestStoreConflictError("The active pricing rule cannot be deleted")
                conn.execute("DELETE FROM pricing_rules WHERE id = ?", (rule_id,))
                conn.commit()

    def list_service_type_pricing(self, *, active_only: bool = False) -> List[ServiceTypePricing]:
        query = "SELECT * FROM service_type_pricing"
        if active_only:
            query += " WHERE is_active = 1"
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(query + " ORDER BY sort_order, service_type").fetchall()
        return [self._row_to_service_pricing(row) for row in rows]

    def upsert_service_type_pricing(
        self,
        *,
        actor_user_id: str,
        service_type: str,
        base_price: float,
        extra_fee: float = 0.0,
        display_name: Optional[str] = None,
        is_active: bool = True,
        sort_order: int = 0,
    ) -> ServiceTypePricing:
        if service_type not in SERVICE_TYPES - {"tow"}:
            raise RequestStoreValidationError("Flat pricing applies to battery, tire, fuel and locksmith only")
        if base_price < 0 or extra_fee < 0:
            raise RequestStoreValidationError("Prices must be non-negative")
        with self._lock:
            with self._connect() as conn:
                self._require_role(conn, actor_user_id, {"ADMIN"})
                if not (display_name or "").strip():
                    existing = conn.execute(
                        "SELECT display_name FROM service_type_pricing WHERE service_type = ?", (service_type,)
                    ).fetchone()
                    display_name = existing["display_name"] if existing else service_type
                conn.execute(
                    """
                    INSERT INTO service_type_pricing (service_type, display_name, base_price, extra_fee, currency, is_active, sort_order)
                    VALUES (?, ?, ?, ?, 'USD', ?, ?)
                    ON CONFLICT(service_type) DO UPDATE SET
                        display_name = excluded.display_name,
                        base_price = excluded.base_price,
                        extra_fee = excluded.extra_fee,
                        is_active = excluded.is_active,
                        sort_order = excluded.sort_order
                    """,
                    (service_type, display_name.strip(), base_price, extra_fee, int(is_active), sort_order),
                )
                conn.commit()
                row = conn.execute("SELECT * FROM service_type_pricing WHERE service_type = ?", (service_type,)).fetchone()
        return self._row_to_service_pricing(row)

    def _active_rule(self, conn: sqlite3.Connection) -> Optional[PricingRule]:
        row = conn.execute("SELECT * FROM pricing_rules WHERE is_active = 1").fetchone()
        return self._row_to_pricing_rule(row) if row else None

    def _price_request(
        self,
        conn: sqlite3.Connection,
        *,
        service_type: str,
        tow_type: Optional[str],
        service_details: Dict[str, Any],
        trip_km: Optional[float],
        approach_km: Optional[float] = None,
    ) -> Tuple[Optional[Dict[str, Any]], Optional[float]]:
        if service_type == "tow":
            rule = self._active_rule(conn)
            if rule is None or trip_km is None or tow_type is None:
                return None, None
            breakdown = compute_tow_price(
                rule,
                tow_type=tow_type,
                distance_km=trip_km,
                distance_operator_to_pickup_km=approach_km,
            )
            return breakdown.model_dump(), breakdown.total
        row = conn.execute(
            "SELECT * FROM service_type_pricing WHERE service_type = ? AND is_active = 1",
            (service_type,),
        ).fetchone()
        if not row:
            raise RequestStoreValidationError(f"Service type {service_type} is not available")
        flat = compute_flat_price(self._row_to_service_pricing(row), service_details)
        return flat.model_dump(), flat.total

    def create_service_request(
        self,
        *,
        actor_user_id: str,
        pickup: LocationWithAddress,
        dropoff: Optional[LocationWithAddress],
        service_type: str,
        tow_type: Optional[str] = None,
        incident_type: str = "",
        service_details: Optional[Dict[str, Any]] = None,
        notes: Optional[str] = None,
        photo_url: Optional[str] = None,
        trip: Optional[DistanceResult] = None,
    ) -> Tuple[ServiceRequest, str]:
        """Create a request in ``initiated`` and return it with the plaintext PIN.

        The PIN is only ever returned here; the store keeps its bcrypt hash.
        """
        if service_type not in SERVICE_TYPES:
            raise RequestStoreValidationError(f"Unknown service_type: {service_type}")
        if not pickup.address.strip():
            raise RequestStoreValidationError("Pickup address is required")
        details = dict(service_details or {})

        if service_type == "tow":
            if dropoff is None or not dropoff.address.strip():
                raise RequestStoreValidationError("Dropoff location is required for tow requests")
            if tow_type not in {"light", "heavy"}:
                raise RequestStoreValidationError("tow_type must be light or heavy for tow requests")
            if not incident_type.strip():
                raise RequestStoreValidationError("incident_type is required for tow requests")
            effective_dropoff = dropoff
            effective_incident = incident_type.strip()
        else:
            effective_dropoff = pickup
            tow_type = None
            effective_incident = incident_type.strip() or SERVICE_INCIDENT_TYPES[service_type]

        pin = f"{secrets.randbelow(9000) + 1000}"
        pin_hash = self._hash_pin(pin)
        request_id = str(uuid4())
        now = _utc_now().isoformat()
        trip_km = trip.distance_km if trip is not None and service_type == "tow" else None
        open_placeholders = ", ".join("?" for _ in OPEN_STATUSES)

        with self._lock:
            with self._connect() as conn:
                self._require_role(conn, actor_user_id, {"USER"})
                try:
                    breakdown, total_price = self._price_request(
                        conn,
                        service_type=service_type,
                        tow_type=tow_type,
                        service_details=details,
                        trip_km=trip_km,
                    )
                except PricingError as exc:
                    raise RequestStoreValidationError(str(exc)) from exc

                # Insert only while the user has no open request.
                cursor = conn.execute(
                    f"""
                    INSERT INTO service_requests (
                        id, user_id, service_type, tow_type, incident_type, service_details_json, notes, photo_url,
                        pickup_lat, pickup_lng, pickup_address, dropoff_lat, dropoff_lng, dropoff_address,
                        status, pin_hash, distance_pickup_to_dropoff_km, distance_is_fallback,
                        price_breakdown_json, total_price, created_at, updated_at
                    )
                    SELECT ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'initiated', ?, ?, ?, ?, ?, ?, ?
                    WHERE NOT EXISTS (
                        SELECT 1 FROM service_requests WHERE user_id = ? AND status IN ({open_placeholders})
                    )
                    """,
                    (
                        request_id,
                        actor_user_id,
                        service_type,
                        tow_type,
                        effective_incident,
                        json.dumps(details, sort_keys=True),
                        (notes or "").strip() or None,
                        photo_url,
                        pickup.lat,
                        pickup.lng,
                        pickup.address.strip(),
                        effective_dropoff.lat,
                        effective_dropoff.lng,
                        effective_dropoff.address.strip(),
                        pin_hash,
                        trip_km,
                        int(bool(trip and trip.is_fallback)) if trip_km is not None else 0,
                        json.dumps(breakdown, sort_keys=True) if breakdown else None,
                        total_price,
                        now,
                        now,
                        actor_user_id,
                        *OPEN_STATUSES,
                    ),
                )
                if cursor.rowcount != 1:
                    raise RequestStoreConflictError("User already has an active request")
                self._append_event(
                    conn,
                    request_id=request_id,
                    actor_id=actor_user_id,
                    actor_role="USER",
                    event_type="REQUEST_CREATED",
                    to_status="initiated",
                    payload={"service_type": service_type, "tow_type": tow_type},
                )
                if total_price is not None:
                    self._append_event(
                        conn,
                        request_id=request_id,
                        actor_id="system",
                        actor_role="SYSTEM",
                        event_type="PRICE_COMPUTED",
                        payload={"stage": "estimate", "total_price": total_price},
                    )
                conn.commit()
                request = self._row_to_request(self._fetch_request_row(conn, request_id))

        self._log_transition(request_id, None, "initiated", "USER", "REQUEST_CREATED")
        self._publish_request(request, touches_available=True)
        return request, pin

    def _can_view(self, conn: sqlite3.Connection, row: sqlite3.Row, actor_user_id: str) -> bool:
        if actor_user_id in {row["user_id"], row["operator_id"]}:
            return True
        profile = conn.execute("SELECT role FROM profiles WHERE id = ?", (actor_user_id,)).fetchone()
        if not profile:
            return False
        if profile["role"] in {"ADMIN", "MOP"}:
            return True
        return profile["role"] == "OPERATOR" and row["status"] == "initiated"

    def get_request(self, request_id: str, *, actor_user_id: str) -> ServiceRequest:
        with self._lock:
            with self._connect() as conn:
                row = self._fetch_request_row(conn, request_id)
                if not self._can_view(conn, row, actor_user_id):
                    raise RequestStorePermissionError("Not allowed to view this request")
        return self._row_to_request(row)

    def list_requests_for_user(self, user_id: str, *, role: Optional[str] = None) -> List[ServiceRequest]:
        normalized = role.strip().lower() if role else None
        if normalized not in {None, "all", "user", "operator"}:
            raise RequestStoreValidationError("Invalid role value. Allowed: all, user, operator")
        if normalized == "user":
            where, params = "r.user_id = ?", (user_id,)
        elif normalized == "operator":
            where, params = "r.operator_id = ?", (user_id,)
        else:
            where, params = "(r.user_id = ? OR r.operator_id = ?)", (user_id, user_id)
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(REQUEST_SELECT + f" WHERE {where} ORDER BY r.created_at DESC", params).fetchall()
        return [self._row_to_request(row) for row in rows]

    def get_active_request(self, user_id: str) -> Optional[ServiceRequest]:
        placeholders = ", ".join("?" for _ in OPEN_STATUSES)
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    REQUEST_SELECT
                    + f" WHERE (r.user_id = ? OR r.operator_id = ?) AND r.status IN ({placeholders})"
                    + " ORDER BY r.created_at DESC LIMIT 1",
                    (user_id, user_id, *OPEN_STATUSES),
                ).fetchone()
        return self._row_to_request(row) if row else None

    def list_requests(self, *, actor_user_id: str, status: Optional[str] = None, limit: int = 200) -> List[ServiceRequest]:
        if status is not None and status not in set(OPEN_STATUSES) | TERMINAL_STATUSES:
            raise RequestStoreValidationError(f"Unknown status: {status}")
        query = REQUEST_SELECT
        params: List[Any] = []
        if status:
            query += " WHERE r.status = ?"
            params.append(status)
        query += " ORDER BY r.created_at DESC LIMIT ?"
        params.append(max(1, min(limit, 1000)))
        with self._lock:
            with self._connect() as conn:
                self._require_role(conn, actor_user_id, {"ADMIN", "MOP"})
                rows = conn.execute(query, tuple(params)).fetchall()
        return [self._row_to_request(row) for row in rows]

    def get_available_requests_for_operator(self, operator_id: str) -> List[ServiceRequest]:
        busy_placeholders = ", ".join("?" for _ in OPERATOR_BUSY_STATUSES)
        with self._lock:
            with self._connect() as conn:
                operator = self._require_role(conn, operator_id, {"OPERATOR"})
                busy = conn.execute(
                    f"SELECT 1 FROM service_requests WHERE operator_id = ? AND status IN ({busy_placeholders})",
                    (operator_id, *OPERATOR_BUSY_STATUSES),
                ).fetchone()
                if busy:
                    return []
                provider = None
                if operator["provider_id"]:
                    provider = conn.execute(
                        "SELECT * FROM providers WHERE id = ?", (operator["provider_id"],)
                    ).fetchone()
                if not provider or not provider["is_active"]:
                    return []
                query = REQUEST_SELECT + " WHERE r.status = 'initiated' AND r.operator_id IS NULL"
                params: List[Any] = []
                if provider["tow_type_supported"] != "both":
                    query += " AND (r.service_type != 'tow' OR r.tow_type = ?)"
                    params.append(provider["tow_type_supported"])
                rows = conn.execute(query + " ORDER BY r.created_at ASC", tuple(params)).fetchall()
        return [self._row_to_request(row) for row in rows]

    def accept_request(
        self,
        request_id: str,
        *,
        operator_id: str,
        approach_km: Optional[float] = None,
    ) -> ServiceRequest:
        """Claim an ``initiated`` request for ``operator_id``.

        The claim is a single conditional UPDATE; concurrent claimers that lose
        see zero affected rows and get ``RequestUnavailableError``.
        """
        busy_placeholders = ", ".join("?" for _ in OPERATOR_BUSY_STATUSES)
        with self._lock:
            with self._connect() as conn:
                operator = self._require_role(conn, operator_id, {"OPERATOR"})
                provider_id = operator["provider_id"]
                provider = (
                    conn.execute("SELECT * FROM providers WHERE id = ?", (provider_id,)).fetchone()
                    if provider_id
                    else None
                )
                if not provider or not provider["is_active"]:
                    raise RequestStorePermissionError("Operator is not linked to an active provider")
                row = self._fetch_request_row(conn, request_id)
                if (
                    row["service_type"] == "tow"
                    and provider["tow_type_supported"] != "both"
                    and provider["tow_type_supported"] != row["tow_type"]
                ):
                    raise RequestStorePermissionError(f"Provider does not handle {row['tow_type']} tows")

                breakdown, total_price = self._price_request(
                    conn,
                    service_type=row["service_type"],
                    tow_type=row["tow_type"],
                    service_details=_safe_json_object(row["service_details_json"]),
                    trip_km=row["distance_pickup_to_dropoff_km"],
                    approach_km=approach_km,
                )
                assignments: Dict[str, Any] = {
                    "operator_id": operator_id,
                    "provider_id": provider_id,
                    "assigned_at": _utc_now().isoformat(),
                    "distance_operator_to_pickup_km": approach_km,
                }
                if breakdown is not None:
                    assignments["price_breakdown_json"] = json.dumps(breakdown, sort_keys=True)
                    assignments["total_price"] = total_price
                claimed = self._apply_transition(
                    conn,
                    request_id=request_id,
                    from_statuses=("initiated",),
                    to_status="assigned",
                    assignments=assignments,
                    extra_where=(
                        " AND operator_id IS NULL AND NOT EXISTS ("
                        f"SELECT 1 FROM service_requests WHERE operator_id = ? AND status IN ({busy_placeholders}))"
                    ),
                    extra_params=(operator_id, *OPERATOR_BUSY_STATUSES),
                )
                if not claimed:
                    busy = conn.execute(
                        f"SELECT 1 FROM service_requests WHERE operator_id = ? AND status IN ({busy_placeholders})",
                        (operator_id, *OPERATOR_BUSY_STATUSES),
                    ).fetchone()
                    if busy:
                        raise RequestStoreConflictError("Operator already has an active request")
                    raise RequestUnavailableError()
                self._append_event(
                    conn,
                    request_id=request_id,
                    actor_id=operator_id,
                    actor_role="OPERATOR",
                    event_type="OPERATOR_ACCEPTED",
                    from_status="initiated",
                    to_status="assigned",
                    payload={"provider_id": provider_id, "distance_operator_to_pickup_km": approach_km},
                )
                conn.commit()
                request = self._row_to_request(self._fetch_request_row(conn, request_id))

        self._log_transition(request_id, "initiated", "assigned", "OPERATOR", "OPERATOR_ACCEPTED")
        self._publish_request(request, touches_available=True)
        return request

    def _operator_transition(
        self,
        request_id: str,
        *,
        operator_id: str,
        from_status: str,
        to_status: str,
        event_type: str,
        assignments: Dict[str, Any],
        payload: Optional[Dict[str, Any]] = None,
    ) -> ServiceRequest:
        with self._lock:
            with self._connect() as conn:
                row = self._fetch_request_row(conn, request_id)
                if row["operator_id"] != operator_id:
                    raise RequestStorePermissionError("Only the assigned operator can do this")
                applied = self._apply_transition(
                    conn,
                    request_id=request_id,
                    from_statuses=(from_status,),
                    to_status=to_status,
                    assignments=assignments,
                    extra_where=" AND operator_id = ?",
                    extra_params=(operator_id,),
                )
                if not applied:
                    self._explain_rejected_transition(conn, request_id, to_status)
                self._append_event(
                    conn,
                    request_id=request_id,
                    actor_id=operator_id,
                    actor_role="OPERATOR",
                    event_type=event_type,
                    from_status=from_status,
                    to_status=to_status,
                    payload=payload,
                )
                if to_status == "completed" and assignments.get("total_price") is not None:
                    self._append_event(
                        conn,
                        request_id=request_id,
                        actor_id="system",
                        actor_role="SYSTEM",
                        event_type="PRICE_COMPUTED",
                        payload={"stage": "final", "total_price": assignments["total_price"]},
                    )
                conn.commit()
                request = self._row_to_request(self._fetch_request_row(conn, request_id))

        self._log_transition(request_id, from_status, to_status, "OPERATOR", event_type)
        self._publish_request(request)
        return request

    def mark_en_route(self, request_id: str, *, operator_id: str) -> ServiceRequest:
        return self._operator_transition(
            request_id,
            operator_id=operator_id,
            from_status="assigned",
            to_status="en_route",
            event_type="OPERATOR_EN_ROUTE",
            assignments={"en_route_at": _utc_now().isoformat()},
        )

    def complete_request(self, request_id: str, *, operator_id: str) -> ServiceRequest:
        with self._lock:
            with self._connect() as conn:
                row = self._fetch_request_row(conn, request_id)
                try:
                    breakdown, total_price = self._price_request(
                        conn,
                        service_type=row["service_type"],
                        tow_type=row["tow_type"],
                        service_details=_safe_json_object(row["service_details_json"]),
                        trip_km=row["distance_pickup_to_dropoff_km"],
                        approach_km=row["distance_operator_to_pickup_km"],
                    )
                except RequestStoreValidationError:
                    # Flat pricing switched off after creation: keep the estimate.
                    breakdown, total_price = None, None

        assignments: Dict[str, Any] = {"completed_at": _utc_now().isoformat()}
        if breakdown is not None:
            assignments["price_breakdown_json"] = json.dumps(breakdown, sort_keys=True)
            assignments["total_price"] = total_price
        return self._operator_transition(
            request_id,
            operator_id=operator_id,
            from_status="active",
            to_status="completed",
            event_type="STATUS_CHANGED",
            assignments=assignments,
            payload={"total_price": total_price},
        )

    def verify_request_pin(self, request_id: str, *, operator_id: str, pin: str) -> bool:
        """Compare ``pin`` with the stored hash; only a boolean ever leaves this method.

        A correct PIN moves ``en_route -> active`` once; repeating it afterwards
        returns True without another event. Failed attempts count towards a lockout.
        """
        with self._lock:
            with self._connect() as conn:
                row = self._fetch_request_row(conn, request_id)
                if row["operator_id"] != operator_id:
                    raise RequestStorePermissionError("Only the assigned operator can verify the PIN")
                status = row["status"]
                pin_hash = row["pin_hash"]
                locked_until = _parse_ts(row["pin_locked_until"])

        already_verified = status in {"active", "completed"} and row["pin_verified_at"]
        if not already_verified:
            if status in TERMINAL_STATUSES:
                raise RequestStoreConflictError(f"Request is already {status}")
            if status != "en_route":
                raise RequestStoreConflictError("PIN can only be verified once the operator is en route")
            if locked_until and locked_until > _utc_now():
                raise PinLockedError(locked_until.isoformat())
        if not PIN_PATTERN.match(pin or ""):
            return False

        matches = self._pin_matches(pin, pin_hash)
        if already_verified:
            return matches

        with self._lock:
            with self._connect() as conn:
                # A lock set while the hash was being compared still applies.
                self._ensure_pin_unlocked(conn, request_id)
                if not matches:
                    self._record_failed_pin(conn, request_id)
                    conn.commit()
                    return False
                now = _utc_now()
                applied = self._apply_transition(
                    conn,
                    request_id=request_id,
                    from_statuses=("en_route",),
                    to_status="active",
                    assignments={
                        "pin_verified_at": now.isoformat(),
                        "pin_failed_attempts": 0,
                        "pin_locked_until": None,
                    },
                    extra_where=" AND operator_id = ? AND (pin_locked_until IS NULL OR pin_locked_until <= ?)",
                    extra_params=(operator_id, now.isoformat()),
                )
                if not applied:
                    current = self._fetch_request_row(conn, request_id)
                    if current["status"] in {"active", "completed"}:
                        return True
                    self._ensure_pin_unlocked(conn, request_id)
                    self._explain_rejected_transition(conn, request_id, "active")
                self._append_event(
                    conn,
                    request_id=request_id,
                    actor_id=operator_id,
                    actor_role="OPERATOR",
                    event_type="PIN_VERIFIED",
                    from_status="en_route",
                    to_status="active",
                )
                conn.commit()
                request = self._row_to_request(self._fetch_request_row(conn, request_id))

        self._log_transition(request_id, "en_route", "active", "OPERATOR", "PIN_VERIFIED")
        self._publish_request(request)
        return True

    def _ensure_pin_unlocked(self, conn: sqlite3.Connection, request_id: str) -> None:
        row = conn.execute("SELECT pin_locked_until FROM service_requests WHERE id = ?", (request_id,)).fetchone()
        locked_until = _parse_ts(row["pin_locked_until"]) if row else None
        if locked_until and locked_until > _utc_now():
            raise PinLockedError(locked_until.isoformat())

    def _record_failed_pin(self, conn: sqlite3.Connection, request_id: str) -> None:
        """Count one failed guess; the guess is refused outright if a lock is in force."""
        now = _utc_now().isoformat()
        cursor = conn.execute(
            """
            UPDATE service_requests SET pin_failed_attempts = pin_failed_attempts + 1
            WHERE id = ? AND (pin_locked_until IS NULL OR pin_locked_until <= ?)
            """,
            (request_id, now),
        )
        if cursor.rowcount != 1:
            conn.rollback()
            self._ensure_pin_unlocked(conn, request_id)
            raise PinLockedError(now)
        row = conn.execute(
            "SELECT pin_failed_attempts FROM service_requests WHERE id = ?", (request_id,)
        ).fetchone()
        if int(row["pin_failed_attempts"]) < self.pin_max_attempts:
            return
        locked_until = (_utc_now() + timedelta(seconds=self.pin_lock_seconds)).isoformat()
        conn.execute(
            "UPDATE service_requests SET pin_failed_attempts = 0, pin_locked_until = ? WHERE id = ?",
            (locked_until, request_id),
        )
        logger.warning("PIN verification locked for request %s until %s", request_id, locked_until)

    def cancel_service_request(self, request_id: str, *, actor_user_id: str, reason: str) -> ServiceRequest:
        clean_reason = (reason or "").strip()
        if not clean_reason:
            raise RequestStoreValidationError("A cancellation reason is required")
        if len(clean_reason) > REASON_MAX_LENGTH:
            raise RequestStoreValidationError(f"Reason must be at most {REASON_MAX_LENGTH} characters")

        with self._lock:
            with self._connect() as conn:
                row = self._fetch_request_row(conn, request_id)
                profile = self._require_profile(conn, actor_user_id)
                if profile["role"] == "ADMIN":
                    actor_role, event_type = "ADMIN", "ADMIN_CANCELLED"
                elif actor_user_id == row["user_id"]:
                    actor_role, event_type = "USER", "USER_CANCELLED"
                elif row["operator_id"] and actor_user_id == row["operator_id"]:
                    actor_role, event_type = "OPERATOR", "OPERATOR_CANCELLED"
                else:
                    raise RequestStorePermissionError("Not allowed to cancel this request")

                from_status = row["status"]
                applied = self._apply_transition(
                    conn,
                    request_id=request_id,
                    from_statuses=CANCELLABLE_STATUSES,
                    to_status="cancelled",
                    assignments={
                        "cancelled_at": _utc_now().isoformat(),
                        "cancellation_reason": clean_reason,
                        "cancelled_by": actor_role,
                    },
                )
                if not applied:
                    current = self._fetch_request_row(conn, request_id)
                    if current["status"] == "active":
                        raise RequestStoreConflictError("Request can no longer be cancelled once service is active")
                    self._explain_rejected_transition(conn, request_id, "cancelled")
                self._append_event(
                    conn,
                    request_id=request_id,
                    actor_id=actor_user_id,
                    actor_role=actor_role,
                    event_type=event_type,
                    from_status=from_status,
                    to_status="cancelled",
                    payload={"reason": clean_reason},
                )
                conn.commit()
                request = self._row_to_request(self._fetch_request_row(conn, request_id))

        self._log_transition(request_id, from_status, "cancelled", actor_role, event_type)
        self._publish_request(request, touches_available=from_status == "initiated")
        return request

    def admin_cancel_request(self, request_id: str, *, actor_user_id: str, reason: str) -> ServiceRequest:
        with self._lock:
            with self._connect() as conn:
                self._require_role(conn, actor_user_id, {"ADMIN"})
        return self.cancel_service_request(request_id, actor_user_id=actor_user_id, reason=reason)

    def rate_service(self, request_id: str, *, actor_user_id: str, stars: int, comment: Optional[str] = None) -> Rating:
        if not isinstance(stars, int) or not 1 <= stars <= 5:
            raise RequestStoreValidationError("stars must be between 1 and 5")
        clean_comment = (comment or "").strip() or None
        if clean_comment and len(clean_comment) > COMMENT_MAX_LENGTH:
            raise RequestStoreValidationError(f"Comment must be at most {COMMENT_MAX_LENGTH} characters")
        rating_id = f"rt_{uuid4().hex[:10]}"
        with self._lock:
            with self._connect() as conn:
                row = self._fetch_request_row(conn, request_id)
                if row["user_id"] != actor_user_id:
                    raise RequestStorePermissionError("Only the requester can rate this service")
                if row["status"] != "completed" or not row["operator_id"]:
                    raise RequestStoreConflictError("Only completed requests can be rated")
                try:
                    conn.execute(
                        """
                        INSERT INTO ratings (id, request_id, rater_user_id, rated_operator_id, stars, comment, created_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                        """,
                        (rating_id, request_id, actor_user_id, row["operator_id"], stars, clean_comment, _utc_now().isoformat()),
                    )
                except sqlite3.IntegrityError as exc:
                    raise RequestStoreConflictError("Request already rated") from exc
                self._append_event(
                    conn,
                    request_id=request_id,
                    actor_id=actor_user_id,
                    actor_role="USER",
                    event_type="RATING_SUBMITTED",
                    payload={"stars": stars},
                )
                conn.commit()
                rating = conn.execute("SELECT * FROM ratings WHERE id = ?", (rating_id,)).fetchone()
                operator_id = row["operator_id"]

        self.feed.publish(
            "ratings",
            rating_id,
            request_id=request_id,
            topics=[request_topic(request_id), user_topic(operator_id)],
        )
        return self._row_to_rating(rating)

    def list_operator_ratings(self, operator_id: str) -> OperatorRatingsView:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM ratings WHERE rated_operator_id = ? ORDER BY created_at DESC",
                    (operator_id,),
                ).fetchall()
        ratings = [self._row_to_rating(row) for row in rows]
        average = round(sum(r.stars for r in ratings) / len(ratings), 2) if ratings else None
        return OperatorRatingsView(operator_id=operator_id, average_stars=average, count=len(ratings), ratings=ratings)

    def list_all_ratings(
        self,
        *,
        actor_user_id: str,
        operator_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[RatingView]:
        query = """
            SELECT rt.*, rater.full_name AS rater_name, op.full_name AS operator_name
            FROM ratings rt
            LEFT JOIN profiles rater ON rater.id = rt.rater_user_id
            LEFT JOIN profiles op ON op.id = rt.rated_operator_id
        """
        params: List[Any] = []
        if operator_id:
            query += " WHERE rt.rated_operator_id = ?"
            params.append(operator_id)
        query += " ORDER BY rt.created_at DESC LIMIT ?"
        params.append(max(1, min(limit, 1000)))
        with self._lock:
            with self._connect() as conn:
                self._require_role(conn, actor_user_id, {"ADMIN"})
                rows = conn.execute(query, tuple(params)).fetchall()
        return [
            RatingView(
                **self._row_to_rating(row).model_dump(),
                rater_name=row["rater_name"] or None,
                operator_name=row["operator_name"] or None,
            )
            for row in rows
        ]

    def send_message(self, request_id: str, *, actor_user_id: str, message: str) -> RequestMessage:
        text = (message or "").strip()
        if not text:
            raise RequestStoreValidationError("Message cannot be empty")
        if len(text) > MESSAGE_MAX_LENGTH:
            raise RequestStoreValidationError(f"Message must be at most {MESSAGE_MAX_LENGTH} characters")
        message_id = f"msg_{uuid4().hex[:10]}"
        with self._lock:
            with self._connect() as conn:
                row = self._fetch_request_row(conn, request_id)
                if actor_user_id not in {row["user_id"], row["operator_id"]}:
                    raise RequestStorePermissionError("Only the request parties can chat")
                if row["status"] not in CHAT_STATUSES:
                    raise RequestStoreConflictError("Chat is only available while the service is in progress")
                actor_role = "USER" if actor_user_id == row["user_id"] else "OPERATOR"
                conn.execute(
                    "INSERT INTO request_messages (id, request_id, sender_id, message, created_at) VALUES (?, ?, ?, ?, ?)",
                    (message_id, request_id, actor_user_id, text, _utc_now().isoformat()),
                )
                self._append_event(
                    conn,
                    request_id=request_id,
                    actor_id=actor_user_id,
                    actor_role=actor_role,
                    event_type="MESSAGE_SENT",
                    payload={"message_id": message_id},
                )
                conn.commit()
                saved = conn.execute("SELECT * FROM request_messages WHERE id = ?", (message_id,)).fetchone()
                parties = [row["user_id"], row["operator_id"]]

        self.feed.publish(
            "request_messages",
            message_id,
            request_id=request_id,
            topics=[request_topic(request_id), *(user_topic(p) for p in parties if p)],
        )
        return RequestMessage(
            id=saved["id"],
            seq=saved["seq"],
            request_id=saved["request_id"],
            sender_id=saved["sender_id"],
            message=saved["message"],
            created_at=saved["created_at"],
        )

    def list_messages(self, request_id: str, *, actor_user_id: str) -> List[RequestMessage]:
        with self._lock:
            with self._connect() as conn:
                row = self._fetch_request_row(conn, request_id)
                if actor_user_id not in {row["user_id"], row["operator_id"]}:
                    self._require_role(conn, actor_user_id, {"ADMIN"})
                rows = conn.execute(
                    "SELECT * FROM request_messages WHERE request_id = ? ORDER BY seq ASC",
                    (request_id,),
                ).fetchall()
        return [
            RequestMessage(
                id=r["id"],
                seq=r["seq"],
                request_id=r["request_id"],
                sender_id=r["sender_id"],
                message=r["message"],
                created_at=r["created_at"],
            )
            for r in rows
        ]

    def record_event(
        self,
        request_id: str,
        *,
        actor_id: str,
        actor_role: str,
        event_type: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                self._fetch_request_row(conn, request_id)
                self._append_event(
                    conn,
                    request_id=request_id,
                    actor_id=actor_id,
                    actor_role=actor_role,
                    event_type=event_type,
                    payload=payload,
                )
                conn.commit()

    def get_request_audit_trail(self, request_id: str, *, actor_user_id: str) -> List[RequestEvent]:
        with self._lock:
            with self._connect() as conn:
                self._require_role(conn, actor_user_id, {"ADMIN", "MOP"})
                self._fetch_request_row(conn, request_id)
                rows = conn.execute(
                    "SELECT * FROM request_events WHERE request_id = ? ORDER BY seq ASC",
                    (request_id,),
                ).fetchall()
        return [self._row_to_event(row) for row in rows]

    def get_service_stats(self, *, actor_user_id: str) -> ServiceStats:
        with self._lock:
            with self._connect() as conn:
                self._require_role(conn, actor_user_id, {"ADMIN", "MOP"})
                counts = {
                    row["status"]: row["total"]
                    for row in conn.execute(
                        "SELECT status, COUNT(*) AS total FROM service_requests GROUP BY status"
                    ).fetchall()
                }
                providers = conn.execute(
                    "SELECT COUNT(*) AS total, COALESCE(SUM(is_active), 0) AS active FROM providers"
                ).fetchone()
        return ServiceStats(
            total_requests=sum(counts.values()),
            initiated=counts.get("initiated", 0),
            in_progress=sum(counts.get(status, 0) for status in OPERATOR_BUSY_STATUSES),
            completed=counts.get("completed", 0),
            cancelled=counts.get("cancelled", 0),
            total_providers=int(providers["total"]),
            active_providers=int(providers["active"]),
        )

    def upsert_operator_location(
        self,
        operator_id: str,
        *,
        lat: float,
        lng: float,
        heading: Optional[float] = None,
        speed: Optional[float] = None,
        is_online: bool = True,
    ) -> OperatorLocation:
        if not (-90 <= lat <= 90 and -180 <= lng <= 180):
            raise RequestStoreValidationError("Invalid coordinates")
        now = _utc_now().isoformat()
        busy_placeholders = ", ".join("?" for _ in OPERATOR_BUSY_STATUSES)
        with self._lock:
            with self._connect() as conn:
                self._require_role(conn, operator_id, {"OPERATOR"})
                conn.execute(
                    """
                    INSERT INTO operator_locations (operator_id, lat, lng, heading, speed, is_online, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(operator_id) DO UPDATE SET
                        lat = excluded.lat,
                        lng = excluded.lng,
                        heading = excluded.heading,
                        speed = excluded.speed,
                        is_online = excluded.is_online,
                        updated_at = excluded.updated_at
                    """,
                    (operator_id, lat, lng, heading, speed, int(is_online), now),
                )
                conn.commit()
                row = conn.execute("SELECT * FROM operator_locations WHERE operator_id = ?", (operator_id,)).fetchone()
                active = conn.execute(
                    f"SELECT id FROM service_requests WHERE operator_id = ? AND status IN ({busy_placeholders})",
                    (operator_id, *OPERATOR_BUSY_STATUSES),
                ).fetchone()
        self._publish_location(operator_id, active["id"] if active else None)
        return self._row_to_location(row)

    def set_operator_offline(self, operator_id: str) -> Optional[OperatorLocation]:
        busy_placeholders = ", ".join("?" for _ in OPERATOR_BUSY_STATUSES)
        with self._lock:
            with self._connect() as conn:
                self._require_role(conn, operator_id, {"OPERATOR"})
                conn.execute(
                    "UPDATE operator_locations SET is_online = 0, updated_at = ? WHERE operator_id = ?",
                    (_utc_now().isoformat(), operator_id),
                )
                conn.commit()
                row = conn.execute("SELECT * FROM operator_locations WHERE operator_id = ?", (operator_id,)).fetchone()
                active = conn.execute(
                    f"SELECT id FROM service_requests WHERE operator_id = ? AND status IN ({busy_placeholders})",
                    (operator_id, *OPERATOR_BUSY_STATUSES),
                ).fetchone()
        if not row:
            return None
        self._publish_location(operator_id, active["id"] if active else None)
        return self._row_to_location(row)

    def _publish_location(self, operator_id: str, active_request_id: Optional[str]) -> None:
        topics = [user_topic(operator_id)]
        if active_request_id:
            topics.append(request_topic(active_request_id))
        self.feed.publish("operator_locations", operator_id, request_id=active_request_id, topics=topics)

    def get_operator_location(self, operator_id: str) -> Optional[OperatorLocation]:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM operator_locations WHERE operator_id = ?", (operator_id,)).fetchone()
        return self._row_to_location(row) if row else None

    def view_operator_presence(self, operator_id: str, *, actor_user_id: str) -> OperatorPresence:
        """Presence for the operator themself, an admin, or the requester they are serving."""
        if actor_user_id != operator_id:
            busy_placeholders = ", ".join("?" for _ in OPERATOR_BUSY_STATUSES)
            with self._lock:
                with self._connect() as conn:
                    profile = self._require_profile(conn, actor_user_id)
                    served = conn.execute(
                        "SELECT 1 FROM service_requests WHERE operator_id = ? AND user_id = ?"
                        f" AND status IN ({busy_placeholders})",
                        (operator_id, actor_user_id, *OPERATOR_BUSY_STATUSES),
                    ).fetchone()
            if profile["role"] != "ADMIN" and not served:
                raise RequestStorePermissionError("Not allowed to view this operator's location")
        return self.get_operator_presence(operator_id)

    def get_operator_presence(self, operator_id: str, *, now: Optional[datetime] = None) -> OperatorPresence:
        location = self.get_operator_location(operator_id)
        if location is None:
            return OperatorPresence(operator_id=operator_id, presence="unknown")
        updated_at = _parse_ts(location.updated_at)
        reference = now or _utc_now()
        age = (reference - updated_at).total_seconds() if updated_at else None
        if not location.is_online:
            presence = "offline"
        elif age is None or age > self.location_stale_seconds:
            presence = "stale"
        else:
            presence = "live"
        return OperatorPresence(
            operator_id=operator_id,
            presence=presence,
            seconds_since_update=round(age, 1) if age is not None else None,
            location=location,
        )


default_db = str(DATA_DIR / "dispatch.sqlite3")
request_store = RequestStore(
    db_path=os.getenv("DISPATCH_DB_PATH", default_db),
    feed=change_feed,
    pin_hash_rounds=read_int_env("PIN_HASH_ROUNDS", 10, minimum=4),
    pin_max_attempts=read_int_env("PIN_MAX_ATTEMPTS", 5),
    pin_lock_seconds=read_int_env("PIN_LOCK_SECONDS", 900),
    location_stale_seconds=read_int_env("LOCATION_STALE_SECONDS", 60),
)
