import os
import sqlite3
import sys
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from app.models import DistanceResult, LocationWithAddress
from app.services.change_feed import AVAILABLE_REQUESTS_TOPIC, ChangeFeed, request_topic
from app.services.request_store import (
    PinLockedError,
    RequestStore,
    RequestStoreConflictError,
    RequestStorePermissionError,
    RequestStoreValidationError,
    RequestUnavailableError,
)

ADMIN = "admin_root"
PICKUP = LocationWithAddress(lat=13.6929, lng=-89.2182, address="Centro, San Salvador")
DROPOFF = LocationWithAddress(lat=13.6769, lng=-89.2797, address="Santa Tecla")
TRIP_40KM = DistanceResult(
    distance_km=40.0,
    distance_text="40 km",
    duration_minutes=80,
    duration_text="80 min",
)


def _store(tmp_path, **kwargs) -> RequestStore:
    return RequestStore(db_path=str(tmp_path / "dispatch.sqlite3"), feed=ChangeFeed(), pin_hash_rounds=4, **kwargs)


def _user(store: RequestStore) -> str:
    user_id = f"user_{uuid4().hex[:8]}"
    store.ensure_profile(user_id, full_name="Ana Perez")
    return user_id


def _operator(store: RequestStore, tow_type_supported: str = "both", provider_id: str = "") -> str:
    store.ensure_profile(ADMIN)
    if not provider_id:
        provider_id = store.create_provider(
            actor_user_id=ADMIN,
            name=f"Gruas {uuid4().hex[:4]}",
            tow_type_supported=tow_type_supported,
        ).id
    operator_id = f"op_{uuid4().hex[:8]}"
    store.ensure_profile(operator_id, full_name="Carlos Operador")
    store.admin_update_user_role(actor_user_id=ADMIN, user_id=operator_id, new_role="OPERATOR", provider_id=provider_id)
    return operator_id


def _tow(store: RequestStore, user_id: str, tow_type: str = "light"):
    return store.create_service_request(
        actor_user_id=user_id,
        pickup=PICKUP,
        dropoff=DROPOFF,
        service_type="tow",
        tow_type=tow_type,
        incident_type="Choque",
        trip=TRIP_40KM,
    )


def _event_types(store: RequestStore, request_id: str) -> list[str]:
    return [event.event_type for event in store.get_request_audit_trail(request_id, actor_user_id=ADMIN)]


def test_tow_request_full_lifecycle(tmp_path):
    store = _store(tmp_path)
    user_id = _user(store)
    operator_id = _operator(store)

    request, pin = _tow(store, user_id)
    assert request.status == "initiated"
    assert len(pin) == 4 and 1000 <= int(pin) <= 9999
    assert request.total_price == 97.5
    assert "pin" not in request.model_dump()
    assert "pin_hash" not in request.model_dump()

    accepted = store.accept_request(request.id, operator_id=operator_id, approach_km=3.2)
    assert accepted.status == "assigned"
    assert accepted.operator_id == operator_id
    assert accepted.operator_name == "Carlos Operador"
    assert accepted.provider_name is not None
    assert accepted.distance_operator_to_pickup_km == 3.2

    en_route = store.mark_en_route(request.id, operator_id=operator_id)
    assert en_route.status == "en_route"

    assert store.verify_request_pin(request.id, operator_id=operator_id, pin="0000") is False
    assert store.get_request(request.id, actor_user_id=user_id).status == "en_route"
    assert store.verify_request_pin(request.id, operator_id=operator_id, pin=pin) is True
    assert store.get_request(request.id, actor_user_id=user_id).status == "active"
    assert store.verify_request_pin(request.id, operator_id=operator_id, pin=pin) is True

    completed = store.complete_request(request.id, operator_id=operator_id)
    assert completed.status == "completed"
    assert completed.completed_at is not None
    assert completed.total_price == 97.5
    assert completed.price_breakdown["distance_operator_to_pickup_km"] == 3.2

    assert _event_types(store, request.id) == [
        "REQUEST_CREATED",
        "PRICE_COMPUTED",
        "OPERATOR_ACCEPTED",
        "OPERATOR_EN_ROUTE",
        "PIN_VERIFIED",
        "STATUS_CHANGED",
        "PRICE_COMPUTED",
    ]


def test_exclusive_claim_single_store(tmp_path):
    store = _store(tmp_path)
    request, _ = _tow(store, _user(store))
    operators = [_operator(store) for _ in range(6)]

    def claim(operator_id):
        try:
            store.accept_request(request.id, operator_id=operator_id)
            return "won"
        except RequestUnavailableError as exc:
            assert str(exc) == "Request is no longer available"
            return "lost"

    with ThreadPoolExecutor(max_workers=6) as pool:
        outcomes = list(pool.map(claim, operators))

    assert outcomes.count("won") == 1
    assert outcomes.count("lost") == 5
    final = store.get_request(request.id, actor_user_id=ADMIN)
    assert final.operator_id == operators[outcomes.index("won")]
    assert _event_types(store, request.id).count("OPERATOR_ACCEPTED") == 1


def test_exclusive_claim_across_store_instances(tmp_path):
    first = _store(tmp_path)
    second = _store(tmp_path)
    request, _ = _tow(first, _user(first))
    operators = [_operator(first) for _ in range(4)]

    def claim(index):
        store = first if index % 2 == 0 else second
        try:
            store.accept_request(request.id, operator_id=operators[index])
            return True
        except RequestUnavailableError:
            return False

    with ThreadPoolExecutor(max_workers=4) as pool:
        outcomes = list(pool.map(claim, range(4)))

    assert outcomes.count(True) == 1
    assert second.get_request(request.id, actor_user_id=ADMIN).operator_id == operators[outcomes.index(True)]


def test_busy_operator_sees_no_requests_and_cannot_claim(tmp_path):
    store = _store(tmp_path)
    operator_id = _operator(store)
    first, _ = _tow(store, _user(store))
    second, _ = _tow(store, _user(store))

    assert {r.id for r in store.get_available_requests_for_operator(operator_id)} >= {first.id, second.id}
    store.accept_request(first.id, operator_id=operator_id)

    assert store.get_available_requests_for_operator(operator_id) == []
    with pytest.raises(RequestStoreConflictError, match="Operator already has an active request"):
        store.accept_request(second.id, operator_id=operator_id)
    assert store.get_request(second.id, actor_user_id=ADMIN).status == "initiated"


def test_provider_tow_type_filters_available_requests(tmp_path):
    store = _store(tmp_path)
    light_operator = _operator(store, tow_type_supported="light")
    light_request, _ = _tow(store, _user(store), tow_type="light")
    heavy_request, _ = _tow(store, _user(store), tow_type="heavy")

    visible = {r.id for r in store.get_available_requests_for_operator(light_operator)}
    assert light_request.id in visible
    assert heavy_request.id not in visible
    with pytest.raises(RequestStorePermissionError):
        store.accept_request(heavy_request.id, operator_id=light_operator)


def test_inactive_provider_hides_requests(tmp_path):
    store = _store(tmp_path)
    store.ensure_profile(ADMIN)
    provider = store.create_provider(actor_user_id=ADMIN, name="Gruas Pausadas")
    operator_id = _operator(store, provider_id=provider.id)
    _tow(store, _user(store))
    store.update_provider(actor_user_id=ADMIN, provider_id=provider.id, is_active=False)
    assert store.get_available_requests_for_operator(operator_id) == []


def test_pin_lockout_after_repeated_failures(tmp_path):
    store = _store(tmp_path, pin_max_attempts=3, pin_lock_seconds=600)
    operator_id = _operator(store)
    request, pin = _tow(store, _user(store))
    store.accept_request(request.id, operator_id=operator_id)
    store.mark_en_route(request.id, operator_id=operator_id)

    for _ in range(3):
        assert store.verify_request_pin(request.id, operator_id=operator_id, pin="0000") is False
    with pytest.raises(PinLockedError):
        store.verify_request_pin(request.id, operator_id=operator_id, pin=pin)
    assert store.get_request(request.id, actor_user_id=ADMIN).status == "en_route"


def test_concurrent_pin_guesses_stop_at_the_lockout(tmp_path):
    store = _store(tmp_path, pin_max_attempts=5, pin_lock_seconds=600)
    operator_id = _operator(store)
    request, pin = _tow(store, _user(store))
    store.accept_request(request.id, operator_id=operator_id)
    store.mark_en_route(request.id, operator_id=operator_id)

    def guess(_):
        try:
            return store.verify_request_pin(request.id, operator_id=operator_id, pin="0000")
        except PinLockedError:
            return "locked"

    with ThreadPoolExecutor(max_workers=40) as pool:
        outcomes = list(pool.map(guess, range(40)))

    assert outcomes.count(False) <= 5
    assert outcomes.count("locked") >= 35
    with pytest.raises(PinLockedError):
        store.verify_request_pin(request.id, operator_id=operator_id, pin=pin)
    assert store.get_request(request.id, actor_user_id=ADMIN).status == "en_route"


def test_correct_pin_compared_before_a_lock_is_still_refused(tmp_path, monkeypatch):
    store = _store(tmp_path, pin_max_attempts=1, pin_lock_seconds=600)
    operator_id = _operator(store)
    request, pin = _tow(store, _user(store))
    store.accept_request(request.id, operator_id=operator_id)
    store.mark_en_route(request.id, operator_id=operator_id)

    original = store._pin_matches
    interleaved = []

    def lock_during_compare(candidate, pin_hash):
        # Another caller's failed guess lands while this hash is compared.
        if not interleaved:
            interleaved.append(candidate)
            assert store.verify_request_pin(request.id, operator_id=operator_id, pin="0000") is False
        return original(candidate, pin_hash)

    monkeypatch.setattr(store, "_pin_matches", lock_during_compare)
    with pytest.raises(PinLockedError):
        store.verify_request_pin(request.id, operator_id=operator_id, pin=pin)
    assert store.get_request(request.id, actor_user_id=ADMIN).status == "en_route"


def test_malformed_pin_is_invalid_without_counting(tmp_path):
    store = _store(tmp_path, pin_max_attempts=2)
    operator_id = _operator(store)
    request, pin = _tow(store, _user(store))
    store.accept_request(request.id, operator_id=operator_id)
    store.mark_en_route(request.id, operator_id=operator_id)

    for candidate in ("12", "abcd", "12345", ""):
        assert store.verify_request_pin(request.id, operator_id=operator_id, pin=candidate) is False
    assert store.verify_request_pin(request.id, operator_id=operator_id, pin=pin) is True


def test_pin_only_verifiable_by_assigned_operator_while_en_route(tmp_path):
    store = _store(tmp_path)
    operator_id = _operator(store)
    other_operator = _operator(store)
    request, pin = _tow(store, _user(store))
    store.accept_request(request.id, operator_id=operator_id)

    with pytest.raises(RequestStoreConflictError):
        store.verify_request_pin(request.id, operator_id=operator_id, pin=pin)
    store.mark_en_route(request.id, operator_id=operator_id)
    with pytest.raises(RequestStorePermissionError):
        store.verify_request_pin(request.id, operator_id=other_operator, pin=pin)


def test_cancel_requires_reason_and_records_actor(tmp_path):
    store = _store(tmp_path)
    user_id = _user(store)
    request, _ = _tow(store, user_id)

    with pytest.raises(RequestStoreValidationError):
        store.cancel_service_request(request.id, actor_user_id=user_id, reason="   ")
    assert store.get_request(request.id, actor_user_id=user_id).status == "initiated"

    cancelled = store.cancel_service_request(request.id, actor_user_id=user_id, reason="  Ya no la necesito ")
    assert cancelled.status == "cancelled"
    assert cancelled.cancellation_reason == "Ya no la necesito"
    assert cancelled.cancelled_by == "USER"
    assert _event_types(store, request.id)[-1] == "USER_CANCELLED"

    with pytest.raises(RequestStoreConflictError, match="already cancelled"):
        store.cancel_service_request(request.id, actor_user_id=user_id, reason="otra vez")


def test_operator_and_admin_cancellation_event_types(tmp_path):
    store = _store(tmp_path)
    operator_id = _operator(store)
    first, _ = _tow(store, _user(store))
    store.accept_request(first.id, operator_id=operator_id)
    store.cancel_service_request(first.id, actor_user_id=operator_id, reason="Falla mecanica")
    assert _event_types(store, first.id)[-1] == "OPERATOR_CANCELLED"

    second, _ = _tow(store, _user(store))
    cancelled = store.admin_cancel_request(second.id, actor_user_id=ADMIN, reason="Solicitud duplicada")
    assert cancelled.cancelled_by == "ADMIN"
    assert _event_types(store, second.id)[-1] == "ADMIN_CANCELLED"


def test_stranger_cannot_cancel(tmp_path):
    store = _store(tmp_path)
    request, _ = _tow(store, _user(store))
    with pytest.raises(RequestStorePermissionError):
        store.cancel_service_request(request.id, actor_user_id=_user(store), reason="no es mio")


def test_terminal_states_reject_every_transition(tmp_path):
    store = _store(tmp_path)
    user_id = _user(store)
    operator_id = _operator(store)
    request, pin = _tow(store, user_id)
    store.accept_request(request.id, operator_id=operator_id)
    store.mark_en_route(request.id, operator_id=operator_id)
    store.verify_request_pin(request.id, operator_id=operator_id, pin=pin)

    with pytest.raises(RequestStoreConflictError, match="once service is active"):
        store.cancel_service_request(request.id, actor_user_id=user_id, reason="tarde")

    store.complete_request(request.id, operator_id=operator_id)
    with pytest.raises(RequestStoreConflictError, match="already completed"):
        store.cancel_service_request(request.id, actor_user_id=user_id, reason="tarde")
    with pytest.raises(RequestStoreConflictError):
        store.mark_en_route(request.id, operator_id=operator_id)
    with pytest.raises(RequestStoreConflictError):
        store.complete_request(request.id, operator_id=operator_id)
    assert store.get_request(request.id, actor_user_id=user_id).status == "completed"


def test_user_limited_to_one_open_request(tmp_path):
    store = _store(tmp_path)
    user_id = _user(store)
    first, _ = _tow(store, user_id)
    with pytest.raises(RequestStoreConflictError, match="active request"):
        _tow(store, user_id)

    store.cancel_service_request(first.id, actor_user_id=user_id, reason="me equivoque")
    second, _ = _tow(store, user_id)
    assert store.get_active_request(user_id).id == second.id


def test_only_users_create_requests(tmp_path):
    store = _store(tmp_path)
    operator_id = _operator(store)
    with pytest.raises(RequestStorePermissionError):
        _tow(store, operator_id)


def test_tow_request_requires_dropoff_and_tow_type(tmp_path):
    store = _store(tmp_path)
    user_id = _user(store)
    with pytest.raises(RequestStoreValidationError):
        store.create_service_request(
            actor_user_id=user_id, pickup=PICKUP, dropoff=None, service_type="tow", tow_type="light", incident_type="x"
        )
    with pytest.raises(RequestStoreValidationError):
        store.create_service_request(
            actor_user_id=user_id, pickup=PICKUP, dropoff=DROPOFF, service_type="tow", tow_type=None, incident_type="x"
        )


def test_flat_service_request_uses_pickup_as_dropoff(tmp_path):
    store = _store(tmp_path)
    request, _ = store.create_service_request(
        actor_user_id=_user(store),
        pickup=PICKUP,
        dropoff=None,
        service_type="fuel",
        service_details={"gallons": 3},
    )
    assert request.dropoff_address == PICKUP.address
    assert request.tow_type is None
    assert request.incident_type == "Sin combustible"
    assert request.total_price == 30.0


def test_ratings_after_completion_only(tmp_path):
    store = _store(tmp_path)
    user_id = _user(store)
    operator_id = _operator(store)
    request, pin = _tow(store, user_id)
    store.accept_request(request.id, operator_id=operator_id)

    with pytest.raises(RequestStoreConflictError):
        store.rate_service(request.id, actor_user_id=user_id, stars=5)

    store.mark_en_route(request.id, operator_id=operator_id)
    store.verify_request_pin(request.id, operator_id=operator_id, pin=pin)
    store.complete_request(request.id, operator_id=operator_id)

    with pytest.raises(RequestStoreValidationError):
        store.rate_service(request.id, actor_user_id=user_id, stars=6)
    with pytest.raises(RequestStorePermissionError):
        store.rate_service(request.id, actor_user_id=operator_id, stars=5)

    rating = store.rate_service(request.id, actor_user_id=user_id, stars=4, comment="Rapido")
    assert rating.rated_operator_id == operator_id
    with pytest.raises(RequestStoreConflictError, match="already rated"):
        store.rate_service(request.id, actor_user_id=user_id, stars=5)

    view = store.list_operator_ratings(operator_id)
    assert view.count == 1
    assert view.average_stars == 4.0


def test_chat_between_parties_while_in_progress(tmp_path):
    store = _store(tmp_path)
    user_id = _user(store)
    operator_id = _operator(store)
    request, _ = _tow(store, user_id)

    with pytest.raises(RequestStoreConflictError):
        store.send_message(request.id, actor_user_id=user_id, message="hola")

    store.accept_request(request.id, operator_id=operator_id)
    store.send_message(request.id, actor_user_id=user_id, message="  Estoy junto a la gasolinera  ")
    store.send_message(request.id, actor_user_id=operator_id, message="Voy en 10 minutos")

    with pytest.raises(RequestStoreValidationError):
        store.send_message(request.id, actor_user_id=user_id, message="x" * 501)
    with pytest.raises(RequestStoreValidationError):
        store.send_message(request.id, actor_user_id=user_id, message="   ")
    with pytest.raises(RequestStorePermissionError):
        store.send_message(request.id, actor_user_id=_user(store), message="hola")

    messages = store.list_messages(request.id, actor_user_id=operator_id)
    assert [m.message for m in messages] == ["Estoy junto a la gasolinera", "Voy en 10 minutos"]
    assert messages[0].seq < messages[1].seq
    assert _event_types(store, request.id).count("MESSAGE_SENT") == 2


def test_activating_pricing_rule_keeps_exactly_one_active(tmp_path):
    store = _store(tmp_path)
    store.ensure_profile(ADMIN)
    new_rule = store.create_pricing_rule(
        actor_user_id=ADMIN,
        base_exit_fee=70,
        included_km=20,
        price_per_km_light=3,
        price_per_km_heavy=5,
    )
    assert new_rule.is_active is False

    store.set_active_pricing_rule(actor_user_id=ADMIN, rule_id=new_rule.id)
    active = [rule for rule in store.list_pricing_rules() if rule.is_active]
    assert [rule.id for rule in active] == [new_rule.id]

    with pytest.raises(RequestStoreConflictError):
        store.delete_pricing_rule(actor_user_id=ADMIN, rule_id=new_rule.id)
    store.delete_pricing_rule(actor_user_id=ADMIN, rule_id="rule_default")
    assert [rule.id for rule in store.list_pricing_rules()] == [new_rule.id]


def test_operator_presence_states(tmp_path):
    store = _store(tmp_path, location_stale_seconds=60)
    operator_id = _operator(store)
    assert store.get_operator_presence(operator_id).presence == "unknown"

    store.upsert_operator_location(operator_id, lat=13.70, lng=-89.20, heading=90.0)
    assert store.get_operator_presence(operator_id).presence == "live"

    later = datetime.now(timezone.utc) + timedelta(seconds=120)
    stale = store.get_operator_presence(operator_id, now=later)
    assert stale.presence == "stale"
    assert stale.seconds_since_update >= 60

    store.set_operator_offline(operator_id)
    assert store.get_operator_presence(operator_id).presence == "offline"


def test_role_update_requires_provider_for_operators(tmp_path):
    store = _store(tmp_path)
    store.ensure_profile(ADMIN)
    user_id = _user(store)
    with pytest.raises(RequestStoreValidationError):
        store.admin_update_user_role(actor_user_id=ADMIN, user_id=user_id, new_role="OPERATOR")
    with pytest.raises(RequestStorePermissionError):
        store.admin_update_user_role(actor_user_id=user_id, user_id=user_id, new_role="ADMIN")

    operator_id = _operator(store)
    demoted = store.admin_update_user_role(actor_user_id=ADMIN, user_id=operator_id, new_role="USER")
    assert demoted.provider_id is None


def test_transitions_publish_change_records(tmp_path):
    store = _store(tmp_path)
    operator_id = _operator(store)
    request, _ = _tow(store, _user(store))
    cursor = store.feed.cursor

    store.accept_request(request.id, operator_id=operator_id)
    changes = store.feed.changes_since(cursor, topics=[request_topic(request.id)])
    assert len(changes) == 1
    assert changes[0].record_id == request.id
    assert AVAILABLE_REQUESTS_TOPIC in changes[0].topics


def test_bootstrap_roles_from_env(tmp_path):
    store = _store(tmp_path)
    assert store.ensure_profile("admin_root").role == "ADMIN"
    assert store.ensure_profile("mop_root").role == "MOP"
    assert store.ensure_profile(f"someone_{uuid4().hex[:6]}").role == "USER"


def test_schema_migration_adds_missing_columns(tmp_path):
    db_path = tmp_path / "dispatch.sqlite3"
    with sqlite3.connect(str(db_path)) as conn:
        conn.execute(
            """
            CREATE TABLE operator_locations (
                operator_id TEXT PRIMARY KEY,
                lat REAL NOT NULL,
                lng REAL NOT NULL,
                heading REAL,
                is_online INTEGER NOT NULL DEFAULT 0,
                updated_at TEXT NOT NULL
            )
            """
        )
        conn.commit()

    store = RequestStore(db_path=str(db_path), feed=ChangeFeed(), pin_hash_rounds=4)
    operator_id = _operator(store)
    location = store.upsert_operator_location(operator_id, lat=13.7, lng=-89.2, speed=12.5)
    assert location.speed == 12.5
