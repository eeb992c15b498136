import json
import os
import sys

import httpx

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from app.models import ServiceRequest
from app.services.mop_notifier import MopNotifier, build_mop_message
from app.services.notification_store import NotificationStore
from app.services.push_sender import PushSender


def _request(**overrides) -> ServiceRequest:
    fields = {
        "id": "3f2b9c4e-0000-4000-8000-000000000001",
        "user_id": "user_a",
        "operator_id": "op_a",
        "service_type": "tow",
        "tow_type": "light",
        "incident_type": "Choque",
        "pickup_lat": 13.6929,
        "pickup_lng": -89.2182,
        "pickup_address": "Metrocentro",
        "dropoff_lat": 13.6769,
        "dropoff_lng": -89.2797,
        "dropoff_address": "Santa Tecla",
        "status": "assigned",
        "operator_name": "Carlos",
        "total_price": 97.5,
        "created_at": "2024-05-01T10:00:00+00:00",
        "updated_at": "2024-05-01T10:00:00+00:00",
        "completed_at": "2024-05-01T11:00:00+00:00",
    }
    fields.update(overrides)
    return ServiceRequest(**fields)


class RecordingSender:
    def __init__(self, invalid=None):
        self.calls = []
        self.invalid = list(invalid or [])

    def send_notification(self, tokens, title, body, data):
        self.calls.append({"tokens": tokens, "title": title, "body": body, "data": data})
        return [token for token in tokens if token in self.invalid]


def test_status_notification_goes_to_requester_with_operator_name():
    sender = RecordingSender()
    store = NotificationStore(sender=sender)
    store.register_device_token("user_a", "tok-user")

    records = store.notify_request_status(_request())
    assert [r.user_id for r in records] == ["user_a"]
    assert records[0].body == "Carlos acepto tu solicitud"
    assert records[0].deep_link == f"request:{_request().id}"
    assert sender.calls[0]["tokens"] == ["tok-user"]
    assert sender.calls[0]["data"]["category"] == "request"


def test_user_cancellation_notifies_operator_only_when_assigned():
    store = NotificationStore(sender=RecordingSender())
    to_operator = store.notify_request_status(_request(status="cancelled", cancelled_by="USER"))
    assert [r.user_id for r in to_operator] == ["op_a"]
    unassigned = store.notify_request_status(_request(status="cancelled", cancelled_by="USER", operator_id=None))
    assert unassigned == []
    by_operator = store.notify_request_status(_request(status="cancelled", cancelled_by="OPERATOR"))
    assert [r.user_id for r in by_operator] == ["user_a"]


def test_admin_cancellation_notifies_requester_and_operator():
    sender = RecordingSender()
    store = NotificationStore(sender=sender)
    records = store.notify_request_status(_request(status="cancelled", cancelled_by="ADMIN"))
    assert [r.user_id for r in records] == ["user_a", "op_a"]
    assert {r.body for r in records} == {"Un administrador cancelo el servicio"}
    assert len(sender.calls) == 2

    unassigned = store.notify_request_status(_request(status="cancelled", cancelled_by="ADMIN", operator_id=None))
    assert [r.user_id for r in unassigned] == ["user_a"]


def test_initiated_requests_send_nothing():
    store = NotificationStore(sender=RecordingSender())
    assert store.notify_request_status(_request(status="initiated", operator_id=None)) == []


def test_invalid_device_tokens_are_dropped():
    store = NotificationStore(sender=RecordingSender(invalid=["stale"]))
    store.register_device_token("user_a", "stale")
    store.register_device_token("user_a", "fresh")
    store.notify_new_message(_request(), "op_a", "Voy llegando")
    assert store.device_tokens("user_a") == ["fresh"]


def test_new_message_preview_is_truncated_for_other_party():
    store = NotificationStore(sender=RecordingSender())
    record = store.notify_new_message(_request(), "user_a", "x" * 200)
    assert record.user_id == "op_a"
    assert record.category == "message"
    assert len(record.body) == 80


def test_push_sender_without_credentials_is_noop(monkeypatch):
    monkeypatch.delenv("FIREBASE_CREDENTIALS_PATH", raising=False)
    sender = PushSender()
    assert sender.enabled is False
    assert sender.send_notification(["tok"], "t", "b", {}) == []


def test_mop_message_for_created_and_completed():
    created = build_mop_message("REQUEST_CREATED", _request(), user_name="Ana")
    assert created.startswith("*Nueva Solicitud de Grua*")
    assert "*ID:* 3f2b9c4e" in created
    assert "*Grua:* Liviana" in created
    assert "*Usuario:* Ana" in created

    completed = build_mop_message("REQUEST_COMPLETED", _request(status="completed"))
    assert completed.startswith("*Servicio Completado*")
    assert "*Total:* $97.50" in completed
    assert "*Usuario:* N/A" in completed


def test_mop_notifier_posts_to_graph_api():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"messages": [{"id": "wamid.123"}]})

    notifier = MopNotifier(
        token="secret",
        phone_number_id="555",
        recipient="50370000000",
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
    )
    assert notifier.notify("REQUEST_CREATED", _request(), user_name="Ana") == "wamid.123"
    assert seen[0].url.path == "/v18.0/555/messages"
    assert seen[0].headers["Authorization"] == "Bearer secret"
    body = json.loads(seen[0].content)
    assert body["to"] == "50370000000"
    assert body["type"] == "text"


def test_mop_notifier_failures_return_none():
    def failing(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"message": "bad token"}})

    def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("down", request=request)

    for handler in (failing, unreachable):
        notifier = MopNotifier(
            token="secret",
            phone_number_id="555",
            recipient="50370000000",
            http_client=httpx.Client(transport=httpx.MockTransport(handler)),
        )
        assert notifier.notify("REQUEST_CREATED", _request()) is None


def test_mop_notifier_tolerates_unexpected_response_shape():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"messages": {"id": "wamid.456"}})

    notifier = MopNotifier(
        token="secret",
        phone_number_id="555",
        recipient="50370000000",
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
    )
    assert notifier.notify("REQUEST_COMPLETED", _request(status="completed")) == ""


def test_mop_background_task_logs_and_swallows_failures(monkeypatch, caplog):
    from app.routers import requests as requests_router

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"messages": [{"id": "wamid.789"}]})

    def broken_record_event(*args, **kwargs):
        raise RuntimeError("database is locked")

    notifier = MopNotifier(
        token="secret",
        phone_number_id="555",
        recipient="50370000000",
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
    )
    monkeypatch.setattr(requests_router, "mop_notifier", notifier)
    monkeypatch.setattr(requests_router.request_store, "record_event", broken_record_event)

    with caplog.at_level("ERROR", logger="app.routers.requests"):
        requests_router._notify_mop("REQUEST_CREATED", _request(status="initiated", operator_id=None))
    assert "MOP notification failed" in caplog.text


def test_mop_notifier_disabled_without_credentials():
    def handler(request):
        raise AssertionError("disabled notifier must not send")

    notifier = MopNotifier(token="", http_client=httpx.Client(transport=httpx.MockTransport(handler)))
    assert notifier.enabled is False
    assert notifier.notify("REQUEST_CREATED", _request()) is None
