import os
import sys
from uuid import uuid4

from fastapi.testclient import TestClient

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from app.main import app

client = TestClient(app)


def _login(user_id: str) -> dict:
    response = client.post("/auth/login", json={"user_id": user_id, "password": "gruas-demo", "full_name": user_id})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


def test_golden_path_tow_request_to_rating():
    suffix = uuid4().hex[:8]
    user_id = f"driver_{suffix}"
    operator_id = f"tow_{suffix}"

    # 1) Requester and operator sign in; admin attaches the operator to a provider.
    user_headers = _login(user_id)
    operator_headers = _login(operator_id)
    admin_headers = _login("admin_root")
    provider = client.post(
        "/admin/providers",
        json={"actor_user_id": "admin_root", "name": f"Gruas Express {suffix}", "tow_type_supported": "both"},
        headers=admin_headers,
    )
    assert provider.status_code == 200
    promoted = client.post(
        f"/admin/users/{operator_id}/role",
        json={"actor_user_id": "admin_root", "new_role": "OPERATOR", "provider_id": provider.json()["id"]},
        headers=admin_headers,
    )
    assert promoted.status_code == 200

    # 2) Operator comes online near the pickup.
    online = client.post(
        f"/operators/{operator_id}/location",
        json={"actor_user_id": operator_id, "lat": 13.7010, "lng": -89.2240, "heading": 90},
        headers=operator_headers,
    )
    assert online.status_code == 200

    # 3) Requester creates a light tow and keeps the PIN.
    created = client.post(
        "/requests",
        json={
            "actor_user_id": user_id,
            "pickup": {"lat": 13.6929, "lng": -89.2182, "address": "Metrocentro, San Salvador"},
            "dropoff": {"lat": 13.4833, "lng": -88.1833, "address": "Taller San Miguel"},
            "service_type": "tow",
            "tow_type": "light",
            "incident_type": "Falla mecanica",
            "notes": "Carro blanco en el parqueo",
        },
        headers=user_headers,
    )
    assert created.status_code == 200
    request_id = created.json()["request_id"]
    pin = created.json()["pin"]

    estimate = client.get(f"/requests/{request_id}", params={"actor_user_id": user_id}, headers=user_headers).json()
    assert estimate["status"] == "initiated"
    assert estimate["distance_pickup_to_dropoff_km"] > 25
    assert estimate["total_price"] > 60

    # 4) Operator sees it and claims it.
    available = client.get("/requests/available", params={"operator_id": operator_id}, headers=operator_headers)
    assert request_id in {row["id"] for row in available.json()}
    accepted = client.post(f"/requests/{request_id}/accept", json={"actor_user_id": operator_id}, headers=operator_headers)
    assert accepted.status_code == 200
    assert accepted.json()["status"] == "assigned"
    assert accepted.json()["operator_id"] == operator_id
    assert accepted.json()["distance_operator_to_pickup_km"] is not None

    # 5) En route, requester checks the ETA, chat works.
    en_route = client.post(f"/requests/{request_id}/en-route", json={"actor_user_id": operator_id}, headers=operator_headers)
    assert en_route.status_code == 200
    eta = client.get(f"/requests/{request_id}/eta", params={"actor_user_id": user_id}, headers=user_headers)
    assert eta.status_code == 200
    message = client.post(
        f"/requests/{request_id}/messages",
        json={"actor_user_id": user_id, "message": "Estoy junto a la entrada"},
        headers=user_headers,
    )
    assert message.status_code == 200

    # 6) PIN handshake starts the service.
    verified = client.post(
        f"/requests/{request_id}/verify-pin",
        json={"actor_user_id": operator_id, "pin": pin},
        headers=operator_headers,
    )
    assert verified.status_code == 200
    assert verified.json()["valid"] is True

    # 7) Completion fixes the final price.
    completed = client.post(f"/requests/{request_id}/complete", json={"actor_user_id": operator_id}, headers=operator_headers)
    assert completed.status_code == 200
    final = completed.json()
    assert final["status"] == "completed"
    assert final["completed_at"]
    assert final["price_breakdown"]["total"] == final["total_price"]

    # 8) Requester rates the operator.
    rating = client.post(
        f"/requests/{request_id}/rating",
        json={"actor_user_id": user_id, "stars": 5, "comment": "Muy rapido"},
        headers=user_headers,
    )
    assert rating.status_code == 200
    ratings = client.get(f"/operators/{operator_id}/ratings").json()
    assert ratings["count"] == 1
    assert ratings["average_stars"] == 5

    # 9) Requester got a notification for every step.
    inbox = client.get("/notifications", params={"user_id": user_id}, headers=user_headers).json()
    titles = {row["title"] for row in inbox}
    assert {"Solicitud aceptada", "Operador en camino", "Servicio iniciado", "Servicio completado"} <= titles

    history = client.get("/requests", params={"user_id": user_id}, headers=user_headers).json()
    assert [row["id"] for row in history][:1] == [request_id]
    assert client.get("/requests/active", params={"user_id": user_id}, headers=user_headers).json() is None
