import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

import httpx

from app.client.pin_cache import PinCache
from app.models import (
    AuthLoginResponse,
    ChangeBatch,
    CreateServiceRequestResult,
    EtaResult,
    LocationWithAddress,
    OperatorLocation,
    OperatorPresence,
    Rating,
    RequestMessage,
    ServiceRequest,
)

PIN_PATTERN = re.compile(r"^\d{4}$")
MESSAGE_MAX_LENGTH = 500
UNAVAILABLE_MESSAGE = "Request is no longer available"
ACTIVE_REQUEST_MESSAGE = "User already has an active request"


class DispatchClientError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ClientValidationError(DispatchClientError):
    pass


class AuthenticationRequiredError(DispatchClientError):
    pass


class PermissionDeniedError(DispatchClientError):
    pass


class NotFoundError(DispatchClientError):
    pass


class ConflictError(DispatchClientError):
    pass


class RequestNoLongerAvailableError(ConflictError):
    pass


class ActiveRequestExistsError(ConflictError):
    pass


class PinLockedOutError(DispatchClientError):
    pass


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        for key in ("error", "detail"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
        if "detail" in body:
            return str(body["detail"])
    return f"HTTP {response.status_code}"


def error_from_response(response: httpx.Response) -> DispatchClientError:
    status = response.status_code
    message = _error_message(response)
    if status in (400, 422):
        return ClientValidationError(message, status)
    if status == 401:
        return AuthenticationRequiredError(message, status)
    if status == 403:
        return PermissionDeniedError(message, status)
    if status == 404:
        return NotFoundError(message, status)
    if status == 429:
        return PinLockedOutError(message, status)
    if status == 409:
        if message == UNAVAILABLE_MESSAGE:
            return RequestNoLongerAvailableError(message, status)
        if message == ACTIVE_REQUEST_MESSAGE:
            return ActiveRequestExistsError(message, status)
        return ConflictError(message, status)
    return DispatchClientError(message, status)


@dataclass
class AcceptOutcome:
    accepted: bool
    request: Optional[ServiceRequest] = None
    available: List[ServiceRequest] = field(default_factory=list)


class DispatchClient:
    """Thin typed wrapper over the dispatch API for one signed-in user.

    Client-side validation runs before any network call, so an invalid
    cancellation or PIN never reaches the server.
    """

    def __init__(
        self,
        http: httpx.Client,
        user_id: str,
        token: Optional[str] = None,
        pin_cache: Optional[PinCache] = None,
    ) -> None:
        self.http = http
        self.user_id = user_id
        self.token = token
        self.pin_cache = pin_cache or PinCache()

    def _headers(self) -> Dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    def _call(self, method: str, path: str, *, json: Any = None, params: Optional[Dict[str, Any]] = None) -> Any:
        response = self.http.request(method, path, json=json, params=params, headers=self._headers())
        if response.status_code >= 400:
            raise error_from_response(response)
        return response.json()

    def login(self, password: str, *, full_name: str = "", phone: str = "") -> AuthLoginResponse:
        data = self._call(
            "POST",
            "/auth/login",
            json={"user_id": self.user_id, "password": password, "full_name": full_name, "phone": phone},
        )
        session = AuthLoginResponse.model_validate(data)
        self.token = session.access_token
        return session

    def get_active_request(self) -> Optional[ServiceRequest]:
        data = self._call("GET", "/requests/active", params={"user_id": self.user_id})
        return ServiceRequest.model_validate(data) if data else None

    def create_service_request(
        self,
        *,
        pickup: LocationWithAddress,
        dropoff: Optional[LocationWithAddress] = None,
        service_type: str = "tow",
        tow_type: Optional[str] = None,
        incident_type: str = "",
        service_details: Optional[Dict[str, Any]] = None,
        notes: Optional[str] = None,
        photo_url: Optional[str] = None,
    ) -> CreateServiceRequestResult:
        if not pickup.address.strip():
            raise ClientValidationError("Pickup address is required")
        if service_type == "tow":
            if dropoff is None or not dropoff.address.strip():
                raise ClientValidationError("Dropoff location is required for tow requests")
            if tow_type not in {"light", "heavy"}:
                raise ClientValidationError("Choose a light or heavy tow")
            if not incident_type.strip():
                raise ClientValidationError("Incident type is required")
        active = self.get_active_request()
        if active is not None:
            raise ActiveRequestExistsError(ACTIVE_REQUEST_MESSAGE)
        data = self._call(
            "POST",
            "/requests",
            json={
                "actor_user_id": self.user_id,
                "pickup": pickup.model_dump(),
                "dropoff": dropoff.model_dump() if dropoff else None,
                "service_type": service_type,
                "tow_type": tow_type,
                "incident_type": incident_type,
                "service_details": service_details or {},
                "notes": notes,
                "photo_url": photo_url,
            },
        )
        result = CreateServiceRequestResult.model_validate(data)
        self.pin_cache.put(result.request_id, result.pin)
        return result

    def get_pin(self, request_id: str) -> Optional[str]:
        return self.pin_cache.get(request_id)

    def get_request(self, request_id: str) -> ServiceRequest:
        data = self._call("GET", f"/requests/{request_id}", params={"actor_user_id": self.user_id})
        return ServiceRequest.model_validate(data)

    def list_requests(self, role: Optional[str] = None) -> List[ServiceRequest]:
        params: Dict[str, Any] = {"user_id": self.user_id}
        if role:
            params["role"] = role
        return [ServiceRequest.model_validate(row) for row in self._call("GET", "/requests", params=params)]

    def cancel_service_request(self, request_id: str, reason: str) -> bool:
        clean_reason = (reason or "").strip()
        if not clean_reason:
            raise ClientValidationError("A cancellation reason is required")
        self._call(
            "POST",
            f"/requests/{request_id}/cancel",
            json={"actor_user_id": self.user_id, "reason": clean_reason},
        )
        self.pin_cache.remove(request_id)
        return True

    def rate_service(self, request_id: str, stars: int, comment: Optional[str] = None) -> Rating:
        if not 1 <= stars <= 5:
            raise ClientValidationError("stars must be between 1 and 5")
        data = self._call(
            "POST",
            f"/requests/{request_id}/rating",
            json={"actor_user_id": self.user_id, "stars": stars, "comment": comment},
        )
        return Rating.model_validate(data)

    def get_available_requests(self) -> List[ServiceRequest]:
        rows = self._call("GET", "/requests/available", params={"operator_id": self.user_id})
        return [ServiceRequest.model_validate(row) for row in rows]

    def accept_request(self, request_id: str) -> AcceptOutcome:
        """Claim a request; losing a race refreshes the available list instead of raising."""
        try:
            data = self._call("POST", f"/requests/{request_id}/accept", json={"actor_user_id": self.user_id})
        except RequestNoLongerAvailableError:
            return AcceptOutcome(accepted=False, available=self.get_available_requests())
        return AcceptOutcome(accepted=True, request=ServiceRequest.model_validate(data))

    def mark_en_route(self, request_id: str) -> ServiceRequest:
        data = self._call("POST", f"/requests/{request_id}/en-route", json={"actor_user_id": self.user_id})
        return ServiceRequest.model_validate(data)

    def verify_request_pin(self, request_id: str, pin: str) -> bool:
        if not PIN_PATTERN.match(pin or ""):
            raise ClientValidationError("The PIN has 4 digits")
        data = self._call(
            "POST",
            f"/requests/{request_id}/verify-pin",
            json={"actor_user_id": self.user_id, "pin": pin},
        )
        return bool(data.get("valid"))

    def complete_request(self, request_id: str) -> ServiceRequest:
        data = self._call("POST", f"/requests/{request_id}/complete", json={"actor_user_id": self.user_id})
        return ServiceRequest.model_validate(data)

    def update_location(
        self,
        lat: float,
        lng: float,
        *,
        heading: Optional[float] = None,
        speed: Optional[float] = None,
        is_online: bool = True,
    ) -> OperatorLocation:
        data = self._call(
            "POST",
            f"/operators/{self.user_id}/location",
            json={
                "actor_user_id": self.user_id,
                "lat": lat,
                "lng": lng,
                "heading": heading,
                "speed": speed,
                "is_online": is_online,
            },
        )
        return OperatorLocation.model_validate(data)

    def set_offline(self) -> Optional[OperatorLocation]:
        data = self._call("POST", f"/operators/{self.user_id}/offline", json={"actor_user_id": self.user_id})
        return OperatorLocation.model_validate(data) if data else None

    def get_operator_presence(self, operator_id: str) -> OperatorPresence:
        data = self._call("GET", f"/operators/{operator_id}/presence", params={"actor_user_id": self.user_id})
        return OperatorPresence.model_validate(data)

    def send_message(self, request_id: str, message: str) -> RequestMessage:
        text = (message or "").strip()
        if not text:
            raise ClientValidationError("Message cannot be empty")
        if len(text) > MESSAGE_MAX_LENGTH:
            raise ClientValidationError(f"Message must be at most {MESSAGE_MAX_LENGTH} characters")
        data = self._call(
            "POST",
            f"/requests/{request_id}/messages",
            json={"actor_user_id": self.user_id, "message": text},
        )
        return RequestMessage.model_validate(data)

    def list_messages(self, request_id: str) -> List[RequestMessage]:
        rows = self._call("GET", f"/requests/{request_id}/messages", params={"actor_user_id": self.user_id})
        return [RequestMessage.model_validate(row) for row in rows]

    def get_request_eta(self, request_id: str) -> EtaResult:
        data = self._call("GET", f"/requests/{request_id}/eta", params={"actor_user_id": self.user_id})
        return EtaResult.model_validate(data)

    def changes(self, since: int, *, topics: Iterable[str] = (), wait_seconds: float = 0.0) -> ChangeBatch:
        params: Dict[str, Any] = {"since": since, "wait_seconds": wait_seconds}
        topic_list = [topic for topic in topics if topic]
        if topic_list:
            params["topics"] = ",".join(topic_list)
        return ChangeBatch.model_validate(self._call("GET", "/realtime/changes", params=params))
