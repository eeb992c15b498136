import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Header, HTTPException, Query

from app.auth import assert_actor_authorized
from app.models import (
    ActorRequest,
    CancelRequest,
    CancelResult,
    CreateServiceRequestInput,
    CreateServiceRequestResult,
    EtaResult,
    MessageCreateRequest,
    PinVerifyRequest,
    PinVerifyResult,
    Rating,
    RatingCreateRequest,
    RequestMessage,
    ServiceRequest,
)
from app.routers.errors import raise_request_http_error, rpc_failure
from app.services.distance_estimator import CoordinateValidationError, distance_estimator
from app.services.mop_notifier import mop_notifier
from app.services.notification_store import notification_store
from app.services.request_store import RequestStoreError, RequestStorePermissionError, request_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/requests", tags=["requests"])


def _notify_mop(event_type: str, request: ServiceRequest) -> None:
    if not mop_notifier.enabled:
        return
    try:
        profile = request_store.get_profile(request.user_id)
        message_id = mop_notifier.notify(event_type, request, user_name=profile.full_name if profile else "")
        if message_id is None:
            return
        request_store.record_event(
            request.id,
            actor_id="system",
            actor_role="SYSTEM",
            event_type="MOP_NOTIFIED",
            payload={"trigger": event_type, "message_id": message_id},
        )
    except Exception:
        logger.exception("MOP notification failed for request %s (%s)", request.id, event_type)


def _approach_distance_km(operator_id: str, request: ServiceRequest) -> Optional[float]:
    presence = request_store.get_operator_presence(operator_id)
    if presence.presence != "live" or presence.location is None:
        return None
    try:
        eta = distance_estimator.eta(
            presence.location.lat,
            presence.location.lng,
            request.pickup_lat,
            request.pickup_lng,
        )
    except CoordinateValidationError:
        logger.info("Operator %s is outside the service area; approach distance skipped", operator_id)
        return None
    return eta.distance_km


@router.post("", response_model=CreateServiceRequestResult)
def create_service_request(
    payload: CreateServiceRequestInput,
    background_tasks: BackgroundTasks,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.actor_user_id, authorization=authorization)
    try:
        distance_estimator.validate_point(payload.pickup.lat, payload.pickup.lng, label="pickup")
        trip = None
        if payload.service_type == "tow":
            if payload.dropoff is None:
                raise CoordinateValidationError("Dropoff location is required for tow requests")
            trip = distance_estimator.trip_distance(
                payload.pickup.lat,
                payload.pickup.lng,
                payload.dropoff.lat,
                payload.dropoff.lng,
            )
        request, pin = request_store.create_service_request(
            actor_user_id=payload.actor_user_id,
            pickup=payload.pickup,
            dropoff=payload.dropoff,
            service_type=payload.service_type,
            tow_type=payload.tow_type,
            incident_type=payload.incident_type,
            service_details=payload.service_details,
            notes=payload.notes,
            photo_url=payload.photo_url,
            trip=trip,
        )
    except (RequestStoreError, CoordinateValidationError) as exc:
        return rpc_failure(exc)
    background_tasks.add_task(_notify_mop, "REQUEST_CREATED", request)
    return CreateServiceRequestResult(request_id=request.id, pin=pin)


@router.get("", response_model=list[ServiceRequest])
def list_requests(
    user_id: str = Query(...),
    role: Optional[str] = Query(default=None),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        return request_store.list_requests_for_user(user_id, role=role)
    except RequestStoreError as exc:
        raise_request_http_error(exc)


@router.get("/active", response_model=Optional[ServiceRequest])
def get_active_request(
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    return request_store.get_active_request(user_id)


@router.get("/available", response_model=list[ServiceRequest])
def list_available_requests(
    operator_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=operator_id, authorization=authorization)
    try:
        return request_store.get_available_requests_for_operator(operator_id)
    except RequestStoreError as exc:
        raise_request_http_error(exc)


@router.get("/{request_id}", response_model=ServiceRequest)
def get_request(
    request_id: str,
    actor_user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=actor_user_id, authorization=authorization)
    try:
        return request_store.get_request(request_id, actor_user_id=actor_user_id)
    except RequestStoreError as exc:
        raise_request_http_error(exc)


@router.post("/{request_id}/accept", response_model=ServiceRequest)
def accept_request(
    request_id: str,
    payload: ActorRequest,
    background_tasks: BackgroundTasks,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.actor_user_id, authorization=authorization)
    try:
        current = request_store.get_request(request_id, actor_user_id=payload.actor_user_id)
        approach_km = _approach_distance_km(payload.actor_user_id, current)
    except RequestStorePermissionError:
        # Already claimed by someone else; the claim below reports it.
        approach_km = None
    except RequestStoreError as exc:
        raise_request_http_error(exc)
    try:
        accepted = request_store.accept_request(
            request_id,
            operator_id=payload.actor_user_id,
            approach_km=approach_km,
        )
    except RequestStoreError as exc:
        raise_request_http_error(exc)
    background_tasks.add_task(notification_store.notify_request_status, accepted)
    return accepted


@router.post("/{request_id}/en-route", response_model=ServiceRequest)
def mark_en_route(
    request_id: str,
    payload: ActorRequest,
    background_tasks: BackgroundTasks,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.actor_user_id, authorization=authorization)
    try:
        updated = request_store.mark_en_route(request_id, operator_id=payload.actor_user_id)
    except RequestStoreError as exc:
        raise_request_http_error(exc)
    background_tasks.add_task(notification_store.notify_request_status, updated)
    return updated


@router.post("/{request_id}/verify-pin", response_model=PinVerifyResult)
def verify_pin(
    request_id: str,
    payload: PinVerifyRequest,
    background_tasks: BackgroundTasks,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.actor_user_id, authorization=authorization)
    try:
        valid = request_store.verify_request_pin(request_id, operator_id=payload.actor_user_id, pin=payload.pin)
        if valid:
            updated = request_store.get_request(request_id, actor_user_id=payload.actor_user_id)
            background_tasks.add_task(notification_store.notify_request_status, updated)
    except RequestStoreError as exc:
        raise_request_http_error(exc)
    return PinVerifyResult(valid=valid)


@router.post("/{request_id}/complete", response_model=ServiceRequest)
def complete_request(
    request_id: str,
    payload: ActorRequest,
    background_tasks: BackgroundTasks,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.actor_user_id, authorization=authorization)
    try:
        completed = request_store.complete_request(request_id, operator_id=payload.actor_user_id)
    except RequestStoreError as exc:
        raise_request_http_error(exc)
    background_tasks.add_task(notification_store.notify_request_status, completed)
    background_tasks.add_task(_notify_mop, "REQUEST_COMPLETED", completed)
    return completed


@router.post("/{request_id}/cancel", response_model=CancelResult)
def cancel_request(
    request_id: str,
    payload: CancelRequest,
    background_tasks: BackgroundTasks,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.actor_user_id, authorization=authorization)
    try:
        cancelled = request_store.cancel_service_request(
            request_id,
            actor_user_id=payload.actor_user_id,
            reason=payload.reason,
        )
    except RequestStoreError as exc:
        return rpc_failure(exc)
    background_tasks.add_task(notification_store.notify_request_status, cancelled)
    return CancelResult(success=True)


@router.post("/{request_id}/rating", response_model=Rating)
def rate_service(
    request_id: str,
    payload: RatingCreateRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.actor_user_id, authorization=authorization)
    try:
        return request_store.rate_service(
            request_id,
            actor_user_id=payload.actor_user_id,
            stars=payload.stars,
            comment=payload.comment,
        )
    except RequestStoreError as exc:
        raise_request_http_error(exc)


@router.get("/{request_id}/messages", response_model=list[RequestMessage])
def list_messages(
    request_id: str,
    actor_user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=actor_user_id, authorization=authorization)
    try:
        return request_store.list_messages(request_id, actor_user_id=actor_user_id)
    except RequestStoreError as exc:
        raise_request_http_error(exc)


@router.post("/{request_id}/messages", response_model=RequestMessage)
def send_message(
    request_id: str,
    payload: MessageCreateRequest,
    background_tasks: BackgroundTasks,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.actor_user_id, authorization=authorization)
    try:
        message = request_store.send_message(request_id, actor_user_id=payload.actor_user_id, message=payload.message)
        request = request_store.get_request(request_id, actor_user_id=payload.actor_user_id)
    except RequestStoreError as exc:
        raise_request_http_error(exc)
    background_tasks.add_task(notification_store.notify_new_message, request, payload.actor_user_id, message.message)
    return message


@router.get("/{request_id}/eta", response_model=EtaResult)
def get_request_eta(
    request_id: str,
    actor_user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=actor_user_id, authorization=authorization)
    try:
        request = request_store.get_request(request_id, actor_user_id=actor_user_id)
    except RequestStoreError as exc:
        raise_request_http_error(exc)
    if not request.operator_id:
        raise HTTPException(status_code=409, detail="No operator assigned yet")
    location = request_store.get_operator_location(request.operator_id)
    if location is None:
        raise HTTPException(status_code=409, detail="Operator location unavailable")
    try:
        if request.status == "active":
            return distance_estimator.eta(location.lat, location.lng, request.dropoff_lat, request.dropoff_lng)
        return distance_estimator.eta(location.lat, location.lng, request.pickup_lat, request.pickup_lng)
    except CoordinateValidationError as exc:
        raise_request_http_error(exc)
