from typing import Optional

from fastapi import APIRouter, Header, Query

from app.auth import assert_actor_authorized
from app.models import ActorRequest, OperatorLocation, OperatorLocationUpdate, OperatorPresence, OperatorRatingsView
from app.routers.errors import raise_request_http_error
from app.services.request_store import RequestStoreError, RequestStorePermissionError, request_store

router = APIRouter(prefix="/operators", tags=["operators"])


@router.post("/{operator_id}/location", response_model=OperatorLocation)
def upsert_location(
    operator_id: str,
    payload: OperatorLocationUpdate,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.actor_user_id, authorization=authorization)
    if payload.actor_user_id != operator_id:
        raise_request_http_error(RequestStorePermissionError("Operators can only report their own location"))
    try:
        return request_store.upsert_operator_location(
            operator_id,
            lat=payload.lat,
            lng=payload.lng,
            heading=payload.heading,
            speed=payload.speed,
            is_online=payload.is_online,
        )
    except RequestStoreError as exc:
        raise_request_http_error(exc)


@router.post("/{operator_id}/offline", response_model=Optional[OperatorLocation])
def set_offline(
    operator_id: str,
    payload: ActorRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.actor_user_id, authorization=authorization)
    if payload.actor_user_id != operator_id:
        raise_request_http_error(RequestStorePermissionError("Operators can only change their own presence"))
    try:
        return request_store.set_operator_offline(operator_id)
    except RequestStoreError as exc:
        raise_request_http_error(exc)


@router.get("/{operator_id}/presence", response_model=OperatorPresence)
def get_presence(
    operator_id: str,
    actor_user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=actor_user_id, authorization=authorization)
    try:
        return request_store.view_operator_presence(operator_id, actor_user_id=actor_user_id)
    except RequestStoreError as exc:
        raise_request_http_error(exc)


@router.get("/{operator_id}/ratings", response_model=OperatorRatingsView)
def list_ratings(operator_id: str):
    return request_store.list_operator_ratings(operator_id)
