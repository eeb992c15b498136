from typing import Optional

from fastapi import APIRouter, Header, Query

from app.auth import assert_actor_authorized
from app.models import RequestEvent, ServiceRequest, ServiceStats
from app.routers.errors import raise_request_http_error
from app.services.request_store import RequestStoreError, request_store

# Read-only oversight views; ADMIN is accepted as well.
router = APIRouter(prefix="/mop", tags=["mop"])


@router.get("/stats", response_model=ServiceStats)
def get_stats(
    actor_user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=actor_user_id, authorization=authorization)
    try:
        return request_store.get_service_stats(actor_user_id=actor_user_id)
    except RequestStoreError as exc:
        raise_request_http_error(exc)


@router.get("/requests", response_model=list[ServiceRequest])
def list_requests(
    actor_user_id: str = Query(...),
    status: Optional[str] = Query(default=None),
    limit: int = Query(default=200, ge=1, le=1000),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=actor_user_id, authorization=authorization)
    try:
        return request_store.list_requests(actor_user_id=actor_user_id, status=status, limit=limit)
    except RequestStoreError as exc:
        raise_request_http_error(exc)


@router.get("/requests/{request_id}/audit-trail", response_model=list[RequestEvent])
def get_audit_trail(
    request_id: str,
    actor_user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=actor_user_id, authorization=authorization)
    try:
        return request_store.get_request_audit_trail(request_id, actor_user_id=actor_user_id)
    except RequestStoreError as exc:
        raise_request_http_error(exc)
