from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Header, Query

from app.auth import assert_actor_authorized
from app.models import (
    ActorRequest,
    CancelRequest,
    PricingRule,
    PricingRuleCreateRequest,
    Profile,
    Provider,
    ProviderCreateRequest,
    ProviderUpdateRequest,
    RatingView,
    ServiceRequest,
    ServiceStats,
    ServiceTypePricing,
    ServiceTypePricingUpdate,
    UserRoleUpdateRequest,
)
from app.routers.errors import raise_request_http_error
from app.services.notification_store import notification_store
from app.services.request_store import RequestStoreError, request_store

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/users", response_model=list[Profile])
def list_users(
    actor_user_id: str = Query(...),
    role: Optional[str] = Query(default=None),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=actor_user_id, authorization=authorization)
    try:
        return request_store.list_profiles(actor_user_id=actor_user_id, role=role)
    except RequestStoreError as exc:
        raise_request_http_error(exc)


@router.post("/users/{user_id}/role", response_model=Profile)
def update_user_role(
    user_id: str,
    payload: UserRoleUpdateRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.actor_user_id, authorization=authorization)
    try:
        return request_store.admin_update_user_role(
            actor_user_id=payload.actor_user_id,
            user_id=user_id,
            new_role=payload.new_role,
            provider_id=payload.provider_id,
        )
    except RequestStoreError as exc:
        raise_request_http_error(exc)


@router.get("/providers", response_model=list[Provider])
def list_providers(active_only: bool = Query(default=False)):
    return request_store.list_providers(active_only=active_only)


@router.post("/providers", response_model=Provider)
def create_provider(
    payload: ProviderCreateRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.actor_user_id, authorization=authorization)
    try:
        return request_store.create_provider(
            actor_user_id=payload.actor_user_id,
            name=payload.name,
            tow_type_supported=payload.tow_type_supported,
            is_active=payload.is_active,
        )
    except RequestStoreError as exc:
        raise_request_http_error(exc)


@router.patch("/providers/{provider_id}", response_model=Provider)
def update_provider(
    provider_id: str,
    payload: ProviderUpdateRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.actor_user_id, authorization=authorization)
    try:
        return request_store.update_provider(
            actor_user_id=payload.actor_user_id,
            provider_id=provider_id,
            name=payload.name,
            tow_type_supported=payload.tow_type_supported,
            is_active=payload.is_active,
        )
    except RequestStoreError as exc:
        raise_request_http_error(exc)


@router.get("/pricing-rules", response_model=list[PricingRule])
def list_pricing_rules():
    return request_store.list_pricing_rules()


@router.get("/pricing-rules/active", response_model=Optional[PricingRule])
def get_active_pricing_rule():
    return request_store.get_active_pricing_rule()


@router.post("/pricing-rules", response_model=PricingRule)
def create_pricing_rule(
    payload: PricingRuleCreateRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.actor_user_id, authorization=authorization)
    try:
        return request_store.create_pricing_rule(
            actor_user_id=payload.actor_user_id,
            base_exit_fee=payload.base_exit_fee,
            included_km=payload.included_km,
            price_per_km_light=payload.price_per_km_light,
            price_per_km_heavy=payload.price_per_km_heavy,
            currency=payload.currency,
        )
    except RequestStoreError as exc:
        raise_request_http_error(exc)


@router.post("/pricing-rules/{rule_id}/activate", response_model=PricingRule)
def activate_pricing_rule(
    rule_id: str,
    payload: ActorRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.actor_user_id, authorization=authorization)
    try:
        return request_store.set_active_pricing_rule(actor_user_id=payload.actor_user_id, rule_id=rule_id)
    except RequestStoreError as exc:
        raise_request_http_error(exc)


@router.delete("/pricing-rules/{rule_id}", response_model=dict)
def delete_pricing_rule(
    rule_id: str,
    actor_user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=actor_user_id, authorization=authorization)
    try:
        request_store.delete_pricing_rule(actor_user_id=actor_user_id, rule_id=rule_id)
    except RequestStoreError as exc:
        raise_request_http_error(exc)
    return {"status": "deleted"}


@router.get("/service-pricing", response_model=list[ServiceTypePricing])
def list_service_pricing(active_only: bool = Query(default=False)):
    return request_store.list_service_type_pricing(active_only=active_only)


@router.put("/service-pricing/{service_type}", response_model=ServiceTypePricing)
def upsert_service_pricing(
    service_type: str,
    payload: ServiceTypePricingUpdate,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.actor_user_id, authorization=authorization)
    try:
        return request_store.upsert_service_type_pricing(
            actor_user_id=payload.actor_user_id,
            service_type=service_type,
            base_price=payload.base_price,
            extra_fee=payload.extra_fee,
            display_name=payload.display_name,
            is_active=payload.is_active,
            sort_order=payload.sort_order,
        )
    except RequestStoreError as exc:
        raise_request_http_error(exc)


@router.get("/requests", response_model=list[ServiceRequest])
def list_all_requests(
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


@router.post("/requests/{request_id}/cancel", response_model=ServiceRequest)
def admin_cancel_request(
    request_id: str,
    payload: CancelRequest,
    background_tasks: BackgroundTasks,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.actor_user_id, authorization=authorization)
    try:
        cancelled = request_store.admin_cancel_request(
            request_id,
            actor_user_id=payload.actor_user_id,
            reason=payload.reason,
        )
    except RequestStoreError as exc:
        raise_request_http_error(exc)
    background_tasks.add_task(notification_store.notify_request_status, cancelled)
    return cancelled


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


@router.get("/ratings", response_model=list[RatingView])
def list_all_ratings(
    actor_user_id: str = Query(...),
    operator_id: Optional[str] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=actor_user_id, authorization=authorization)
    try:
        return request_store.list_all_ratings(actor_user_id=actor_user_id, operator_id=operator_id, limit=limit)
    except RequestStoreError as exc:
        raise_request_http_error(exc)
