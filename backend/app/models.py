from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field

UserRole = Literal["USER", "OPERATOR", "ADMIN", "MOP"]
ServiceType = Literal["tow", "battery", "tire", "fuel", "locksmith"]
TowType = Literal["light", "heavy"]
RequestStatus = Literal["initiated", "assigned", "en_route", "active", "completed", "cancelled"]
RequestEventType = Literal[
    "REQUEST_CREATED",
    "OPERATOR_ACCEPTED",
    "OPERATOR_EN_ROUTE",
    "PIN_VERIFIED",
    "STATUS_CHANGED",
    "OPERATOR_CANCELLED",
    "ADMIN_CANCELLED",
    "USER_CANCELLED",
    "PRICE_COMPUTED",
    "MOP_NOTIFIED",
    "MESSAGE_SENT",
    "RATING_SUBMITTED",
]
PresenceState = Literal["live", "stale", "offline", "unknown"]


class Profile(BaseModel):
    id: str
    role: UserRole
    full_name: str = ""
    phone: str = ""
    provider_id: Optional[str] = None
    provider_name: Optional[str] = None
    created_at: str
    updated_at: str


class Provider(BaseModel):
    id: str
    name: str
    tow_type_supported: Literal["light", "heavy", "both"] = "both"
    is_active: bool = True
    created_at: str
    updated_at: str


class ProviderCreateRequest(BaseModel):
    actor_user_id: str
    name: str
    tow_type_supported: Literal["light", "heavy", "both"] = "both"
    is_active: bool = True


class ProviderUpdateRequest(BaseModel):
    actor_user_id: str
    name: Optional[str] = None
    tow_type_supported: Optional[Literal["light", "heavy", "both"]] = None
    is_active: Optional[bool] = None


class UserRoleUpdateRequest(BaseModel):
    actor_user_id: str
    new_role: UserRole
    provider_id: Optional[str] = None


class LocationWithAddress(BaseModel):
    lat: float
    lng: float
    address: str = ""


class PriceBreakdown(BaseModel):
    base_exit_fee: float
    included_km: float
    extra_km: float
    price_per_km: float
    extra_km_charge: float
    total: float
    currency: str
    tow_type: TowType
    distance_operator_to_pickup_km: Optional[float] = None
    distance_pickup_to_dropoff_km: float
    total_distance_km: float


class FlatPriceBreakdown(BaseModel):
    service_type: ServiceType
    base_price: float
    extra_fee: float
    extra_units: int
    total: float
    currency: str


class ServiceRequest(BaseModel):
    id: str
    user_id: str
    operator_id: Optional[str] = None
    provider_id: Optional[str] = None
    service_type: ServiceType
    tow_type: Optional[TowType] = None
    incident_type: str = ""
    service_details: Dict[str, Any] = Field(default_factory=dict)
    notes: Optional[str] = None
    photo_url: Optional[str] = None
    pickup_lat: float
    pickup_lng: float
    pickup_address: str
    dropoff_lat: float
    dropoff_lng: float
    dropoff_address: str
    status: RequestStatus
    distance_operator_to_pickup_km: Optional[float] = None
    distance_pickup_to_dropoff_km: Optional[float] = None
    distance_is_fallback: bool = False
    price_breakdown: Optional[Dict[str, Any]] = None
    total_price: Optional[float] = None
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[UserRole] = None
    operator_name: Optional[str] = None
    provider_name: Optional[str] = None
    created_at: str
    updated_at: str
    assigned_at: Optional[str] = None
    en_route_at: Optional[str] = None
    pin_verified_at: Optional[str] = None
    completed_at: Optional[str] = None
    cancelled_at: Optional[str] = None


class CreateServiceRequestInput(BaseModel):
    actor_user_id: str
    pickup: LocationWithAddress
    dropoff: Optional[LocationWithAddress] = None
    service_type: ServiceType = "tow"
    tow_type: Optional[TowType] = None
    incident_type: str = ""
    service_details: Dict[str, Any] = Field(default_factory=dict)
    notes: Optional[str] = None
    photo_url: Optional[str] = None


class CreateServiceRequestResult(BaseModel):
    success: bool = True
    request_id: str
    pin: str


class RpcFailure(BaseModel):
    success: bool = False
    error: str


class ActorRequest(BaseModel):
    actor_user_id: str


class PinVerifyRequest(BaseModel):
    actor_user_id: str
    pin: str


class PinVerifyResult(BaseModel):
    valid: bool


class CancelRequest(BaseModel):
    actor_user_id: str
    reason: str = ""


class CancelResult(BaseModel):
    success: bool
    error: Optional[str] = None


class RequestEvent(BaseModel):
    id: str
    seq: int
    request_id: str
    actor_id: str
    actor_role: str
    event_type: RequestEventType
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: str


class RatingCreateRequest(BaseModel):
    actor_user_id: str
    stars: int = Field(ge=1, le=5)
    comment: Optional[str] = None


class Rating(BaseModel):
    id: str
    request_id: str
    rater_user_id: str
    rated_operator_id: str
    stars: int = Field(ge=1, le=5)
    comment: Optional[str] = None
    created_at: str


class RatingView(Rating):
    rater_name: Optional[str] = None
    operator_name: Optional[str] = None


class OperatorRatingsView(BaseModel):
    operator_id: str
    average_stars: Optional[float] = None
    count: int = 0
    ratings: list[Rating] = Field(default_factory=list)


class MessageCreateRequest(BaseModel):
    actor_user_id: str
    message: str


class RequestMessage(BaseModel):
    id: str
    seq: int
    request_id: str
    sender_id: str
    message: str
    created_at: str


class OperatorLocationUpdate(BaseModel):
    actor_user_id: str
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    heading: Optional[float] = None
    speed: Optional[float] = None
    is_online: bool = True


class OperatorLocation(BaseModel):
    operator_id: str
    lat: float
    lng: float
    heading: Optional[float] = None
    speed: Optional[float] = None
    is_online: bool
    updated_at: str


class OperatorPresence(BaseModel):
    operator_id: str
    presence: PresenceState
    seconds_since_update: Optional[float] = None
    location: Optional[OperatorLocation] = None


class PricingRule(BaseModel):
    id: str
    base_exit_fee: float
    included_km: float
    price_per_km_light: float
    price_per_km_heavy: float
    currency: str = "USD"
    is_active: bool = False
    created_at: str
    updated_at: str


class PricingRuleCreateRequest(BaseModel):
    actor_user_id: str
    base_exit_fee: float = Field(ge=0)
    included_km: float = Field(ge=0)
    price_per_km_light: float = Field(ge=0)
    price_per_km_heavy: float = Field(ge=0)
    currency: str = "USD"


class ServiceTypePricing(BaseModel):
    service_type: ServiceType
    display_name: str
    base_price: float
    extra_fee: float = 0.0
    currency: str = "USD"
    is_active: bool = True
    sort_order: int = 0


class ServiceTypePricingUpdate(BaseModel):
    actor_user_id: str
    display_name: Optional[str] = None
    base_price: float = Field(ge=0)
    extra_fee: float = Field(default=0.0, ge=0)
    is_active: bool = True
    sort_order: int = 0


class ServiceStats(BaseModel):
    total_requests: int
    initiated: int
    in_progress: int
    completed: int
    cancelled: int
    total_providers: int
    active_providers: int


class DistanceResult(BaseModel):
    success: bool = True
    distance_km: float
    distance_text: str
    duration_minutes: int
    duration_text: str
    is_fallback: bool = False
    fallback_reason: Optional[str] = None


class EtaResult(BaseModel):
    success: bool = True
    eta_minutes: int
    eta_text: str
    distance_km: float
    distance_text: str
    is_fallback: bool = False
    fallback_reason: Optional[str] = None
    overview_polyline: Optional[str] = None


class ChangeRecord(BaseModel):
    seq: int
    table: str
    record_id: str
    request_id: Optional[str] = None
    topics: list[str] = Field(default_factory=list)
    created_at: str


class ChangeBatch(BaseModel):
    cursor: int
    reset: bool = False
    changes: list[ChangeRecord] = Field(default_factory=list)


class AuthLoginRequest(BaseModel):
    user_id: str
    password: str = "gruas-demo"
    full_name: str = ""
    phone: str = ""


class AuthLoginResponse(BaseModel):
    access_token: str
    token_type: Literal["bearer"] = "bearer"
    user_id: str
    role: UserRole
    expires_at: str


class AuthMeResponse(BaseModel):
    user_id: str
    role: Optional[UserRole] = None


class DeviceTokenRegisterRequest(BaseModel):
    user_id: str
    device_token: str
    platform: Literal["android", "ios", "web"] = "android"


class NotificationRecord(BaseModel):
    id: str
    user_id: str
    title: str
    body: str
    category: Literal["request", "message", "system"] = "system"
    read: bool = False
    created_at: str
    deep_link: Optional[str] = None
