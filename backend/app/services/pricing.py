from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional

from app.models import FlatPriceBreakdown, PriceBreakdown, PricingRule, ServiceTypePricing


class PricingError(ValueError):
    pass


def round_currency(value: float) -> float:
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def compute_tow_price(
    rule: PricingRule,
    *,
    tow_type: str,
    distance_km: float,
    distance_operator_to_pickup_km: Optional[float] = None,
) -> PriceBreakdown:
    """Base exit fee plus the per-km rate for the tow type beyond the included allowance.

    Only the pickup-to-dropoff leg is charged; the operator approach distance is
    carried in the breakdown for display.
    """
    if distance_km < 0:
        raise PricingError("distance_km must be non-negative")
    if tow_type == "light":
        price_per_km = rule.price_per_km_light
    elif tow_type == "heavy":
        price_per_km = rule.price_per_km_heavy
    else:
        raise PricingError(f"Unknown tow_type: {tow_type}")

    extra_km = max(0.0, distance_km - rule.included_km)
    extra_km_charge = round_currency(extra_km * price_per_km)
    total = round_currency(rule.base_exit_fee + extra_km * price_per_km)
    approach = distance_operator_to_pickup_km or 0.0
    return PriceBreakdown(
        base_exit_fee=rule.base_exit_fee,
        included_km=rule.included_km,
        extra_km=round(extra_km, 2),
        price_per_km=price_per_km,
        extra_km_charge=extra_km_charge,
        total=total,
        currency=rule.currency,
        tow_type=tow_type,  # type: ignore[arg-type]
        distance_operator_to_pickup_km=distance_operator_to_pickup_km,
        distance_pickup_to_dropoff_km=round(distance_km, 2),
        total_distance_km=round(distance_km + approach, 2),
    )


def flat_extra_units(service_type: str, service_details: Dict[str, Any]) -> int:
    if service_type == "tire":
        return 0 if bool(service_details.get("has_spare", False)) else 1
    if service_type == "fuel":
        try:
            gallons = int(service_details.get("gallons", 1))
        except (TypeError, ValueError) as exc:
            raise PricingError("gallons must be a whole number") from exc
        if gallons < 1:
            raise PricingError("gallons must be at least 1")
        return gallons - 1
    return 0


def compute_flat_price(pricing: ServiceTypePricing, service_details: Dict[str, Any]) -> FlatPriceBreakdown:
    extra_units = flat_extra_units(pricing.service_type, service_details)
    total = round_currency(pricing.base_price + pricing.extra_fee * extra_units)
    return FlatPriceBreakdown(
        service_type=pricing.service_type,
        base_price=pricing.base_price,
        extra_fee=pricing.extra_fee,
        extra_units=extra_units,
        total=total,
        currency=pricing.currency,
    )
