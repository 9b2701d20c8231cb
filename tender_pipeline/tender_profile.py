"""Tender service profile helpers.

Upstream document analysis delivers camelCase metadata (``personCount``,
``mealTypes`` ...). Tender records are stored snake_case with the service
specification nested under ``requirements.specifications``.
"""

from __future__ import annotations

from collections.abc import Mapping
from decimal import Decimal, InvalidOperation
from typing import Any

from pydantic import ValidationError

from tender_pipeline.errors import PipelineError
from tender_pipeline.money import to_decimal
from tender_pipeline.schemas import PortionSpec, SimulationInput, StaffMember

SERVICE_PROFILE_FIELDS = ("persons", "estimated_value", "meals_per_day", "duration_days", "portion_specs")

SERVICE_PROFILE_RECOMMENDATIONS = [
    "Provide person count (personCount > 0)",
    "Specify estimated value (estimatedValue > 0)",
    "Define meal types and portion specifications",
    "Set service duration in days",
]

_METADATA_KEYS: dict[str, tuple[str, ...]] = {
    "title": ("title",),
    "person_count": ("personCount", "person_count"),
    "estimated_value": ("estimatedValue", "estimated_value"),
    "has_high_risk": ("hasHighRisk", "has_high_risk"),
    "has_technical_specs": ("hasTechnicalSpecs", "has_technical_specs"),
}
_SPEC_KEYS: dict[str, tuple[str, ...]] = {
    "meal_types": ("mealTypes", "meal_types"),
    "service_days": ("serviceDays", "service_days"),
    "portion_sizes": ("portionSizes", "portion_sizes"),
    "market_prices": ("marketPrices", "market_prices"),
    "staffing": ("staffing",),
    "location": ("location",),
    "service_days_per_week": ("serviceDaysPerWeek", "service_days_per_week"),
}


def deep_merge(base: Mapping[str, Any], patch: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in patch.items():
        if value is None:
            continue
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def _first(source: Mapping[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        if key in source and source[key] is not None:
            return source[key]
    return None


def positive_number(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = to_decimal(value)
    except (TypeError, InvalidOperation):
        return None
    if not number.is_finite() or number <= 0:
        return None
    return number


def normalize_analysis_metadata(metadata: Mapping[str, Any] | None) -> dict[str, Any]:
    """Map analysis metadata onto the tender record shape; absent keys are omitted."""
    if not metadata:
        return {}
    patch: dict[str, Any] = {}
    for field, keys in _METADATA_KEYS.items():
        value = _first(metadata, keys)
        if value is not None:
            patch[field] = value
    specs: dict[str, Any] = {}
    nested = metadata.get("requirements")
    nested_specs = nested.get("specifications") if isinstance(nested, Mapping) else None
    for source in (nested_specs if isinstance(nested_specs, Mapping) else {}, metadata):
        for field, keys in _SPEC_KEYS.items():
            value = _first(source, keys)
            if value is not None:
                specs[field] = value
    if specs:
        patch["requirements"] = {"specifications": specs}
    return patch


def specifications(tender: Mapping[str, Any] | None) -> dict[str, Any]:
    if not tender:
        return {}
    requirements = tender.get("requirements")
    if not isinstance(requirements, Mapping):
        return {}
    specs = requirements.get("specifications")
    return dict(specs) if isinstance(specs, Mapping) else {}


def service_profile_missing(tender: Mapping[str, Any]) -> list[str]:
    specs = specifications(tender)
    missing: list[str] = []
    if positive_number(tender.get("person_count")) is None:
        missing.append("persons")
    if positive_number(tender.get("estimated_value")) is None:
        missing.append("estimated_value")
    meal_types = specs.get("meal_types")
    if not isinstance(meal_types, (list, tuple)) or not meal_types:
        missing.append("meals_per_day")
    if positive_number(specs.get("service_days")) is None:
        missing.append("duration_days")
    portion_sizes = specs.get("portion_sizes")
    if not isinstance(portion_sizes, Mapping) or not portion_sizes:
        missing.append("portion_specs")
    return missing


def portion_categories(tender: Mapping[str, Any]) -> list[str]:
    portion_sizes = specifications(tender).get("portion_sizes")
    if not isinstance(portion_sizes, Mapping):
        return []
    return [str(k) for k in portion_sizes]


def tender_prices(tender: Mapping[str, Any]) -> dict[str, Decimal]:
    """TL/kg prices carried by the tender itself (portion entries, then ``market_prices``)."""
    specs = specifications(tender)
    prices: dict[str, Decimal] = {}
    market = specs.get("market_prices")
    if isinstance(market, Mapping):
        for category, value in market.items():
            price = positive_number(value)
            if price is not None:
                prices[str(category)] = price
    portion_sizes = specs.get("portion_sizes")
    if isinstance(portion_sizes, Mapping):
        for category, entry in portion_sizes.items():
            if isinstance(entry, Mapping):
                price = positive_number(_first(entry, ("market_price_per_kg", "price_per_kg", "pricePerKg")))
                if price is not None:
                    prices[str(category)] = price
    return prices


def unpriced_categories(tender: Mapping[str, Any], provider_prices: Mapping[str, Decimal]) -> list[str]:
    known = set(tender_prices(tender)) | set(provider_prices)
    return [c for c in portion_categories(tender) if c not in known]


def _portion_spec(category: str, entry: Any, price: Decimal) -> PortionSpec:
    if isinstance(entry, Mapping):
        grams = _first(entry, ("gram_per_portion", "grams", "gram"))
        waste = _first(entry, ("waste_percentage", "wastePercentage"))
    else:
        grams, waste = entry, None
    return PortionSpec(
        category=category,
        gram_per_portion=grams,
        market_price_per_kg=float(price),
        waste_percentage=waste,
    )


def build_simulation_input(
    tender: Mapping[str, Any],
    *,
    provider_prices: Mapping[str, Decimal] | None = None,
    doc_hash: str | None = None,
) -> SimulationInput:
    """Derive the engine input from a tender record.

    Provider prices win over prices carried in the tender. A portion category
    with no price at all leaves the step waiting for input.
    """
    specs = specifications(tender)
    portion_sizes = specs.get("portion_sizes")
    if not isinstance(portion_sizes, Mapping) or not portion_sizes:
        raise PipelineError(
            code="SIMULATION_INPUT_INVALID",
            message="tender has no portion specifications",
            details={"field": "portion_specs"},
        )
    prices = {**tender_prices(tender), **dict(provider_prices or {})}
    unpriced = [str(c) for c in portion_sizes if str(c) not in prices]
    if unpriced:
        raise PipelineError(
            code="WAITING_INPUT",
            message=f"no market price for: {', '.join(unpriced)}",
            details={"missing": ["market_prices"], "unpriced": unpriced},
        )

    meal_types = specs.get("meal_types")
    service_days = positive_number(specs.get("service_days"))
    staffing_raw = specs.get("staffing")
    try:
        portions = [_portion_spec(str(c), entry, prices[str(c)]) for c, entry in portion_sizes.items()]
        staffing = (
            [StaffMember.model_validate(dict(s)) for s in staffing_raw]
            if isinstance(staffing_raw, list) and staffing_raw
            else None
        )
        return SimulationInput(
            persons=int(tender["person_count"]) if tender.get("person_count") is not None else None,
            meals_per_day=len(meal_types) if isinstance(meal_types, (list, tuple)) else None,
            duration_days=int(service_days) if service_days is not None else None,
            portion_specs=portions,
            staffing=staffing,
            service_days_per_week=specs.get("service_days_per_week"),
            location=specs.get("location"),
            doc_hash=doc_hash or tender.get("doc_hash"),
            confidence=tender.get("confidence"),
        )
    except (ValidationError, TypeError, ValueError) as exc:
        raise PipelineError(
            code="SIMULATION_INPUT_INVALID",
            message=f"tender service profile cannot be simulated: {exc}",
            details={"tender_id": tender.get("tender_id")},
        ) from exc
