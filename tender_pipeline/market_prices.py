from __future__ import annotations

import logging
from collections.abc import Iterable
from decimal import Decimal
from typing import Protocol

from pydantic import BaseModel, Field

from tender_pipeline.money import as_float, round_money, to_decimal

logger = logging.getLogger(__name__)

_UNIT_TO_KG: dict[str, Decimal] = {
    "kg": Decimal("1"),
    "g": Decimal("0.001"),
    "gr": Decimal("0.001"),
    "ton": Decimal("1000"),
}


class MarketPrice(BaseModel):
    source: str
    product: str
    unit: str = "kg"
    price: float = Field(ge=0)
    date: str = ""
    confidence: float = Field(default=1.0, ge=0, le=1)


class PriceSource(BaseModel):
    name: str
    price: float


class AveragePrice(BaseModel):
    product: str
    unit: str
    average: float
    confidence: float
    sources: list[PriceSource]


class PriceProvider(Protocol):
    def get_prices(self, products: list[str]) -> list[MarketPrice]: ...


class StaticPriceProvider:
    """Serves a fixed price list, e.g. one loaded from a JSON file by a script."""

    def __init__(self, prices: Iterable[MarketPrice | dict]) -> None:
        self._prices = [p if isinstance(p, MarketPrice) else MarketPrice.model_validate(p) for p in prices]

    def get_prices(self, products: list[str]) -> list[MarketPrice]:
        wanted = {p.strip().lower() for p in products}
        return [p for p in self._prices if p.product.strip().lower() in wanted]


def calculate_average_prices(prices: Iterable[MarketPrice]) -> list[AveragePrice]:
    grouped: dict[tuple[str, str], list[MarketPrice]] = {}
    for item in prices:
        grouped.setdefault((item.product, item.unit), []).append(item)

    results: list[AveragePrice] = []
    for (product, unit), entries in grouped.items():
        total = sum((to_decimal(e.price) for e in entries), Decimal("0"))
        confidence = sum(e.confidence for e in entries) / len(entries)
        results.append(
            AveragePrice(
                product=product,
                unit=unit,
                average=as_float(round_money(total / len(entries))),
                confidence=round(confidence, 4),
                sources=[PriceSource(name=e.source, price=e.price) for e in entries],
            )
        )
    return results


def price_per_kg(average: AveragePrice) -> Decimal | None:
    factor = _UNIT_TO_KG.get(average.unit.strip().lower())
    if factor is None:
        return None
    return round_money(to_decimal(average.average) / factor)


def resolve_category_prices(
    provider: PriceProvider | None,
    categories: list[str],
    *,
    min_confidence: float = 0.0,
) -> dict[str, Decimal]:
    """Return a TL/kg price for every category the provider can price.

    Categories priced in an unknown unit or below ``min_confidence`` are left
    out so the caller can fall back to tender data.
    """
    if provider is None or not categories:
        return {}
    resolved: dict[str, Decimal] = {}
    by_name = {c.strip().lower(): c for c in categories}
    for average in calculate_average_prices(provider.get_prices(list(categories))):
        category = by_name.get(average.product.strip().lower())
        if category is None or category in resolved:
            continue
        if average.confidence < min_confidence:
            logger.info(
                "market_price_low_confidence product=%s confidence=%s min=%s",
                average.product,
                average.confidence,
                min_confidence,
            )
            continue
        per_kg = price_per_kg(average)
        if per_kg is None:
            logger.warning("market_price_unit_unsupported product=%s unit=%s", average.product, average.unit)
            continue
        resolved[category] = per_kg
    return resolved
