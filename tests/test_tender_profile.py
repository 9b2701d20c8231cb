from __future__ import annotations

from decimal import Decimal

import pytest

from tender_pipeline.errors import PipelineError
from tender_pipeline.tender_profile import (
    build_simulation_input,
    deep_merge,
    normalize_analysis_metadata,
    service_profile_missing,
    tender_prices,
    unpriced_categories,
)


def _tender(**specs) -> dict:
    base = {
        "meal_types": ["lunch", "dinner"],
        "service_days": 30,
        "portion_sizes": {"et": {"gram_per_portion": 200, "market_price_per_kg": 45}, "pilav": 120},
    }
    base.update(specs)
    return {
        "tender_id": "tnd_1",
        "doc_hash": "h",
        "person_count": 500,
        "estimated_value": 400000,
        "requirements": {"specifications": base},
    }


def test_normalize_maps_camel_case_metadata():
    patch = normalize_analysis_metadata(
        {
            "title": "Okul yemeği",
            "personCount": 250,
            "estimatedValue": 90000,
            "mealTypes": ["lunch"],
            "serviceDays": 20,
            "portionSizes": {"et": 150},
            "ignored": "x",
        }
    )

    assert patch == {
        "title": "Okul yemeği",
        "person_count": 250,
        "estimated_value": 90000,
        "requirements": {
            "specifications": {"meal_types": ["lunch"], "service_days": 20, "portion_sizes": {"et": 150}}
        },
    }


def test_normalize_prefers_top_level_over_nested_specifications():
    patch = normalize_analysis_metadata(
        {"serviceDays": 45, "requirements": {"specifications": {"service_days": 30, "location": "Ankara"}}}
    )

    assert patch["requirements"]["specifications"] == {"service_days": 45, "location": "Ankara"}
    assert normalize_analysis_metadata(None) == {}


def test_deep_merge_keeps_untouched_branches_and_skips_none():
    merged = deep_merge({"a": {"b": 1, "c": 2}, "d": 3}, {"a": {"c": 5}, "d": None, "e": [1]})

    assert merged == {"a": {"b": 1, "c": 5}, "d": 3, "e": [1]}


def test_service_profile_missing_fields():
    tender = _tender(meal_types=[], service_days=0)
    tender["person_count"] = None

    assert service_profile_missing(tender) == ["persons", "meals_per_day", "duration_days"]
    assert service_profile_missing(_tender()) == []


def test_prices_from_portion_entries_override_market_prices():
    tender = _tender(market_prices={"et": 50, "pilav": "38,5", "sebze": 0})

    assert tender_prices(tender) == {"et": Decimal("45"), "pilav": Decimal("38.5")}
    assert unpriced_categories(_tender(), {}) == ["pilav"]
    assert unpriced_categories(_tender(), {"pilav": Decimal("40")}) == []


def test_build_simulation_input_uses_provider_prices():
    sim_input = build_simulation_input(_tender(), provider_prices={"et": Decimal("400"), "pilav": Decimal("40")})

    assert sim_input.persons == 500
    assert sim_input.meals_per_day == 2
    assert sim_input.duration_days == 30
    assert [(p.category, p.gram_per_portion, p.market_price_per_kg) for p in sim_input.portion_specs] == [
        ("et", 200, 400.0),
        ("pilav", 120, 40.0),
    ]
    assert sim_input.doc_hash == "h"


def test_build_simulation_input_waits_for_unpriced_categories():
    with pytest.raises(PipelineError) as exc_info:
        build_simulation_input(_tender())

    assert exc_info.value.code == "WAITING_INPUT"
    assert exc_info.value.details == {"missing": ["market_prices"], "unpriced": ["pilav"]}


def test_build_simulation_input_rejects_bad_profiles():
    with pytest.raises(PipelineError) as no_portions:
        build_simulation_input(_tender(portion_sizes={}))
    assert no_portions.value.code == "SIMULATION_INPUT_INVALID"

    with pytest.raises(PipelineError) as bad_grams:
        build_simulation_input(_tender(portion_sizes={"et": {"gram_per_portion": -5, "market_price_per_kg": 45}}))
    assert bad_grams.value.code == "SIMULATION_INPUT_INVALID"
    assert bad_grams.value.details == {"tender_id": "tnd_1"}
