import pathlib
import sys

import pytest

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tender_pipeline.pipeline import build_pipeline
from tender_pipeline.settings import PipelineSettings
from tender_pipeline.store import InMemoryStore

DOC_HASH = "3f2a9c4e8b7d6a5f1e0c9b8a7d6e5f4a3b2c1d0e9f8a7b6c5d4e3f2a1b0c9d8e"


def _analysis_metadata(**overrides) -> dict:
    metadata = {
        "title": "Okul yemek hizmeti alımı",
        "personCount": 500,
        "estimatedValue": 400000,
        "mealTypes": ["lunch", "dinner"],
        "serviceDays": 30,
        "portionSizes": {"et": {"gram_per_portion": 200, "market_price_per_kg": 45}},
    }
    metadata.update(overrides)
    return metadata


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch):
    for name in (
        "PIPELINE_MAX_RETRIES",
        "PIPELINE_LEDGER_BACKEND",
        "POSTGRES_DSN",
        "POSTGRES_APPLY_SCHEMA",
        "SIMULATION_RECENT_HOURS",
        "COST_RATIO_MIN",
        "COST_RATIO_MAX",
        "KIK_K_FACTOR",
        "PIPELINE_RECORD_SLI",
        "PIPELINE_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
    yield


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def settings() -> PipelineSettings:
    return PipelineSettings()


@pytest.fixture
def pipeline(store: InMemoryStore, settings: PipelineSettings):
    return build_pipeline(store, settings)


@pytest.fixture
def doc_hash() -> str:
    return DOC_HASH


@pytest.fixture
def analysis_metadata():
    return _analysis_metadata
