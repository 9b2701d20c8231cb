from tender_pipeline.repositories.checklist_items import (
    InMemoryChecklistItemsRepository,
    PostgresChecklistItemsRepository,
)
from tender_pipeline.repositories.offers import InMemoryOffersRepository, PostgresOffersRepository
from tender_pipeline.repositories.pipeline_jobs import (
    InMemoryPipelineJobsRepository,
    PostgresPipelineJobsRepository,
)
from tender_pipeline.repositories.simulations import InMemorySimulationsRepository, PostgresSimulationsRepository
from tender_pipeline.repositories.sli_metrics import InMemorySliMetricsRepository, PostgresSliMetricsRepository
from tender_pipeline.repositories.tenders import InMemoryTendersRepository, PostgresTendersRepository

__all__ = [
    "InMemoryChecklistItemsRepository",
    "PostgresChecklistItemsRepository",
    "InMemoryOffersRepository",
    "PostgresOffersRepository",
    "InMemoryPipelineJobsRepository",
    "PostgresPipelineJobsRepository",
    "InMemorySimulationsRepository",
    "PostgresSimulationsRepository",
    "InMemorySliMetricsRepository",
    "PostgresSliMetricsRepository",
    "InMemoryTendersRepository",
    "PostgresTendersRepository",
]
