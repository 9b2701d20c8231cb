from tender_pipeline.cost_simulation import CostSimulationEngine, SimulationConfig, run_cost_simulation
from tender_pipeline.errors import PipelineError, classify_error_code
from tender_pipeline.kik_compliance import KikComplianceAnalyzer, check_adt_status, generate_adt_explanation
from tender_pipeline.pipeline import JobResult, PipelineOrchestrator, build_pipeline
from tender_pipeline.schemas import ADTExplanation, SimulationInput, SimulationOutput
from tender_pipeline.settings import PipelineSettings
from tender_pipeline.step_executors import PIPELINE_STEPS, JobContext

__all__ = [
    "ADTExplanation",
    "CostSimulationEngine",
    "JobContext",
    "JobResult",
    "KikComplianceAnalyzer",
    "PIPELINE_STEPS",
    "PipelineError",
    "PipelineOrchestrator",
    "PipelineSettings",
    "SimulationConfig",
    "SimulationInput",
    "SimulationOutput",
    "build_pipeline",
    "check_adt_status",
    "classify_error_code",
    "generate_adt_explanation",
    "run_cost_simulation",
]
