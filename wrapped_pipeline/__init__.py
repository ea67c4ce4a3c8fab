# Make wrapped_pipeline a proper package
from .services import PipelineCoordinator, StatusProjection
from .models.analysis_models import (
    JobStage,
    RunOutcome,
    Transaction,
    BatchAnalysis,
    ConsolidatedAnalysis,
    Job,
    RunResult
)
from .config.settings import settings

__all__ = [
    'PipelineCoordinator',
    'StatusProjection',
    'JobStage',
    'RunOutcome',
    'Transaction',
    'BatchAnalysis',
    'ConsolidatedAnalysis',
    'Job',
    'RunResult',
    'settings'
]
