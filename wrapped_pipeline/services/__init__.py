from .assistant_client import AssistantClient
from .batch_analyzer import BatchAnalyzer
from .blob_cache import BlobCache, CacheKeys
from .chunk_planner import split_transactions
from .consolidator import Consolidator
from .job_registry import AnalysisLock, JobRegistry
from .name_resolver import NameResolver
from .notification_store import NotificationStore
from .notifier import Notifier
from .pipeline_coordinator import PipelineCoordinator
from .status_projection import StatusProjection
from .transaction_fetcher import TransactionFetcher

__all__ = [
    'AssistantClient',
    'BatchAnalyzer',
    'BlobCache',
    'CacheKeys',
    'split_transactions',
    'Consolidator',
    'AnalysisLock',
    'JobRegistry',
    'NameResolver',
    'NotificationStore',
    'Notifier',
    'PipelineCoordinator',
    'StatusProjection',
    'TransactionFetcher',
]
