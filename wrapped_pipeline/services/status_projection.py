from datetime import datetime, timezone
from typing import Dict, Optional

import structlog

from ..models.analysis_models import Job, JobStage
from .blob_cache import BlobCache, CacheKeys
from .job_registry import AnalysisLock, JobRegistry
from .name_resolver import normalize_address

logger = structlog.get_logger()

TOTAL_STEPS = 3
STEP_BY_STAGE = {
    JobStage.FETCHING: 1,
    JobStage.ANALYZING: 2,
    JobStage.CONSOLIDATING: 3,
    JobStage.COMPLETE: 3,
}
NOT_FOUND = "not_found"


def _iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


def describe_job(job: Job) -> Dict:
    """Status document for a job held in memory"""
    status = {
        "status": job.stage.value,
        "step": STEP_BY_STAGE.get(job.failed_stage or job.stage, 0),
        "totalSteps": TOTAL_STEPS,
        "lastUpdated": _iso(job.updated_at),
    }
    if job.progress.total:
        status["progress"] = job.progress.to_dict()
    if job.stage is JobStage.FAILED:
        status["error"] = job.error
    return status


class StatusProjection:
    """Read-only view of job progress for polling clients.

    The blob cache wins over in-memory state, so a finished analysis is
    reported as complete even after a restart lost every job and lock.
    """

    def __init__(self, cache: BlobCache, registry: JobRegistry,
                 lock: AnalysisLock, keys: Optional[CacheKeys] = None):
        self.cache = cache
        self.registry = registry
        self.lock = lock
        self.keys = keys if keys is not None else CacheKeys()

    async def get_status(self, address: str) -> Dict:
        address = normalize_address(address)

        result = await self.cache.get(self.keys.final_analysis(address))
        if result is not None:
            return {
                "status": JobStage.COMPLETE.value,
                "step": TOTAL_STEPS,
                "totalSteps": TOTAL_STEPS,
                "result": result,
            }

        job = self.registry.get(address)
        if job is not None and self.lock.is_held(address):
            return describe_job(job)

        if job is not None and job.stage is JobStage.FAILED:
            return describe_job(job)

        return {"status": NOT_FOUND, "step": 0, "totalSteps": TOTAL_STEPS}
