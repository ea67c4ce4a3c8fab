import time
from typing import Callable, Dict, Optional, Tuple

import structlog
from cachetools import TTLCache

from ..config.settings import settings
from ..models.analysis_models import Job

logger = structlog.get_logger()


class AnalysisLock:
    """Set of addresses with a pipeline in flight.

    try_acquire is a test-and-set with no await in between, so two
    coroutines on the same loop can never both win for one address.
    Each entry remembers its holder: release only drops the caller's own
    entry, and an entry older than `timeout` seconds is reclaimed only
    once its holder job has finished.
    """

    def __init__(self, timeout: float = settings.LOCK_TIMEOUT,
                 clock: Callable[[], float] = time.monotonic):
        self.timeout = timeout
        self._clock = clock
        self._held: Dict[str, Tuple[Optional[Job], float]] = {}

    def _expire(self, address: str):
        entry = self._held.get(address)
        if entry is None:
            return
        holder, acquired = entry
        if holder is not None and not holder.is_terminal:
            return
        if self._clock() - acquired > self.timeout:
            logger.warning("analysis_lock_expired",
                           address=address,
                           held_for=self._clock() - acquired)
            del self._held[address]

    def try_acquire(self, address: str, holder: Optional[Job] = None) -> bool:
        self._expire(address)
        if address in self._held:
            return False
        self._held[address] = (holder, self._clock())
        return True

    def release(self, address: str, holder: Optional[Job] = None):
        entry = self._held.get(address)
        if entry is not None and entry[0] is holder:
            del self._held[address]

    def is_held(self, address: str) -> bool:
        self._expire(address)
        return address in self._held

    def __len__(self):
        return len(self._held)


class JobRegistry:
    """One job per normalized address.

    Live jobs are kept until they finish; finished jobs stay readable for
    `retention` seconds so pollers can still see a failure.
    """

    def __init__(self, retention: float = settings.JOB_RETENTION_TTL,
                 maxsize: int = 1000):
        self._live: Dict[str, Job] = {}
        self._finished = TTLCache(maxsize=maxsize, ttl=retention)

    def create(self, address: str, fid: Optional[int] = None) -> Job:
        return self.add(Job(address=address, fid=fid))

    def add(self, job: Job) -> Job:
        self._finished.pop(job.address, None)
        self._live[job.address] = job
        return job

    def get(self, address: str) -> Optional[Job]:
        job = self._live.get(address)
        if job is not None:
            return job
        return self._finished.get(address)

    def finish(self, job: Job):
        """Move a terminal job out of the live set"""
        if self._live.get(job.address) is job:
            del self._live[job.address]
        self._finished[job.address] = job
