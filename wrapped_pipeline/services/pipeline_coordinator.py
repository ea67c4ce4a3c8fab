import asyncio
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import structlog
from prometheus_client import Counter, Histogram

from ..config.settings import settings
from ..errors import ProviderError
from ..models.analysis_models import (
    BatchAnalysis,
    ConsolidatedAnalysis,
    Job,
    JobStage,
    RunOutcome,
    RunResult,
    Transaction,
)
from .batch_analyzer import BatchAnalyzer
from .blob_cache import BlobCache, CacheKeys
from .chunk_planner import split_transactions
from .consolidator import Consolidator, merge_batch_analyses
from .job_registry import AnalysisLock, JobRegistry
from .name_resolver import normalize_address
from .notifier import Notifier
from .transaction_fetcher import TransactionFetcher

logger = structlog.get_logger()

PIPELINE_RUNS = Counter(
    'pipeline_runs_total',
    'Pipeline runs by outcome',
    ['outcome']
)
PIPELINE_DURATION = Histogram(
    'pipeline_duration_seconds',
    'Time from a run being picked up to it finishing'
)
PROVIDER_RETRIES = Counter(
    'provider_retries_total',
    'Retried provider calls'
)


class PipelineCoordinator:
    """Runs the fetch -> chunk -> analyze -> consolidate pipeline per address.

    run_analysis() only decides what to do and enqueues; a fixed pool of
    workers drains the queue. At most one run per address is in flight,
    guarded by the AnalysisLock, and the lock is released on every exit
    path of a run. A run that is still going after run_timeout seconds is
    cancelled and failed.
    """

    def __init__(
        self,
        cache: BlobCache,
        fetcher: TransactionFetcher,
        batch_analyzer: BatchAnalyzer,
        consolidator: Consolidator,
        notifier: Optional[Notifier] = None,
        registry: Optional[JobRegistry] = None,
        lock: Optional[AnalysisLock] = None,
        keys: Optional[CacheKeys] = None,
        batch_size: int = settings.BATCH_SIZE,
        worker_count: int = settings.WORKER_COUNT,
        run_timeout: float = settings.LOCK_TIMEOUT,
    ):
        self.cache = cache
        self.fetcher = fetcher
        self.batch_analyzer = batch_analyzer
        self.consolidator = consolidator
        self.notifier = notifier
        self.registry = registry if registry is not None else JobRegistry()
        self.lock = lock if lock is not None else AnalysisLock()
        self.keys = keys if keys is not None else CacheKeys()
        self.batch_size = batch_size
        self.worker_count = worker_count
        self.run_timeout = run_timeout
        self._queue: asyncio.Queue = asyncio.Queue()
        self._workers: List[asyncio.Task] = []
        self._active = 0

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def active(self) -> int:
        return self._active

    async def start(self):
        """Start the worker pool"""
        if not self._workers:
            self._workers = [
                asyncio.create_task(self._worker(i))
                for i in range(self.worker_count)
            ]
            logger.info("pipeline_workers_started", count=self.worker_count)

    async def stop(self):
        """Stop the worker pool and release the locks of queued runs"""
        for task in self._workers:
            task.cancel()
        for task in self._workers:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._workers = []

        while not self._queue.empty():
            job = self._queue.get_nowait()
            job.fail("Service shutting down")
            self.registry.finish(job)
            self.lock.release(job.address, job)
            self._queue.task_done()
        logger.info("pipeline_workers_stopped")

    async def join(self):
        """Wait until every queued run has finished"""
        await self._queue.join()

    async def run_analysis(self, address: str, fid: Optional[int] = None) -> RunResult:
        """Return a cached report, join a running job, or start a new one"""
        address = normalize_address(address)

        cached = await self.cache.get(self.keys.final_analysis(address))
        if cached is not None:
            logger.info("analysis_cache_hit", address=address)
            return RunResult(RunOutcome.CACHED, address, result=cached)

        job = Job(address=address, fid=fid)
        if not self.lock.try_acquire(address, job):
            logger.info("analysis_already_running", address=address)
            return RunResult(RunOutcome.ALREADY_RUNNING, address,
                             job=self.registry.get(address))

        self.registry.add(job)
        self._queue.put_nowait(job)
        logger.info("analysis_queued", address=address, fid=fid)
        return RunResult(RunOutcome.STARTED, address, job=job)

    async def _worker(self, worker_id: int):
        while True:
            job = await self._queue.get()
            self._active += 1
            try:
                await self._execute(job)
            except Exception as e:
                logger.error("worker_error", worker=worker_id, error=str(e))
            finally:
                self._active -= 1
                self._queue.task_done()

    async def _execute(self, job: Job):
        address = job.address
        started = time.time()
        logger.info("pipeline_started", address=address)
        notify = False

        try:
            result, notify = await asyncio.wait_for(
                self._run_pipeline(job), timeout=self.run_timeout)
            job.complete(result)
            PIPELINE_RUNS.labels(outcome="complete").inc()
            logger.info("pipeline_completed",
                        address=address,
                        retries=job.retry_count,
                        duration=time.time() - started)
        except asyncio.CancelledError:
            job.fail("Analysis cancelled")
            PIPELINE_RUNS.labels(outcome="cancelled").inc()
            raise
        except asyncio.TimeoutError:
            logger.error("pipeline_timed_out",
                         address=address,
                         stage=job.stage.value,
                         timeout=self.run_timeout)
            job.fail(f"Analysis timed out after {self.run_timeout:g}s")
            PIPELINE_RUNS.labels(outcome="timed_out").inc()
        except Exception as e:
            logger.error("pipeline_failed",
                         address=address,
                         stage=job.stage.value,
                         error=str(e))
            job.fail(str(e) or type(e).__name__)
            PIPELINE_RUNS.labels(outcome="failed").inc()
        finally:
            self.registry.finish(job)
            self.lock.release(address, job)
            PIPELINE_DURATION.observe(time.time() - started)

        if notify and job.fid is not None:
            await self._notify(job)

    async def _run_pipeline(self, job: Job) -> Tuple[Dict, bool]:
        """Returns the report and whether the subscriber should be notified"""
        address = job.address
        final_key = self.keys.final_analysis(address)

        # Another run may have finished while this one sat in the queue
        existing = await self.cache.get(final_key)
        if existing is not None:
            return existing, False

        transactions = await self._load_transactions(job)
        if not transactions:
            logger.info("no_transactions_found", address=address)
            report = ConsolidatedAnalysis.no_activity().to_dict()
            await self.cache.put(final_key, report)
            return report, False

        batches = split_transactions(transactions, self.batch_size)
        job.advance(JobStage.ANALYZING)
        job.record_progress(0, len(batches))
        logger.info("analysis_fan_out",
                    address=address,
                    transactions=len(transactions),
                    batches=len(batches))
        analyses = await self._fan_out(job, batches)

        job.advance(JobStage.CONSOLIDATING)
        await self.cache.put(self.keys.analysis_chunks_final(address), {
            "address": address,
            "totalChunks": len(batches),
            "chunkKeys": [self.keys.analysis_chunk(address, i)
                          for i in range(len(batches))],
            "completedAt": datetime.now(timezone.utc).isoformat(),
            "analysis": merge_batch_analyses(analyses),
        })

        consolidated = await self.consolidator.consolidate(
            analyses, on_retry=self._retry_recorder(job))
        report = consolidated.to_dict()
        await self.cache.put(final_key, report)
        return report, True

    async def _load_transactions(self, job: Job) -> List[Transaction]:
        """Raw transactions from the cache, fetched and persisted on a miss"""
        raw_key = self.keys.raw_transactions(job.address)
        cached = await self.cache.get(raw_key)
        if cached is not None:
            logger.info("raw_transactions_cache_hit",
                        address=job.address,
                        count=len(cached))
            return [Transaction.from_dict(row) for row in cached]

        transactions = await self.fetcher.fetch(
            job.address, on_retry=self._retry_recorder(job))
        if transactions:
            await self.cache.put(raw_key, [tx.to_dict() for tx in transactions])
        return transactions

    async def _fan_out(self, job: Job, batches: List[List[Transaction]]) -> List[BatchAnalysis]:
        total = len(batches)
        tasks = [
            asyncio.create_task(self._analyze_batch(job, batch, index, total))
            for index, batch in enumerate(batches)
        ]
        analyses: List[BatchAnalysis] = []
        try:
            # Collected in completion order, not batch order
            for finished in asyncio.as_completed(tasks):
                analyses.append(await finished)
                job.record_progress(len(analyses), total)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
        return analyses

    async def _analyze_batch(self, job: Job, batch: List[Transaction],
                             index: int, total: int) -> BatchAnalysis:
        try:
            analysis = await self.batch_analyzer.analyze(
                batch, index, total, on_retry=self._retry_recorder(job))
        except ProviderError as e:
            logger.error("batch_analysis_gave_up",
                         address=job.address,
                         index=index,
                         total=total,
                         error=str(e))
            analysis = BatchAnalysis()

        chunk_key = self.keys.analysis_chunk(job.address, index)
        try:
            await self.cache.put(chunk_key, analysis.to_dict())
        except Exception as e:
            logger.error("analysis_chunk_write_failed",
                         address=job.address,
                         key=chunk_key,
                         error=str(e))
        return analysis

    def _retry_recorder(self, job: Job):
        def record(attempt: int, error: BaseException):
            PROVIDER_RETRIES.inc()
            job.record_retry()
        return record

    async def _notify(self, job: Job):
        if self.notifier is None:
            return
        try:
            await self.notifier.notify(job.fid)
        except Exception as e:
            logger.error("notification_error", address=job.address, error=str(e))
