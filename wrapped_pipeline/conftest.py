"""Shared pytest fixtures for the pipeline tests."""

import functools

import pytest

from wrapped_pipeline.services.batch_analyzer import BatchAnalyzer
from wrapped_pipeline.services.consolidator import Consolidator
from wrapped_pipeline.services.pipeline_coordinator import PipelineCoordinator
from wrapped_pipeline.services.polling import retrying
from wrapped_pipeline.testing_fakes import FakeBlobCache, SleepRecorder


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def fast_retry(sleeper):
    return functools.partial(retrying, sleep=sleeper)


@pytest.fixture
def cache():
    return FakeBlobCache()


@pytest.fixture
def make_coordinator(cache, fast_retry):
    def build(fetcher, assistant, notifier=None, batch_size=200, **kwargs):
        return PipelineCoordinator(
            cache=cache,
            fetcher=fetcher,
            batch_analyzer=BatchAnalyzer(assistant, retry_policy=fast_retry),
            consolidator=Consolidator(assistant, retry_policy=fast_retry),
            notifier=notifier,
            batch_size=batch_size,
            worker_count=2,
            **kwargs,
        )
    return build
