import asyncio
import json

import pytest

from wrapped_pipeline.testing_fakes import (
    ADDRESS,
    FakeFetcher,
    RecordingNotifier,
    ScriptedAssistant,
    batch_index,
    batch_reply,
    default_responder,
    make_transactions,
)
from wrapped_pipeline.errors import (
    AnalysisProviderError,
    DataProviderError,
    InvalidAddressError,
)
from wrapped_pipeline.models.analysis_models import JobStage, RunOutcome
from wrapped_pipeline.services.blob_cache import CacheKeys
from wrapped_pipeline.services.job_registry import AnalysisLock, JobRegistry

FINAL_KEY = f"wrapped-2024-analysis/{ADDRESS}.json"
RAW_KEY = f"wrapped-2024-raw/{ADDRESS}.json"
CHUNK_PREFIX = f"wrapped-2024-analysis-chunks/{ADDRESS}"


async def run_to_completion(coordinator, address=ADDRESS, fid=None):
    await coordinator.start()
    try:
        run = await coordinator.run_analysis(address, fid=fid)
        await coordinator.join()
    finally:
        await coordinator.stop()
    return run


def test_cached_analysis_is_returned_without_new_work(cache, make_coordinator):
    report = {"popularTokens": ["DEGEN"], "popularActions": [],
              "popularUsers": [], "otherStories": []}
    cache.data[FINAL_KEY] = report
    fetcher = FakeFetcher(make_transactions(10))
    assistant = ScriptedAssistant(default_responder)
    coordinator = make_coordinator(fetcher, assistant)

    async def scenario():
        first = await coordinator.run_analysis(ADDRESS)
        second = await coordinator.run_analysis(ADDRESS)
        return first, second

    first, second = asyncio.run(scenario())

    assert first.outcome is RunOutcome.CACHED
    assert second.outcome is RunOutcome.CACHED
    assert first.result == second.result == report
    assert fetcher.calls == 0
    assert assistant.prompts == []
    assert not coordinator.lock.is_held(ADDRESS)


def test_concurrent_requests_start_a_single_run(cache, make_coordinator):
    fetcher = FakeFetcher(make_transactions(450))
    assistant = ScriptedAssistant(default_responder)
    coordinator = make_coordinator(fetcher, assistant)

    async def scenario():
        await coordinator.start()
        runs = await asyncio.gather(
            coordinator.run_analysis(ADDRESS),
            coordinator.run_analysis(ADDRESS.upper().replace("0X", "0x")),
        )
        await coordinator.join()
        await coordinator.stop()
        return runs

    runs = asyncio.run(scenario())

    outcomes = sorted(run.outcome.value for run in runs)
    assert outcomes == ["already_running", "started"]
    assert fetcher.calls == 1
    assert len(assistant.batch_prompts) == 3
    assert len(assistant.consolidation_prompts) == 1


def test_450_transactions_fan_out_into_three_batches(cache, make_coordinator):
    fetcher = FakeFetcher(make_transactions(450))
    assistant = ScriptedAssistant(default_responder)
    coordinator = make_coordinator(fetcher, assistant)

    run = asyncio.run(run_to_completion(coordinator))

    assert run.outcome is RunOutcome.STARTED
    sizes = sorted(
        len(json.loads(p.split("insights: ", 1)[1])) for p in assistant.batch_prompts)
    assert sizes == [50, 200, 200]

    job = run.job
    assert job.stage is JobStage.COMPLETE
    assert job.progress.current == 3
    assert job.progress.total == 3
    assert job.result == cache.data[FINAL_KEY]
    assert sorted(cache.data[FINAL_KEY]["popularTokens"]) == ["T0", "T1", "T2"]

    assert len(cache.data[RAW_KEY]) == 450
    for index in range(3):
        assert f"{CHUNK_PREFIX}-{index}.json" in cache.data
    marker = cache.data[f"{CHUNK_PREFIX}-final.json"]
    assert marker["totalChunks"] == 3
    assert marker["address"] == ADDRESS
    assert cache.writes[-1] == FINAL_KEY
    assert not coordinator.lock.is_held(ADDRESS)


def test_merged_input_follows_completion_order(cache, make_coordinator):
    async def responder(prompt):
        if prompt.startswith("Please provide a final"):
            return default_responder(prompt)
        index = batch_index(prompt)
        if index == 0:
            # Let the other batches finish first
            for _ in range(10):
                await asyncio.sleep(0)
        return batch_reply(index)

    fetcher = FakeFetcher(make_transactions(450))
    assistant = ScriptedAssistant(responder)
    coordinator = make_coordinator(fetcher, assistant)

    asyncio.run(run_to_completion(coordinator))

    marker = cache.data[f"{CHUNK_PREFIX}-final.json"]
    assert marker["analysis"]["popularTokens"][-1] == "T0"
    assert sorted(marker["analysis"]["popularTokens"]) == ["T0", "T1", "T2"]


def test_permanently_failing_batch_contributes_nothing(
        cache, make_coordinator, sleeper):
    def responder(prompt):
        if prompt.startswith("Please analyze") and batch_index(prompt) == 1:
            raise AnalysisProviderError("Assistant run failed")
        return default_responder(prompt)

    fetcher = FakeFetcher(make_transactions(450))
    assistant = ScriptedAssistant(responder)
    coordinator = make_coordinator(fetcher, assistant)

    run = asyncio.run(run_to_completion(coordinator))

    assert run.job.stage is JobStage.COMPLETE
    assert run.job.retry_count == 4
    assert sleeper.delays == [1, 2, 4, 8]
    assert len(assistant.batch_prompts) == 3 + 4
    assert cache.data[f"{CHUNK_PREFIX}-1.json"] == {
        "popularTokens": [],
        "popularActions": [],
        "popularUsers": [],
        "otherStories": [],
    }
    assert sorted(cache.data[FINAL_KEY]["popularTokens"]) == ["T0", "T2"]


def test_malformed_batch_reply_degrades_to_empty(cache, make_coordinator):
    def responder(prompt):
        if prompt.startswith("Please analyze") and batch_index(prompt) == 0:
            return "Sorry, I can't help with that."
        return default_responder(prompt)

    coordinator = make_coordinator(
        FakeFetcher(make_transactions(250)), ScriptedAssistant(responder))

    run = asyncio.run(run_to_completion(coordinator))

    assert run.job.stage is JobStage.COMPLETE
    assert cache.data[FINAL_KEY]["popularTokens"] == ["T1"]


def test_zero_transactions_yield_no_activity_report(cache, make_coordinator):
    fetcher = FakeFetcher([])
    assistant = ScriptedAssistant(default_responder)
    notifier = RecordingNotifier()
    coordinator = make_coordinator(fetcher, assistant, notifier=notifier)

    run = asyncio.run(run_to_completion(coordinator, fid=42))

    report = cache.data[FINAL_KEY]
    assert len(report["otherStories"]) == 1
    assert report["otherStories"][0]["name"] == "No Activity Found"
    assert report["popularTokens"] == []
    assert assistant.prompts == []
    assert RAW_KEY not in cache.data
    assert run.job.stage is JobStage.COMPLETE
    assert notifier.sent == []
    assert not coordinator.lock.is_held(ADDRESS)


def test_cached_raw_transactions_skip_the_fetch(cache, make_coordinator):
    cache.data[RAW_KEY] = [tx.to_dict() for tx in make_transactions(5)]
    fetcher = FakeFetcher(make_transactions(999))
    assistant = ScriptedAssistant(default_responder)
    coordinator = make_coordinator(fetcher, assistant)

    run = asyncio.run(run_to_completion(coordinator))

    assert fetcher.calls == 0
    assert run.job.stage is JobStage.COMPLETE
    assert len(assistant.batch_prompts) == 1


def test_malformed_consolidation_fails_the_job_and_keeps_raw_cache(
        cache, make_coordinator):
    def responder(prompt):
        if prompt.startswith("Please provide a final"):
            return "not json at all"
        return default_responder(prompt)

    coordinator = make_coordinator(
        FakeFetcher(make_transactions(20)), ScriptedAssistant(responder))

    run = asyncio.run(run_to_completion(coordinator))

    job = run.job
    assert job.stage is JobStage.FAILED
    assert job.failed_stage is JobStage.CONSOLIDATING
    assert "not valid JSON" in job.error
    assert FINAL_KEY not in cache.data
    assert RAW_KEY in cache.data
    assert not coordinator.lock.is_held(ADDRESS)
    assert coordinator.registry.get(ADDRESS) is job


def test_fetch_failure_marks_job_failed(cache, make_coordinator):
    fetcher = FakeFetcher(error=DataProviderError("GraphQL request failed"))
    coordinator = make_coordinator(fetcher, ScriptedAssistant(default_responder))

    run = asyncio.run(run_to_completion(coordinator))

    assert run.job.stage is JobStage.FAILED
    assert run.job.failed_stage is JobStage.FETCHING
    assert run.job.error == "GraphQL request failed"
    assert not coordinator.lock.is_held(ADDRESS)


def test_failed_run_can_be_started_again(cache, make_coordinator):
    fetcher = FakeFetcher(error=DataProviderError("down"))
    coordinator = make_coordinator(fetcher, ScriptedAssistant(default_responder))

    async def scenario():
        await coordinator.start()
        await coordinator.run_analysis(ADDRESS)
        await coordinator.join()
        fetcher.error = None
        fetcher.transactions = make_transactions(3)
        retry = await coordinator.run_analysis(ADDRESS)
        await coordinator.join()
        await coordinator.stop()
        return retry

    retry = asyncio.run(scenario())

    assert retry.outcome is RunOutcome.STARTED
    assert retry.job.stage is JobStage.COMPLETE
    assert fetcher.calls == 2


def test_subscriber_is_notified_on_completion(cache, make_coordinator):
    notifier = RecordingNotifier()
    coordinator = make_coordinator(
        FakeFetcher(make_transactions(3)), ScriptedAssistant(default_responder),
        notifier=notifier)

    asyncio.run(run_to_completion(coordinator, fid=1234))

    assert notifier.sent == [1234]


def test_notification_failure_does_not_fail_the_run(cache, make_coordinator):
    notifier = RecordingNotifier(error=RuntimeError("push service down"))
    coordinator = make_coordinator(
        FakeFetcher(make_transactions(3)), ScriptedAssistant(default_responder),
        notifier=notifier)

    run = asyncio.run(run_to_completion(coordinator, fid=7))

    assert notifier.sent == [7]
    assert run.job.stage is JobStage.COMPLETE
    assert FINAL_KEY in cache.data


def test_zero_address_is_rejected(make_coordinator):
    coordinator = make_coordinator(
        FakeFetcher([]), ScriptedAssistant(default_responder))

    with pytest.raises(InvalidAddressError):
        asyncio.run(coordinator.run_analysis("0x" + "0" * 40))
    with pytest.raises(InvalidAddressError):
        asyncio.run(coordinator.run_analysis("not-an-address"))


def test_stop_releases_locks_of_queued_runs(make_coordinator):
    coordinator = make_coordinator(
        FakeFetcher(make_transactions(3)), ScriptedAssistant(default_responder))

    async def scenario():
        run = await coordinator.run_analysis(ADDRESS)
        held = coordinator.lock.is_held(ADDRESS)
        await coordinator.stop()
        return run, held

    run, held = asyncio.run(scenario())

    assert held
    assert not coordinator.lock.is_held(ADDRESS)
    assert run.job.stage is JobStage.FAILED
    assert coordinator.pending == 0


def test_injected_collaborators_are_kept(make_coordinator):
    lock, registry, keys = AnalysisLock(), JobRegistry(), CacheKeys()

    coordinator = make_coordinator(
        FakeFetcher([]), ScriptedAssistant(default_responder),
        lock=lock, registry=registry, keys=keys)

    assert coordinator.lock is lock
    assert coordinator.registry is registry
    assert coordinator.keys is keys


def test_run_outliving_the_lock_timeout_is_not_started_twice(make_coordinator):
    class Clock:
        now = 0.0

        def __call__(self):
            return self.now

    clock = Clock()
    gate = asyncio.Event()

    async def responder(prompt):
        if prompt.startswith("Please analyze"):
            await gate.wait()
        return default_responder(prompt)

    assistant = ScriptedAssistant(responder)
    coordinator = make_coordinator(
        FakeFetcher(make_transactions(3)), assistant,
        lock=AnalysisLock(timeout=60, clock=clock))

    async def scenario():
        await coordinator.start()
        first = await coordinator.run_analysis(ADDRESS)
        while not assistant.batch_prompts:
            await asyncio.sleep(0)

        clock.now += 61
        second = await coordinator.run_analysis(ADDRESS)
        held = coordinator.lock.is_held(ADDRESS)

        gate.set()
        await coordinator.join()
        await coordinator.stop()
        return first, second, held

    first, second, held = asyncio.run(scenario())

    assert first.outcome is RunOutcome.STARTED
    assert second.outcome is RunOutcome.ALREADY_RUNNING
    assert second.job is first.job
    assert held
    assert len(assistant.batch_prompts) == 1
    assert len(assistant.consolidation_prompts) == 1
    assert first.job.stage is JobStage.COMPLETE
    assert not coordinator.lock.is_held(ADDRESS)


def test_run_exceeding_its_timeout_fails_and_frees_the_address(
        cache, make_coordinator):
    async def responder(prompt):
        await asyncio.Event().wait()

    coordinator = make_coordinator(
        FakeFetcher(make_transactions(3)), ScriptedAssistant(responder),
        run_timeout=0.05)

    run = asyncio.run(run_to_completion(coordinator))

    assert run.job.stage is JobStage.FAILED
    assert run.job.failed_stage is JobStage.ANALYZING
    assert "timed out" in run.job.error
    assert FINAL_KEY not in cache.data
    assert not coordinator.lock.is_held(ADDRESS)
    assert coordinator.registry.get(ADDRESS) is run.job


def test_chunk_write_failure_does_not_cancel_other_batches(
        cache, make_coordinator):
    failing_key = f"{CHUNK_PREFIX}-1.json"
    put = cache.put

    async def flaky_put(key, value):
        if key == failing_key:
            raise RuntimeError("S3 unavailable")
        await put(key, value)

    cache.put = flaky_put
    assistant = ScriptedAssistant(default_responder)
    coordinator = make_coordinator(FakeFetcher(make_transactions(450)), assistant)

    run = asyncio.run(run_to_completion(coordinator))

    assert run.job.stage is JobStage.COMPLETE
    assert failing_key not in cache.data
    assert sorted(cache.data[FINAL_KEY]["popularTokens"]) == ["T0", "T1", "T2"]
    assert len(assistant.batch_prompts) == 3
