"""In-memory fakes and helpers shared by the pipeline tests."""

import asyncio
import copy
import inspect
import json
import re

from wrapped_pipeline.models.analysis_models import Transaction

ADDRESS = "0xabc0000000000000000000000000000000000001"

_HASH = re.compile(r'"hash": "tx-(\d+)"')


class FakeBlobCache:
    def __init__(self, data=None):
        self.data = dict(data or {})
        self.writes = []

    async def get(self, key):
        await asyncio.sleep(0)
        return copy.deepcopy(self.data.get(key))

    async def put(self, key, value):
        await asyncio.sleep(0)
        self.writes.append(key)
        self.data[key] = copy.deepcopy(value)


class ScriptedAssistant:
    """Stands in for AssistantClient; replies come from a responder(prompt)"""

    def __init__(self, responder):
        self.responder = responder
        self.prompts = []

    async def complete(self, prompt):
        self.prompts.append(prompt)
        await asyncio.sleep(0)
        reply = self.responder(prompt)
        if inspect.isawaitable(reply):
            reply = await reply
        return reply

    @property
    def batch_prompts(self):
        return [p for p in self.prompts if p.startswith("Please analyze")]

    @property
    def consolidation_prompts(self):
        return [p for p in self.prompts if p.startswith("Please provide a final")]


class FakeFetcher:
    def __init__(self, transactions=None, error=None):
        self.transactions = list(transactions or [])
        self.error = error
        self.calls = 0

    async def fetch(self, address, on_retry=None):
        self.calls += 1
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return list(self.transactions)


class RecordingNotifier:
    def __init__(self, error=None):
        self.error = error
        self.sent = []

    async def notify(self, fid):
        self.sent.append(fid)
        if self.error is not None:
            raise self.error
        return "success"


class FakeRedis:
    def __init__(self):
        self.values = {}
        self.closed = False

    async def get(self, key):
        return self.values.get(key)

    async def set(self, key, value):
        self.values[key] = value

    async def delete(self, key):
        self.values.pop(key, None)

    async def aclose(self):
        self.closed = True


class FakeENS:
    def __init__(self, names=None, error=None):
        self.names = names or {}
        self.error = error
        self.lookups = []

    async def address(self, name):
        self.lookups.append(name)
        if self.error is not None:
            raise self.error
        return self.names.get(name)


class SleepRecorder:
    """Async sleep that only records the requested delays"""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
        await asyncio.sleep(0)


def make_transactions(count):
    return [
        Transaction(
            hash=f"tx-{i}",
            timestamp=1704067200000 + i * 1000,
            description=f"Swapped token {i}",
            category="SWAP",
            tags=["defi"],
        )
        for i in range(count)
    ]


def batch_index(prompt, batch_size=200):
    """Batch index of a batch prompt, from its first transaction hash"""
    return int(_HASH.search(prompt).group(1)) // batch_size


def batch_reply(index):
    return json.dumps({
        "popularTokens": [f"T{index}"],
        "popularActions": [f"A{index}"],
        "popularUsers": [],
        "otherStories": [],
    })


def default_responder(prompt):
    if prompt.startswith("Please provide a final"):
        merged = json.loads(prompt.split("Here's all the data: ", 1)[1])
        return json.dumps(merged)
    return batch_reply(batch_index(prompt))


