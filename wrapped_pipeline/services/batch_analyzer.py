import json
import re
import time
from typing import Callable, Dict, List, Optional

import structlog
from prometheus_client import Counter, Histogram

from ..errors import MalformedAnalysisError
from ..models.analysis_models import BatchAnalysis, Transaction
from .assistant_client import AssistantClient
from .polling import retrying

logger = structlog.get_logger()

BATCH_ANALYSIS_COUNTER = Counter(
    'batch_analysis_total',
    'Batch analyses by outcome',
    ['outcome']
)
BATCH_ANALYSIS_DURATION = Histogram(
    'batch_analysis_duration_seconds',
    'Time spent analyzing one transaction batch'
)

_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


def parse_analysis_json(text: str) -> Dict:
    """Parse the assistant's reply as a JSON object.

    Tolerates a surrounding Markdown code fence. Raises
    MalformedAnalysisError for anything that is not a JSON object.
    """
    cleaned = (text or "").strip()
    match = _FENCE.match(cleaned)
    if match:
        cleaned = match.group(1)
    try:
        data = json.loads(cleaned)
    except ValueError as e:
        raise MalformedAnalysisError(f"reply is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise MalformedAnalysisError(
            f"expected a JSON object, got {type(data).__name__}")
    return data


def parse_batch_reply(text: str) -> BatchAnalysis:
    """Like parse_analysis_json, but a bad reply is just an empty analysis"""
    try:
        return BatchAnalysis.from_dict(parse_analysis_json(text))
    except MalformedAnalysisError as e:
        logger.warning("batch_reply_unparseable", error=str(e))
        return BatchAnalysis()


def batch_prompt(batch: List[Transaction]) -> str:
    rows = []
    for tx in batch:
        row = tx.to_dict()
        row.pop("raw", None)
        rows.append(row)
    return ("Please analyze this batch of transactions and provide insights: "
            f"{json.dumps(rows)}")


class BatchAnalyzer:
    def __init__(self, assistant: AssistantClient, retry_policy: Callable = retrying):
        self.assistant = assistant
        self._retry_policy = retry_policy

    async def analyze(
        self,
        batch: List[Transaction],
        index: int,
        total: int,
        on_retry: Optional[Callable[[int, BaseException], None]] = None,
    ) -> BatchAnalysis:
        """Analyze one batch; provider errors surface after the last retry"""
        prompt = batch_prompt(batch)
        started = time.time()
        logger.info("batch_analysis_started",
                    index=index,
                    total=total,
                    size=len(batch))

        try:
            async for attempt in self._retry_policy(on_retry=on_retry):
                with attempt:
                    reply = await self.assistant.complete(prompt)
        except Exception:
            BATCH_ANALYSIS_COUNTER.labels(outcome="failed").inc()
            raise

        analysis = parse_batch_reply(reply)
        BATCH_ANALYSIS_DURATION.observe(time.time() - started)
        BATCH_ANALYSIS_COUNTER.labels(
            outcome="empty" if analysis.is_empty() else "ok").inc()
        logger.info("batch_analysis_completed", index=index, total=total)
        return analysis
