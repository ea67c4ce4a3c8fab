import json
from typing import Callable, Dict, Iterable, List, Optional

import structlog

from ..models.analysis_models import (
    CATEGORIES, BatchAnalysis, ConsolidatedAnalysis
)
from .assistant_client import AssistantClient
from .batch_analyzer import parse_analysis_json
from .polling import retrying

logger = structlog.get_logger()


def merge_batch_analyses(analyses: Iterable[BatchAnalysis]) -> Dict[str, List]:
    """Concatenate every category across analyses in the order given.

    The coordinator passes analyses in completion order, so the merged
    lists are not guaranteed to follow the original batch order.
    """
    merged: Dict[str, List] = {category: [] for category in CATEGORIES}
    for analysis in analyses:
        for category, items in analysis.to_dict().items():
            merged[category].extend(items)
    return merged


def consolidation_prompt(merged: Dict[str, List]) -> str:
    return ("Please provide a final consolidated analysis, removing any "
            "duplicates and keeping only the most significant items in each "
            f"category. Here's all the data: {json.dumps(merged)}")


class Consolidator:
    def __init__(self, assistant: AssistantClient, retry_policy: Callable = retrying):
        self.assistant = assistant
        self._retry_policy = retry_policy

    async def consolidate(
        self,
        analyses: List[BatchAnalysis],
        on_retry: Optional[Callable[[int, BaseException], None]] = None,
    ) -> ConsolidatedAnalysis:
        """Final dedup pass; MalformedAnalysisError here is not recoverable"""
        merged = merge_batch_analyses(analyses)
        logger.info("consolidation_started",
                    batches=len(analyses),
                    items={k: len(v) for k, v in merged.items()})

        prompt = consolidation_prompt(merged)
        async for attempt in self._retry_policy(on_retry=on_retry):
            with attempt:
                reply = await self.assistant.complete(prompt)

        result = ConsolidatedAnalysis.from_dict(parse_analysis_json(reply))
        logger.info("consolidation_completed",
                    items={k: len(v) for k, v in result.to_dict().items()})
        return result
