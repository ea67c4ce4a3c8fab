import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import openai
import structlog
from openai import AsyncOpenAI

from ..config.settings import settings
from ..errors import AnalysisProviderError
from .polling import poll_until, Sleep

logger = structlog.get_logger()

# Run statuses that will never reach "completed"
FAILED_RUN_STATUSES = {"failed", "cancelled", "expired"}


class AssistantClient:
    """Submit / poll / read / delete protocol against an OpenAI assistant.

    Every call gets its own thread, and the thread is deleted when the
    call finishes whether it succeeded or not.
    """

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        assistant_id: str = settings.OPENAI_ASSISTANT_ID,
        poll_interval: float = settings.POLL_INTERVAL,
        max_wait: float = settings.POLL_MAX_WAIT,
        sleep: Sleep = asyncio.sleep,
    ):
        if not assistant_id:
            raise ValueError("Assistant ID is required")
        self._client = client or AsyncOpenAI(api_key=settings.OPENAI_API_KEY)
        self.assistant_id = assistant_id
        self.poll_interval = poll_interval
        self.max_wait = max_wait
        self._sleep = sleep

    @asynccontextmanager
    async def session(self) -> AsyncIterator[str]:
        """Yield a fresh thread id and delete the thread afterwards"""
        try:
            thread = await self._client.beta.threads.create()
        except openai.OpenAIError as e:
            raise AnalysisProviderError(f"could not create thread: {e}") from e

        try:
            yield thread.id
        finally:
            try:
                await self._client.beta.threads.delete(thread.id)
            except openai.OpenAIError as e:
                logger.error("assistant_thread_cleanup_failed",
                             thread_id=thread.id,
                             error=str(e))

    async def complete(self, prompt: str) -> str:
        """Run prompt through the assistant and return the reply text"""
        async with self.session() as thread_id:
            try:
                await self._client.beta.threads.messages.create(
                    thread_id, role="user", content=prompt)
                run = await self._client.beta.threads.runs.create(
                    thread_id=thread_id, assistant_id=self.assistant_id)

                run = await poll_until(
                    lambda: self._client.beta.threads.runs.retrieve(
                        run.id, thread_id=thread_id),
                    self._run_finished,
                    interval=self.poll_interval,
                    max_wait=self.max_wait,
                    sleep=self._sleep,
                )
                if run.status != "completed":
                    raise AnalysisProviderError(
                        f"assistant run {run.id} ended with status {run.status}")

                messages = await self._client.beta.threads.messages.list(thread_id)
            except openai.OpenAIError as e:
                raise AnalysisProviderError(str(e)) from e

        try:
            return self._reply_text(messages)
        except (AttributeError, IndexError, TypeError) as e:
            raise AnalysisProviderError(f"unexpected reply shape: {e}") from e

    @staticmethod
    def _run_finished(run) -> bool:
        return run.status == "completed" or run.status in FAILED_RUN_STATUSES

    @staticmethod
    def _reply_text(messages) -> str:
        if not messages.data:
            return ""
        content = messages.data[0].content
        if content and content[0].type == "text":
            return content[0].text.value
        return ""
