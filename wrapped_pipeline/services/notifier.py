import time
from typing import Optional

import httpx
import structlog

from ..config.settings import settings
from .notification_store import NotificationStore

logger = structlog.get_logger()

SUCCESS = "success"
RATE_LIMIT = "rate_limit"
ERROR = "error"


class Notifier:
    """Fire-and-forget "analysis ready" push. notify() never raises."""

    def __init__(
        self,
        store: NotificationStore,
        target_url: str = settings.NOTIFICATION_TARGET_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.store = store
        self.target_url = target_url
        self._transport = transport

    async def notify(self, fid: int,
                     title: str = "Analysis Complete! 🎉",
                     body: str = "Your Base Wrapped analysis is ready to view") -> str:
        try:
            details = await self.store.get(fid)
            if not details:
                logger.info("notification_skipped", fid=fid, reason="no_details")
                return ERROR

            async with httpx.AsyncClient(
                    transport=self._transport, timeout=10.0) as client:
                response = await client.post(details["url"], json={
                    "notificationId": f"{fid}-{int(time.time() * 1000)}",
                    "title": title,
                    "body": body,
                    "targetUrl": self.target_url,
                    "tokens": [details["token"]],
                })
            result = response.json().get("result") or {}
        except Exception as e:
            logger.error("notification_failed", fid=fid, error=str(e))
            return ERROR

        token = details["token"]
        if token in result.get("successfulTokens", []):
            state = SUCCESS
        elif token in result.get("rateLimitedTokens", []):
            state = RATE_LIMIT
        else:
            state = ERROR
        logger.info("notification_sent", fid=fid, state=state)
        return state
