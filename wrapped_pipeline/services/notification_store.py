import json
from typing import Dict, Optional

import redis.asyncio as redis
import structlog

from ..config.settings import settings

logger = structlog.get_logger()


def details_key(fid: int) -> str:
    return f"frames-v2-demo:user:{fid}"


class NotificationStore:
    """Push endpoint ({url, token}) per subscriber fid, kept in Redis"""

    def __init__(self, client: Optional[redis.Redis] = None,
                 url: str = settings.REDIS_URL):
        self._redis = client or redis.from_url(url, decode_responses=True)

    async def get(self, fid: int) -> Optional[Dict]:
        raw = await self._redis.get(details_key(fid))
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("notification_details_unparseable", fid=fid)
            return None

    async def set(self, fid: int, details: Dict):
        await self._redis.set(details_key(fid), json.dumps(details))

    async def delete(self, fid: int):
        await self._redis.delete(details_key(fid))

    async def close(self):
        await self._redis.aclose()
