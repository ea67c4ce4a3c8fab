import asyncio
import json
from typing import Any, Optional

import boto3
import structlog
from botocore.exceptions import ClientError

from ..config.settings import settings

logger = structlog.get_logger()

_MISSING_CODES = {"NoSuchKey", "404", "NotFound"}


class CacheKeys:
    """Logical blob keys, always built from the normalized address"""

    def __init__(
        self,
        raw_prefix: str = settings.RAW_TRANSACTIONS_PREFIX,
        chunks_prefix: str = settings.ANALYSIS_CHUNKS_PREFIX,
        final_prefix: str = settings.FINAL_ANALYSIS_PREFIX,
    ):
        self.raw_prefix = raw_prefix
        self.chunks_prefix = chunks_prefix
        self.final_prefix = final_prefix

    def raw_transactions(self, address: str) -> str:
        return f"{self.raw_prefix}/{address.lower()}.json"

    def analysis_chunk(self, address: str, index: int) -> str:
        return f"{self.chunks_prefix}/{address.lower()}-{index}.json"

    def analysis_chunks_final(self, address: str) -> str:
        return f"{self.chunks_prefix}/{address.lower()}-final.json"

    def final_analysis(self, address: str) -> str:
        return f"{self.final_prefix}/{address.lower()}.json"


class BlobCache:
    """Durable key -> JSON store on S3. Entries never expire."""

    def __init__(self, bucket: str = settings.S3_BUCKET_NAME,
                 region: str = settings.AWS_REGION, client=None):
        if not bucket:
            raise ValueError("S3 bucket name is required")
        self.bucket = bucket
        self._client = client or boto3.client("s3", region_name=region)

    async def get(self, key: str) -> Optional[Any]:
        """Return the parsed JSON stored under key, or None when absent"""
        try:
            body = await asyncio.to_thread(self._read, key)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in _MISSING_CODES:
                return None
            logger.error("blob_cache_read_error", key=key, error=str(e))
            raise

        try:
            return json.loads(body)
        except ValueError as e:
            logger.warning("blob_cache_unparseable", key=key, error=str(e))
            return None

    async def put(self, key: str, value: Any) -> None:
        body = json.dumps(value)
        await asyncio.to_thread(self._write, key, body)
        logger.info("blob_cache_written", key=key, size=len(body))

    def _read(self, key: str) -> str:
        response = self._client.get_object(Bucket=self.bucket, Key=key)
        return response["Body"].read().decode("utf-8")

    def _write(self, key: str, body: str):
        self._client.put_object(
            Bucket=self.bucket,
            Key=key,
            Body=body.encode("utf-8"),
            ContentType="application/json",
        )
