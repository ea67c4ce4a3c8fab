import os
from dotenv import load_dotenv

load_dotenv()


def _env(name: str, default: str = "") -> str:
    # Strip any whitespace or trailing comments from environment variables
    return os.getenv(name, default).split("#")[0].strip()


class Settings:
    PORT = int(_env("PORT", "8000"))
    VERSION = "1.0.0"

    # Shared secret expected in the x-api-key header
    API_ROUTE_SECRET = _env("API_ROUTE_SECRET")

    # Rate limiting settings
    RATE_LIMIT_START_JOB = "10/minute"
    RATE_LIMIT_STATUS = "30/minute"

    # Blob cache
    S3_BUCKET_NAME = _env("S3_BUCKET_NAME")
    AWS_REGION = _env("AWS_REGION", "us-east-2")
    RAW_TRANSACTIONS_PREFIX = _env("RAW_TRANSACTIONS_PREFIX", "wrapped-2024-raw")
    ANALYSIS_CHUNKS_PREFIX = _env(
        "ANALYSIS_CHUNKS_PREFIX", "wrapped-2024-analysis-chunks")
    FINAL_ANALYSIS_PREFIX = _env("FINAL_ANALYSIS_PREFIX", "wrapped-2024-analysis")

    # Data provider
    ZAPPER_API_KEY = _env("ZAPPER_API_KEY")
    ZAPPER_GRAPHQL_URL = _env(
        "ZAPPER_GRAPHQL_URL", "https://public.zapper.xyz/graphql")
    ZAPPER_NETWORK = _env("ZAPPER_NETWORK", "BASE_MAINNET")
    ZAPPER_PAGE_SIZE = int(_env("ZAPPER_PAGE_SIZE", "75"))
    PERIOD_START = _env("PERIOD_START", "2024-01-01")
    FETCH_TIMEOUT = float(_env("FETCH_TIMEOUT", "300"))

    # AI provider
    OPENAI_API_KEY = _env("OPENAI_API_KEY")
    OPENAI_ASSISTANT_ID = _env("OPENAI_ASSISTANT_ID")
    POLL_INTERVAL = float(_env("POLL_INTERVAL", "1"))
    POLL_MAX_WAIT = float(_env("POLL_MAX_WAIT", "300"))

    # Pipeline
    BATCH_SIZE = int(_env("BATCH_SIZE", "200"))
    RETRY_ATTEMPTS = int(_env("RETRY_ATTEMPTS", "5"))
    RETRY_BASE_DELAY = float(_env("RETRY_BASE_DELAY", "1"))
    RETRY_MAX_DELAY = float(_env("RETRY_MAX_DELAY", "30"))
    WORKER_COUNT = int(_env("WORKER_COUNT", "4"))
    LOCK_TIMEOUT = float(_env("LOCK_TIMEOUT", str(20 * 60)))
    JOB_RETENTION_TTL = float(_env("JOB_RETENTION_TTL", "3600"))

    # Notifications
    REDIS_URL = _env("REDIS_URL", "redis://localhost:6379/0")
    NOTIFICATION_TARGET_URL = _env("NEXT_PUBLIC_HOST")

    # Name resolution
    ETHEREUM_RPC_URL = _env("ETHEREUM_RPC_URL")


settings = Settings()
