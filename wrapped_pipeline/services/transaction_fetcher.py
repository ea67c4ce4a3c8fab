import asyncio
import base64
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional, Callable

import httpx
import structlog

from ..config.settings import settings
from ..errors import DataProviderError
from ..models.analysis_models import Transaction
from .polling import retrying

logger = structlog.get_logger()

TIMELINE_QUERY = """
query($addresses: [Address!], $realtimeInterpretation: Boolean, $isSigner: Boolean, $network: Network!, $first: Int, $after: String) {
  accountsTimeline(addresses: $addresses, realtimeInterpretation: $realtimeInterpretation, isSigner: $isSigner, network: $network, first: $first, after: $after) {
    edges {
      node {
        app {
          tags
          app {
            imgUrl
            category {
              name
              description
            }
          }
        }
        interpretation {
          processedDescription
        }
        interpreter {
          category
        }
        key
        timestamp
        transaction {
          hash
          toUser {
            displayName {
              value
            }
          }
          fromUser {
            displayName {
              value
            }
          }
          value
        }
      }
    }
    pageInfo {
      startCursor
      hasNextPage
      endCursor
    }
  }
}
"""


def period_start_ms(period_start: str) -> int:
    """Epoch milliseconds for an ISO date, read as UTC"""
    start = datetime.fromisoformat(period_start)
    if start.tzinfo is None:
        start = start.replace(tzinfo=timezone.utc)
    return int(start.timestamp() * 1000)


def _display_name(user: Optional[Dict]) -> str:
    return ((user or {}).get("displayName") or {}).get("value") or ""


def normalize_transaction(edge: Dict) -> Transaction:
    """Flatten a timeline edge into a Transaction, keeping the raw edge"""
    node = edge.get("node") or {}
    tx = node.get("transaction") or {}
    return Transaction(
        hash=tx.get("hash") or node.get("key", ""),
        timestamp=node.get("timestamp", 0),
        description=(node.get("interpretation") or {}).get(
            "processedDescription") or "",
        category=(node.get("interpreter") or {}).get("category") or "",
        tags=list((node.get("app") or {}).get("tags") or []),
        from_user=_display_name(tx.get("fromUser")),
        to_user=_display_name(tx.get("toUser")),
        value=tx.get("value") or "0",
        raw=edge,
    )


class TransactionFetcher:
    """Pages through an address's timeline on the GraphQL data provider"""

    def __init__(
        self,
        api_key: str = settings.ZAPPER_API_KEY,
        endpoint: str = settings.ZAPPER_GRAPHQL_URL,
        network: str = settings.ZAPPER_NETWORK,
        page_size: int = settings.ZAPPER_PAGE_SIZE,
        period_start: str = settings.PERIOD_START,
        timeout: float = settings.FETCH_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_policy: Callable = retrying,
        clock: Callable[[], float] = time.time,
    ):
        self.api_key = api_key
        self.endpoint = endpoint
        self.network = network
        self.page_size = page_size
        self.period_start = period_start_ms(period_start)
        self.timeout = timeout
        self._transport = transport
        self._retry_policy = retry_policy
        self._clock = clock

    def _headers(self) -> Dict[str, str]:
        token = base64.b64encode(self.api_key.encode()).decode()
        return {
            "Content-Type": "application/json",
            "Authorization": f"Basic {token}",
        }

    async def fetch(self, address: str,
                    on_retry: Optional[Callable] = None) -> List[Transaction]:
        """Fetch and normalize every in-window transaction for address"""
        try:
            edges = await asyncio.wait_for(
                self._fetch_edges(address, on_retry), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise DataProviderError(
                f"transaction fetch timed out after {self.timeout:g}s")
        return [normalize_transaction(edge) for edge in edges]

    async def _fetch_edges(self, address: str,
                           on_retry: Optional[Callable] = None) -> List[Dict]:
        period_end = int(self._clock() * 1000)
        all_edges: List[Dict] = []
        cursor = None

        async with httpx.AsyncClient(
                transport=self._transport, timeout=30.0) as client:
            while True:
                page = await self._fetch_page(client, address, cursor, on_retry)
                edges = page.get("edges") or []
                page_info = page.get("pageInfo") or {}

                oldest = edges[-1]["node"].get("timestamp") if edges else None
                if oldest is not None and oldest < self.period_start:
                    # Crossed the window: keep only this page's in-window part
                    all_edges.extend(
                        edge for edge in edges
                        if self.period_start <= edge["node"].get("timestamp", 0) < period_end
                    )
                    break

                all_edges.extend(edges)
                logger.info("transaction_page_fetched",
                            address=address,
                            page_size=len(edges),
                            total=len(all_edges))

                if not page_info.get("hasNextPage"):
                    break
                cursor = page_info.get("endCursor")

        return all_edges

    async def _fetch_page(self, client: httpx.AsyncClient, address: str,
                          cursor: Optional[str],
                          on_retry: Optional[Callable] = None) -> Dict:
        payload = {
            "query": TIMELINE_QUERY,
            "variables": {
                "addresses": [address],
                "isSigner": True,
                "realtimeInterpretation": False,
                "network": self.network,
                "first": self.page_size,
                "after": cursor,
            },
        }

        async for attempt in self._retry_policy(on_retry=on_retry):
            with attempt:
                try:
                    response = await client.post(
                        self.endpoint, json=payload, headers=self._headers())
                except httpx.HTTPError as e:
                    raise DataProviderError(f"request failed: {e}") from e

                if response.status_code != 200:
                    logger.error("data_provider_request_failed",
                                 address=address,
                                 status=response.status_code)
                    raise DataProviderError(
                        f"GraphQL request failed with status {response.status_code}")

                try:
                    body = response.json()
                except ValueError as e:
                    raise DataProviderError(f"invalid JSON response: {e}") from e
                if body.get("errors"):
                    raise DataProviderError(
                        f"GraphQL errors: {body['errors']}")
                try:
                    return body["data"]["accountsTimeline"]
                except (KeyError, TypeError) as e:
                    raise DataProviderError(
                        f"unexpected GraphQL response shape: {e}") from e
