import ssl
from typing import Optional

import certifi
import structlog
from ens import AsyncENS
from web3 import AsyncWeb3, Web3
from web3.providers import AsyncHTTPProvider

from ..config.settings import settings
from ..errors import InvalidAddressError, NameResolutionError

logger = structlog.get_logger()

ZERO_ADDRESS = "0x" + "0" * 40


def normalize_address(address: str) -> str:
    """Lower-case a hex address, rejecting malformed and zero addresses"""
    if not address or not isinstance(address, str):
        raise InvalidAddressError("Invalid address parameter")
    if not Web3.is_address(address):
        raise InvalidAddressError(f"Invalid address: {address}")
    normalized = address.lower()
    if normalized == ZERO_ADDRESS:
        raise InvalidAddressError("Cannot analyze zero address")
    return normalized


class NameResolver:
    """Turns a hex address or an ENS name into a normalized address"""

    def __init__(self, provider_url: str = settings.ETHEREUM_RPC_URL,
                 ens: Optional[AsyncENS] = None):
        self._ens = ens
        self._provider_url = provider_url

    def _get_ens(self) -> AsyncENS:
        if self._ens is None:
            if not self._provider_url:
                raise NameResolutionError(
                    "Name resolution is not configured")
            ssl_context = ssl.create_default_context(cafile=certifi.where())
            w3 = AsyncWeb3(AsyncHTTPProvider(
                self._provider_url,
                request_kwargs={
                    'timeout': 30,
                    'ssl': ssl_context,
                }
            ))
            self._ens = AsyncENS.from_web3(w3)
        return self._ens

    async def resolve(self, name_or_address: str) -> str:
        value = (name_or_address or "").strip()
        if Web3.is_address(value):
            return normalize_address(value)
        if "." not in value:
            raise InvalidAddressError(f"Invalid address: {name_or_address}")

        name = value.lower()
        try:
            resolved = await self._get_ens().address(name)
        except NameResolutionError:
            raise
        except Exception as e:
            logger.error("name_resolution_error", name=name, error=str(e))
            raise NameResolutionError(f"Failed to resolve {name}") from e

        if not resolved or resolved.lower() == ZERO_ADDRESS:
            raise NameResolutionError(f"Failed to resolve {name}")
        logger.info("name_resolved", name=name, address=resolved.lower())
        return resolved.lower()
