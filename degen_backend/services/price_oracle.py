"""
Price oracle backed by the CoinGecko simple price API.

Keeps the last good USD rate for a short TTL. Concurrent callers that find
the cache expired share a single upstream request.
"""

import asyncio
import time
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional

import aiohttp
import structlog

from degen_backend.core.config import Settings, settings
from degen_backend.core.exceptions import PriceUnavailable


logger = structlog.get_logger(__name__)


class PriceOracle:
    """Service for fetching the native token USD price."""

    def __init__(
        self,
        config: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        config = config or settings
        self.base_url = config.coingecko_base_url.rstrip("/")
        self.asset_id = config.coingecko_asset_id
        self.cache_ttl = config.price_cache_ttl_seconds
        self.request_timeout = config.price_request_timeout

        self._clock = clock
        self._cached_price: Optional[Decimal] = None
        self._cache_timestamp = 0.0
        self._lock = asyncio.Lock()

        self.logger = logger.bind(service="price_oracle")

    @property
    def cached_price(self) -> Optional[Decimal]:
        return self._cached_price

    @property
    def cache_age(self) -> Optional[float]:
        """Seconds since the cached rate was fetched, None if nothing is cached."""
        if self._cached_price is None:
            return None
        return self._clock() - self._cache_timestamp

    def _is_fresh(self) -> bool:
        age = self.cache_age
        return age is not None and age < self.cache_ttl

    async def get_price(self, allow_stale: bool = True) -> Decimal:
        """
        Get the current USD price of one native unit.

        Args:
            allow_stale: Return the last cached rate when the upstream fails.
                Settlement-critical callers pass False.

        Raises:
            PriceUnavailable: Upstream failed and no acceptable cached rate exists.
        """
        if self._is_fresh():
            return self._cached_price

        async with self._lock:
            # Another caller may have refreshed while we waited
            if self._is_fresh():
                return self._cached_price

            try:
                price = await self._fetch_price()
            except PriceUnavailable as e:
                if self._cached_price is not None and allow_stale:
                    self.logger.warning(
                        "⚠️ Price fetch failed, serving stale rate",
                        error=e.message,
                        stale_price=str(self._cached_price),
                        age_seconds=round(self.cache_age, 1)
                    )
                    return self._cached_price

                self.logger.error(
                    "Price unavailable",
                    error=e.message,
                    has_cached=self._cached_price is not None,
                    allow_stale=allow_stale
                )
                raise

            self._cached_price = price
            self._cache_timestamp = self._clock()
            self.logger.info("Price updated", asset=self.asset_id, price_usd=str(price))
            return price

    async def _fetch_price(self) -> Decimal:
        """Request the rate from CoinGecko. Any failure becomes PriceUnavailable."""
        url = f"{self.base_url}/simple/price"
        params = {
            "ids": self.asset_id,
            "vs_currencies": "usd"
        }
        timeout = aiohttp.ClientTimeout(total=self.request_timeout)

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url, params=params) as response:
                    if response.status != 200:
                        raise PriceUnavailable(
                            f"Price API returned HTTP {response.status}",
                            {"status": response.status}
                        )
                    data = await response.json()
        except asyncio.TimeoutError:
            raise PriceUnavailable("Price API timeout", {"timeout": self.request_timeout})
        except aiohttp.ClientError as e:
            raise PriceUnavailable(f"Price API request failed: {e}")

        return self.parse_price(data, self.asset_id)

    @staticmethod
    def parse_price(data, asset_id: str) -> Decimal:
        """Extract a positive finite rate from a simple price payload."""
        raw = None
        if isinstance(data, dict):
            asset = data.get(asset_id)
            if isinstance(asset, dict):
                raw = asset.get("usd")

        try:
            price = Decimal(str(raw))
        except (InvalidOperation, TypeError, ValueError):
            raise PriceUnavailable("Malformed price payload", {"payload": str(data)[:200]})

        if not price.is_finite() or price <= 0:
            raise PriceUnavailable("Non-positive price from upstream", {"price": str(raw)})

        return price
