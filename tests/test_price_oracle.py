"""
Test the cached price oracle.
"""

import asyncio
from decimal import Decimal

import pytest

from degen_backend.core.exceptions import PriceUnavailable
from degen_backend.services.price_oracle import PriceOracle


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.mark.asyncio
async def test_price_cached_within_ttl(make_price_oracle):
    """Calls inside the TTL are served from cache."""
    clock = FakeClock()
    oracle = make_price_oracle(Decimal("150.25"), clock=clock)

    assert await oracle.get_price() == Decimal("150.25")
    clock.advance(5)
    assert await oracle.get_price() == Decimal("150.25")
    assert oracle.fetch_count == 1

    clock.advance(6)
    oracle.price = Decimal("151")
    assert await oracle.get_price() == Decimal("151")
    assert oracle.fetch_count == 2


@pytest.mark.asyncio
async def test_stale_price_served_when_upstream_fails(make_price_oracle):
    """Expired cache is returned on failure unless the caller refuses stale rates."""
    clock = FakeClock()
    oracle = make_price_oracle(Decimal("100"), clock=clock)
    await oracle.get_price()

    clock.advance(60)
    oracle.error = "HTTP 429"

    assert await oracle.get_price() == Decimal("100")
    assert oracle.cache_age == pytest.approx(60)

    with pytest.raises(PriceUnavailable):
        await oracle.get_price(allow_stale=False)


@pytest.mark.asyncio
async def test_no_cached_price_raises(make_price_oracle):
    oracle = make_price_oracle()
    oracle.error = "connection refused"

    with pytest.raises(PriceUnavailable):
        await oracle.get_price()
    assert oracle.cached_price is None
    assert oracle.cache_age is None


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_fetch(test_settings):
    """Callers arriving during a refresh wait for it instead of fetching again."""

    class SlowOracle(PriceOracle):
        calls = 0

        async def _fetch_price(self) -> Decimal:
            SlowOracle.calls += 1
            await asyncio.sleep(0.05)
            return Decimal("99.5")

    oracle = SlowOracle(test_settings)
    prices = await asyncio.gather(*(oracle.get_price() for _ in range(10)))

    assert prices == [Decimal("99.5")] * 10
    assert SlowOracle.calls == 1


def test_parse_price_valid_payload():
    assert PriceOracle.parse_price({"solana": {"usd": 142.5}}, "solana") == Decimal("142.5")


@pytest.mark.parametrize("payload", [
    {"solana": {"usd": 0}},
    {"solana": {"usd": -3.2}},
    {"solana": {"usd": "NaN"}},
    {"solana": {"usd": "Infinity"}},
    {"solana": {}},
    {"bitcoin": {"usd": 60000}},
    [],
    None,
])
def test_parse_price_rejects_bad_payloads(payload):
    with pytest.raises(PriceUnavailable):
        PriceOracle.parse_price(payload, "solana")
