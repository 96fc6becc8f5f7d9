"""Conversion-rate source backed by a CoinGecko-compatible quote API."""

import json
import logging
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx
from redis.asyncio import Redis

from .models import ConversionRates

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.coingecko.com/api/v3"
DEFAULT_CACHE_TTL_SECONDS = 300
DEFAULT_REDIS_KEY_PREFIX = "aptos:rates:"


def _to_decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        return None
    return amount if amount.is_finite() and amount > 0 else None


class ConversionRateSource:
    """Fetches fiat and secondary-currency rates for the chain's native coin.

    A missing rate is returned as None rather than raised, so dependent
    stats fall back to zero instead of failing the run.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        api_url: str = DEFAULT_API_URL,
        api_key: str | None = None,
        coin_id: str = "aptos",
        fiat_currency: str = "usd",
        secondary_currency: str = "eth",
        redis: Redis | None = None,
        cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
    ) -> None:
        self._http = http_client
        self._api_url = api_url.rstrip("/")
        self._api_key = api_key
        self._coin_id = coin_id
        self._fiat = fiat_currency.lower()
        self._secondary = secondary_currency.lower()
        self._redis = redis
        self._cache_ttl = cache_ttl_seconds
        self._cache_key = f"{DEFAULT_REDIS_KEY_PREFIX}{coin_id}:{self._fiat}:{self._secondary}"

    async def _get_cached(self) -> ConversionRates | None:
        if not self._redis:
            return None
        try:
            cached = await self._redis.get(self._cache_key)
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None
        if not cached:
            return None
        try:
            return ConversionRates.from_dict(json.loads(cached))
        except (json.JSONDecodeError, KeyError, ValueError, InvalidOperation) as e:
            logger.warning("Failed to parse cached conversion rates: %s", e)
            return None

    async def _set_cached(self, rates: ConversionRates) -> None:
        if not self._redis:
            return
        try:
            await self._redis.setex(self._cache_key, self._cache_ttl, json.dumps(rates.to_dict()))
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    async def get_rates(self) -> ConversionRates:
        """Get current conversion rates (cache-first).

        Returns:
            ConversionRates; either rate is None when unavailable.
        """
        cached = await self._get_cached()
        if cached is not None:
            return cached

        headers = {"x-cg-pro-api-key": self._api_key} if self._api_key else {}
        params = {"ids": self._coin_id, "vs_currencies": f"{self._fiat},{self._secondary}"}
        try:
            response = await self._http.get(
                f"{self._api_url}/simple/price",
                params=params,
                headers=headers,
            )
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
            logger.warning("Failed to fetch conversion rates for %s: %s", self._coin_id, e)
            return ConversionRates()

        quote = body.get(self._coin_id) if isinstance(body, dict) else None
        if not isinstance(quote, dict):
            logger.warning("Quote API returned no price for %s", self._coin_id)
            return ConversionRates()

        rates = ConversionRates(
            fiat=_to_decimal(quote.get(self._fiat)),
            secondary=_to_decimal(quote.get(self._secondary)),
        )
        if rates.fiat is not None or rates.secondary is not None:
            await self._set_cached(rates)
        return rates
