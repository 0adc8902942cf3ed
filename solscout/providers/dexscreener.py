"""DexScreener REST gateway for trending and boosted Solana tokens."""

from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Any, Dict, Iterable, List, Mapping, Optional

import aiohttp
from cachetools import TTLCache

from ..detection.criteria import AcceptanceCriteria
from ..detection.types import Listing
from ..http import fetch_json
from ..validation import is_valid_identifier

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.dexscreener.com"
PROFILES_PATH = "/token-profiles/latest/v1"
TOKENS_PATH = "/latest/dex/tokens/{addresses}"
BOOSTS_LATEST_PATH = "/token-boosts/latest/v1"
BOOSTS_TOP_PATH = "/token-boosts/top/v1"

# DexScreener accepts at most 30 comma separated addresses per tokens request.
MAX_ADDRESSES_PER_REQUEST = 30

try:
    _DEFAULT_TIMEOUT = float(os.getenv("DEXSCREENER_TIMEOUT", "10") or 10.0)
except ValueError:  # pragma: no cover - env misconfiguration
    _DEFAULT_TIMEOUT = 10.0


def _coerce_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _as_list(payload: Any) -> List[Mapping[str, Any]]:
    if isinstance(payload, Mapping):
        for key in ("pairs", "data", "results"):
            inner = payload.get(key)
            if isinstance(inner, list):
                payload = inner
                break
        else:
            return [payload] if payload.get("tokenAddress") else []
    if not isinstance(payload, list):
        return []
    return [item for item in payload if isinstance(item, Mapping)]


def _pair_liquidity(pair: Mapping[str, Any]) -> float:
    liquidity = pair.get("liquidity")
    if isinstance(liquidity, Mapping):
        return _coerce_float(liquidity.get("usd"))
    return _coerce_float(liquidity)


def _boost_amount(boost: Mapping[str, Any]) -> float:
    return _coerce_float(boost.get("totalAmount")) + _coerce_float(boost.get("amount"))


class DexScreenerGateway:
    """Market-data gateway backed by the public DexScreener API.

    Responses are memoised per URL for ``cache_ttl`` seconds. Callers receive
    :class:`Listing` objects whose ``cached`` flag tells whether the network
    was hit.
    """

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_BASE_URL,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = _DEFAULT_TIMEOUT,
        cache_ttl: float = 30.0,
        cache_size: int = 256,
        chain_id: str = "solana",
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.chain_id = chain_id
        self._session = session
        self._cache: TTLCache = TTLCache(maxsize=cache_size, ttl=cache_ttl)
        self._lock = asyncio.Lock()

    async def _get(self, path: str) -> tuple[Any, bool]:
        url = f"{self.base_url}{path}"
        async with self._lock:
            if url in self._cache:
                return self._cache[url], True
        payload = await fetch_json(url, session=self._session, timeout=self.timeout)
        async with self._lock:
            self._cache[url] = payload
        return payload, False

    def _on_chain(self, item: Mapping[str, Any]) -> bool:
        return str(item.get("chainId") or "").lower() == self.chain_id

    async def fetch_trending(self, criteria: AcceptanceCriteria) -> Listing:
        """Latest token profiles resolved to their trading pairs.

        Pairs below ``criteria.min_liquidity`` or without a positive price are
        dropped here so the coordinator only scores plausible candidates.
        """

        profiles, profiles_cached = await self._get(PROFILES_PATH)
        addresses: List[str] = []
        for profile in _as_list(profiles):
            address = profile.get("tokenAddress")
            if self._on_chain(profile) and is_valid_identifier(address) and address not in addresses:
                addresses.append(address)
            if len(addresses) >= MAX_ADDRESSES_PER_REQUEST:
                break
        if not addresses:
            return Listing(items=[], endpoint=PROFILES_PATH, cached=profiles_cached, fetched_at=time.time())

        payload, pairs_cached = await self._get(TOKENS_PATH.format(addresses=",".join(addresses)))
        best: Dict[str, Mapping[str, Any]] = {}
        for pair in _as_list(payload):
            if not self._on_chain(pair) or _coerce_float(pair.get("priceUsd")) <= 0:
                continue
            if _pair_liquidity(pair) < criteria.min_liquidity:
                continue
            base = pair.get("baseToken") or {}
            address = base.get("address") if isinstance(base, Mapping) else None
            if not address:
                continue
            current = best.get(address)
            if current is None or _pair_liquidity(pair) > _pair_liquidity(current):
                best[address] = pair
        logger.debug(
            "DexScreener trending: %d profiles -> %d pairs", len(addresses), len(best)
        )
        return Listing(
            items=[dict(pair) for pair in best.values()],
            endpoint=TOKENS_PATH,
            cached=profiles_cached and pairs_cached,
            fetched_at=time.time(),
        )

    async def fetch_boosted(self) -> Listing:
        """Latest and top boosted tokens, one entry per address with the highest boost."""

        (latest, latest_cached), (top, top_cached) = await asyncio.gather(
            self._get(BOOSTS_LATEST_PATH), self._get(BOOSTS_TOP_PATH)
        )
        merged: Dict[str, Mapping[str, Any]] = {}
        for boost in _iter_boosts(latest, top):
            if not self._on_chain(boost):
                continue
            address = boost.get("tokenAddress")
            if not is_valid_identifier(address):
                continue
            current = merged.get(address)
            if current is None or _boost_amount(boost) > _boost_amount(current):
                merged[address] = boost
        items = sorted(merged.values(), key=_boost_amount, reverse=True)
        return Listing(
            items=[dict(item) for item in items],
            endpoint=BOOSTS_LATEST_PATH,
            cached=latest_cached and top_cached,
            fetched_at=time.time(),
        )

    def clear_cache(self) -> None:
        self._cache.clear()


def _iter_boosts(*payloads: Any) -> Iterable[Mapping[str, Any]]:
    for payload in payloads:
        yield from _as_list(payload)
