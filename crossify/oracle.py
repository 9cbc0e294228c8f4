"""
Reference-price oracles consulted by the circuit breaker.

An oracle answers get_reference_price(token_id) with (price, confidence),
confidence in basis points, or None when it has no answer. The circuit
breaker asks while holding a token's lane, so the oracle it is given must
answer from memory: wrap network oracles in a ReferencePriceCache.
"""
import asyncio
import logging
import time
from typing import Optional

import requests

logger = logging.getLogger(__name__)


class HttpReferenceOracle:
    """
    Reads reference prices from a price-verification endpoint.

    Expects GET {url}/{token_id} to return {"price": int, "confidence": int}.
    """

    def __init__(self, url: str, timeout: float = 5.0, session: requests.Session = None):
        self.url = url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()

    def get_reference_price(self, token_id: int) -> Optional[tuple[int, int]]:
        try:
            r = self.session.get(f"{self.url}/{token_id}", timeout=self.timeout)
            r.raise_for_status()
            body = r.json()
            return int(body["price"]), int(body["confidence"])
        except (requests.RequestException, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Reference price unavailable for token {token_id}: {e}")
            return None


class StaticReferenceOracle:
    """Fixed reference prices, set by an operator."""

    def __init__(self, prices: dict = None):
        self.prices = dict(prices or {})

    def set_price(self, token_id: int, price: int, confidence: int = 10_000):
        self.prices[token_id] = (price, confidence)

    def get_reference_price(self, token_id: int) -> Optional[tuple[int, int]]:
        return self.prices.get(token_id)


class ReferencePriceCache:
    """
    Non-blocking view of a slow oracle.

    get_reference_price only reads the cache and remembers which tokens were
    asked for; refresh() fetches those tokens from the source in executor
    threads, away from any token lane.
    """

    def __init__(self, source, max_age: float = 120.0, clock=time.time):
        self.source = source
        self.max_age = max_age
        self.clock = clock
        self._prices: dict[int, tuple[int, int, float]] = {}
        self._wanted: set[int] = set()

    def get_reference_price(self, token_id: int) -> Optional[tuple[int, int]]:
        self._wanted.add(token_id)
        entry = self._prices.get(token_id)
        if entry is None:
            return None
        price, confidence, fetched_at = entry
        if self.clock() - fetched_at > self.max_age:
            return None
        return price, confidence

    async def refresh(self, token_ids=None) -> int:
        """Fetch reference prices for `token_ids` (default: every token asked for). Returns how many answered."""
        token_ids = sorted(self._wanted if token_ids is None else token_ids)
        loop = asyncio.get_running_loop()
        answered = 0
        for token_id in token_ids:
            reference = await loop.run_in_executor(None, self.source.get_reference_price, token_id)
            if reference is None:
                continue
            price, confidence = reference
            self._prices[token_id] = (price, confidence, self.clock())
            answered += 1
        logger.debug(f"Refreshed {answered}/{len(token_ids)} reference prices")
        return answered
