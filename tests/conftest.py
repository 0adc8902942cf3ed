import time
from typing import Any, Dict, List, Optional

import pytest

from solscout.detection.types import CandidateRecord, Listing, LiquiditySnapshot
from solscout.logging_utils import reset_warn_once_cache

MINT = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"

_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"


def make_address(index: int) -> str:
    digits = []
    n = index
    while True:
        n, rem = divmod(n, 58)
        digits.append(_ALPHABET[rem])
        if n == 0:
            break
    return "".join(reversed(digits)).rjust(44, "1")


class FakeConnection:
    """In-memory stand-in for :class:`solscout.connection.RpcConnection`."""

    def __init__(self) -> None:
        self.transactions: Dict[str, Any] = {}
        self.signatures: List[str] = []
        self.handlers: Dict[int, tuple] = {}
        self.removed: List[int] = []
        self.fail_programs: set = set()
        self.fail_all_subscriptions = False
        self.fail_unsubscribe: set = set()
        self.signature_error: Optional[Exception] = None
        self.signature_calls: List[tuple] = []
        self.transaction_calls: List[str] = []
        self.slot = 250_000_000
        self.slot_error: Optional[Exception] = None
        self._next_id = 1

    async def on_logs(self, program_id, handler):
        if self.fail_all_subscriptions or program_id in self.fail_programs:
            raise ConnectionError(f"subscribe failed for {program_id}")
        subscription_id = self._next_id
        self._next_id += 1
        self.handlers[subscription_id] = (program_id, handler)
        return subscription_id

    async def remove_on_logs_listener(self, subscription_id):
        self.removed.append(subscription_id)
        self.handlers.pop(subscription_id, None)
        if subscription_id in self.fail_unsubscribe:
            raise ConnectionError("unsubscribe failed")

    async def get_transaction(self, signature):
        self.transaction_calls.append(signature)
        value = self.transactions.get(signature)
        if isinstance(value, Exception):
            raise value
        return value

    async def get_signatures_for_address(self, address, limit=20):
        self.signature_calls.append((address, limit))
        if self.signature_error is not None:
            raise self.signature_error
        return list(self.signatures)[:limit]

    async def get_slot(self):
        if self.slot_error is not None:
            raise self.slot_error
        return self.slot

    def handler_for(self, program_id):
        for registered, handler in self.handlers.values():
            if registered == program_id:
                return handler
        raise KeyError(program_id)


class FakeGateway:
    def __init__(self) -> None:
        self.trending = Listing(items=[], endpoint="/latest/dex/tokens/{addresses}")
        self.boosted = Listing(items=[], endpoint="/token-boosts/latest/v1")
        self.trending_calls = 0
        self.boosted_calls = 0
        self.error: Optional[Exception] = None
        self.criteria_seen: List[Any] = []

    async def fetch_trending(self, criteria):
        self.trending_calls += 1
        self.criteria_seen.append(criteria)
        if self.error is not None:
            raise self.error
        return self.trending

    async def fetch_boosted(self):
        self.boosted_calls += 1
        if self.error is not None:
            raise self.error
        return self.boosted


@pytest.fixture
def fake_connection() -> FakeConnection:
    return FakeConnection()


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def make_record():
    def _make(
        address: str = MINT,
        *,
        name: str = "Sample Token",
        symbol: str = "SMPL",
        source: str = "dexscreener",
        usd: float = 0.0,
        trending_score: Optional[float] = None,
        detected_at: Optional[float] = None,
        **extra: Any,
    ) -> CandidateRecord:
        return CandidateRecord(
            address=address,
            name=name,
            symbol=symbol,
            detected_at=time.time() if detected_at is None else detected_at,
            source=source,
            liquidity=LiquiditySnapshot(usd=usd, sol=usd / 150.0),
            trending_score=trending_score,
            **extra,
        )

    return _make


def make_pair(address: str, **overrides: Any) -> Dict[str, Any]:
    pair: Dict[str, Any] = {
        "chainId": "solana",
        "dexId": "raydium",
        "pairAddress": "PairAddr" + address[:8],
        "baseToken": {"address": address, "name": "Moon Cat", "symbol": "MCAT"},
        "priceUsd": "0.0042",
        "volume": {"m5": 1200, "h1": 6000, "h24": 80000},
        "priceChange": {"m5": 0.5, "h1": 4.2, "h24": 30.0},
        "txns": {
            "m5": {"buys": 30, "sells": 10},
            "h1": {"buys": 120, "sells": 60},
            "h24": {"buys": 900, "sells": 500},
        },
        "liquidity": {"usd": 25000, "base": 1_000_000, "quote": 160},
        "pairCreatedAt": 1_700_000_000_000,
    }
    pair.update(overrides)
    return pair


@pytest.fixture(autouse=True)
def _reset_warn_once():
    reset_warn_once_cache()
    yield
    reset_warn_once_cache()
