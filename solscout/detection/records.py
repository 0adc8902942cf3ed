"""Conversion helpers turning raw source payloads into :class:`CandidateRecord`."""

from __future__ import annotations

import math
import os
import time
from typing import Any, Dict, Iterable, List, Mapping, Optional

from ..validation import is_valid_identifier
from .types import CandidateRecord, LiquiditySnapshot

LAMPORTS_PER_SOL = 1_000_000_000

try:
    SOL_PRICE_USD = float(os.getenv("SOL_PRICE_USD", "150") or 150.0)
except ValueError:  # pragma: no cover - env misconfiguration
    SOL_PRICE_USD = 150.0

KNOWN_MINTS = frozenset(
    {
        "11111111111111111111111111111112",
        "So11111111111111111111111111111111111111112",
        "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
        "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB",
    }
)

# Lower-cased substrings that mark a pool or mint being created.
POOL_CREATION_KEYWORDS = (
    "initialize2",
    "initializepool",
    "initializeinstruction",
    "initializemint",
    "initialize",
    "createpool",
    "create",
    "openposition",
)

TOKEN_CREATION_TYPES = frozenset(
    {
        "initializeMint",
        "initializeMint2",
        "createAccount",
        "initializeAccount",
        "initializeAccount2",
        "initializeAccount3",
        "initialize",
    }
)


def _coerce_float(value: Any) -> float:
    """Best-effort conversion of ``value`` to ``float``; invalid input yields ``0.0``."""

    if value is None:
        return 0.0
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(numeric) or math.isinf(numeric):
        return 0.0
    return numeric


def _window(payload: Any, key: str) -> float:
    if isinstance(payload, Mapping):
        return _coerce_float(payload.get(key))
    return 0.0


def _txn_count(txns: Any, key: str) -> int:
    if not isinstance(txns, Mapping):
        return 0
    bucket = txns.get(key)
    if not isinstance(bucket, Mapping):
        return 0
    return int(_coerce_float(bucket.get("buys")) + _coerce_float(bucket.get("sells")))


def generate_symbol(address: str) -> str:
    """Derive a stable four-letter placeholder ticker from a mint address."""

    letters = [chr(ord("A") + ord(ch) % 26) for ch in address[:4]]
    return "".join(letters) or "UNKN"


def compute_trending_score(pair: Mapping[str, Any]) -> float:
    """Momentum score in ``0..100`` from short-window volume, price and activity."""

    volume = pair.get("volume") or {}
    price_change = pair.get("priceChange") or {}
    txns = pair.get("txns") or {}
    score = 0.0

    volume_ratio = _window(volume, "m5") / max(_window(volume, "h1") / 12, 1)
    score += min(volume_ratio * 40, 40)

    change_5m = _window(price_change, "m5")
    if change_5m > 0:
        score += min(change_5m * 30, 30)

    activity = _txn_count(txns, "m5") / max(_txn_count(txns, "h1") / 12, 1)
    score += min(activity * 20, 20)

    liquidity = pair.get("liquidity")
    usd = _window(liquidity, "usd") if isinstance(liquidity, Mapping) else _coerce_float(liquidity)
    if usd > 10_000:
        score += 10
    elif usd > 5_000:
        score += 5

    return float(round(min(score, 100)))


def record_from_pair(
    pair: Mapping[str, Any],
    *,
    source: str = "dexscreener",
    now: Optional[float] = None,
) -> Optional[CandidateRecord]:
    """Build a record from a DexScreener pair payload.

    Returns ``None`` when the base token is missing or not a Solana address.
    """

    base = pair.get("baseToken")
    if not isinstance(base, Mapping):
        return None
    address = base.get("address")
    if not is_valid_identifier(address):
        return None
    if now is None:
        now = time.time()

    volume = pair.get("volume") or {}
    price_change = pair.get("priceChange") or {}
    txns = pair.get("txns") or {}
    liquidity = pair.get("liquidity")
    usd = _window(liquidity, "usd") if isinstance(liquidity, Mapping) else _coerce_float(liquidity)
    native = _window(liquidity, "quote") if isinstance(liquidity, Mapping) else 0.0

    metadata: Dict[str, Any] = {}
    created = pair.get("pairCreatedAt")
    if created:
        metadata["pair_created_at"] = _coerce_float(created) / 1000.0
    info = pair.get("info")
    if isinstance(info, Mapping):
        if info.get("imageUrl"):
            metadata["image_url"] = info.get("imageUrl")
        websites = info.get("websites")
        if isinstance(websites, list):
            metadata["websites"] = [w.get("url") for w in websites if isinstance(w, Mapping)]

    return CandidateRecord(
        address=address,
        name=str(base.get("name") or ""),
        symbol=str(base.get("symbol") or ""),
        decimals=9,
        detected_at=now,
        source=source,
        liquidity=LiquiditySnapshot(usd=usd, sol=native),
        volume_5m=_window(volume, "m5"),
        volume_1h=_window(volume, "h1"),
        volume_24h=_window(volume, "h24"),
        price_change_5m=_window(price_change, "m5"),
        price_change_1h=_window(price_change, "h1"),
        price_change_24h=_window(price_change, "h24"),
        txns_5m=_txn_count(txns, "m5"),
        txns_1h=_txn_count(txns, "h1"),
        txns_24h=_txn_count(txns, "h24"),
        price_usd=_coerce_float(pair.get("priceUsd")) or None,
        trending_score=compute_trending_score(pair),
        dex_id=pair.get("dexId"),
        pair_address=pair.get("pairAddress"),
        metadata=metadata,
    )


def record_from_boost(
    boost: Mapping[str, Any],
    *,
    source: str = "boost",
    now: Optional[float] = None,
) -> Optional[CandidateRecord]:
    """Build a record from a DexScreener token-boost entry."""

    address = boost.get("tokenAddress")
    if not is_valid_identifier(address):
        return None
    if now is None:
        now = time.time()
    description = str(boost.get("description") or "").strip()
    symbol = description.split()[0].upper() if description else "BOOST"
    amount = _coerce_float(boost.get("totalAmount")) + _coerce_float(boost.get("amount"))
    metadata: Dict[str, Any] = {"boost_amount": amount}
    if boost.get("url"):
        metadata["url"] = boost.get("url")
    return CandidateRecord(
        address=address,
        name=description or "Boosted Token",
        symbol=symbol,
        decimals=9,
        detected_at=now,
        source=source,
        trending_score=min(100.0, amount),
        dex_id="boost",
        metadata=metadata,
    )


def has_pool_creation_log(logs: Iterable[str]) -> bool:
    """Return ``True`` when any log line mentions a pool or mint creation."""

    for line in logs:
        if not isinstance(line, str):
            continue
        lowered = line.lower()
        if any(keyword in lowered for keyword in POOL_CREATION_KEYWORDS):
            return True
    return False


def _instructions(tx: Mapping[str, Any]) -> List[Mapping[str, Any]]:
    found: List[Mapping[str, Any]] = []
    transaction = tx.get("transaction")
    message = transaction.get("message") if isinstance(transaction, Mapping) else None
    if isinstance(message, Mapping):
        found.extend(ix for ix in message.get("instructions") or [] if isinstance(ix, Mapping))
    meta = tx.get("meta")
    if isinstance(meta, Mapping):
        for inner in meta.get("innerInstructions") or []:
            if isinstance(inner, Mapping):
                found.extend(
                    ix for ix in inner.get("instructions") or [] if isinstance(ix, Mapping)
                )
    return found


def looks_like_token_creation(tx: Mapping[str, Any] | None) -> bool:
    """Return ``True`` for transactions carrying a mint/account initialization."""

    if not isinstance(tx, Mapping):
        return False
    for ix in _instructions(tx):
        parsed = ix.get("parsed")
        if isinstance(parsed, Mapping) and parsed.get("type") in TOKEN_CREATION_TYPES:
            return True
    return False


def extract_token_mints(tx: Mapping[str, Any] | None) -> List[str]:
    """Collect unknown, well-formed mint addresses touched by *tx* in first-seen order."""

    if not isinstance(tx, Mapping):
        return []
    candidates: List[str] = []
    meta = tx.get("meta")
    if isinstance(meta, Mapping):
        for balance in meta.get("postTokenBalances") or []:
            if isinstance(balance, Mapping):
                candidates.append(balance.get("mint"))
    for ix in _instructions(tx):
        parsed = ix.get("parsed")
        if isinstance(parsed, Mapping) and str(parsed.get("type", "")).startswith("initializeMint"):
            info = parsed.get("info")
            if isinstance(info, Mapping):
                candidates.append(info.get("mint"))

    mints: List[str] = []
    for mint in candidates:
        if mint in KNOWN_MINTS or not is_valid_identifier(mint) or mint in mints:
            continue
        mints.append(mint)
    return mints


def liquidity_from_meta(meta: Mapping[str, Any] | None) -> LiquiditySnapshot:
    """Estimate pool depth from the native balance movement of a transaction."""

    if not isinstance(meta, Mapping):
        return LiquiditySnapshot()
    pre = meta.get("preBalances") or []
    post = meta.get("postBalances") or []
    moved = 0
    for index, balance in enumerate(post):
        before = pre[index] if index < len(pre) else 0
        moved += abs(int(balance or 0) - int(before or 0))
    sol = max(0.0, moved / LAMPORTS_PER_SOL)
    return LiquiditySnapshot(usd=sol * SOL_PRICE_USD, sol=sol)
