"""Confidence scoring for detected tokens.

Each signal contributes a fixed number of points when satisfied; the honeypot
and rug heuristics subtract a penalty when they fire. The result is a plain
function of ``(record, criteria, now)`` so identical inputs always score the
same.
"""

from __future__ import annotations

import logging
import re
import time
from typing import Callable, List, Optional

from ..validation import is_valid_identifier
from .criteria import AcceptanceCriteria
from .types import CandidateRecord, FilterResult

log = logging.getLogger(__name__)

FRESHNESS_POINTS = 20
LIQUIDITY_POINTS = 25
ADDRESS_POINTS = 10
METADATA_POINTS = 10
ACTIVITY_POINTS = 10
HONEYPOT_PENALTY = 50
RUG_PENALTY = 50

HONEYPOT_LIQUIDITY_FLOOR = 100.0
RUG_LIQUIDITY_FLOOR = 500.0

SOURCE_WEIGHTS = {
    "mempool": 20,
    "websocket": 15,
    "scanning": 15,
    "dexscreener": 10,
    "polling": 10,
    "boost": 8,
}
UNKNOWN_SOURCE_WEIGHT = 5

CANONICAL_MINTS = {
    "SOL": {"11111111111111111111111111111112", "So11111111111111111111111111111111111111112"},
    "WSOL": {"So11111111111111111111111111111111111111112"},
    "USDC": {"EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"},
    "USDT": {"Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB"},
}

_DECOY_RE = re.compile(r"\b(?:test|scam|fake|honeypot|rug|rugpull)\b", re.IGNORECASE)
_SOURCE_SPLIT_RE = re.compile(r"[-:_]")

RiskLookup = Callable[[CandidateRecord], bool]


def source_weight(source: str | None) -> int:
    """Return the credibility weight for a source tag such as ``websocket-raydium``."""

    if not source:
        return UNKNOWN_SOURCE_WEIGHT
    family = _SOURCE_SPLIT_RE.split(source.strip().lower(), maxsplit=1)[0]
    return SOURCE_WEIGHTS.get(family, UNKNOWN_SOURCE_WEIGHT)


def _safe_lookup(check: Optional[RiskLookup], record: CandidateRecord, label: str) -> bool:
    if check is None:
        return False
    try:
        return bool(check(record))
    except Exception as exc:
        log.debug("%s lookup failed for %s: %s", label, record.address, exc)
        return False


def is_decoy_symbol(record: CandidateRecord) -> bool:
    symbol = (record.symbol or "").strip()
    if not symbol:
        return False
    if _DECOY_RE.search(symbol):
        return True
    canonical = CANONICAL_MINTS.get(symbol.upper())
    return canonical is not None and record.address not in canonical


def looks_like_honeypot(
    record: CandidateRecord, lookup: Optional[RiskLookup] = None
) -> bool:
    usd = record.liquidity.usd
    if is_decoy_symbol(record):
        return True
    if 0 < usd < HONEYPOT_LIQUIDITY_FLOOR:
        return True
    return _safe_lookup(lookup, record, "honeypot")


def looks_like_rug(record: CandidateRecord, lookup: Optional[RiskLookup] = None) -> bool:
    if not (record.name or "").strip() or not (record.symbol or "").strip():
        return True
    if record.liquidity.usd < RUG_LIQUIDITY_FLOOR:
        return True
    return _safe_lookup(lookup, record, "rug")


def _activity_reasons(record: CandidateRecord, criteria: AcceptanceCriteria) -> List[str]:
    reasons: List[str] = []
    volumes = (
        (record.volume_5m, criteria.min_volume_5m),
        (record.volume_1h, criteria.min_volume_1h),
        (record.volume_24h, criteria.min_volume_24h),
    )
    if any(value < minimum for value, minimum in volumes):
        reasons.append("insufficient_volume")
    txns = (
        (record.txns_5m, criteria.min_txns_5m),
        (record.txns_1h, criteria.min_txns_1h),
        (record.txns_24h, criteria.min_txns_24h),
    )
    if any(value < minimum for value, minimum in txns):
        reasons.append("insufficient_transactions")
    return reasons


def score_candidate(
    record: CandidateRecord,
    criteria: AcceptanceCriteria,
    *,
    now: Optional[float] = None,
    honeypot_check: Optional[RiskLookup] = None,
    rug_check: Optional[RiskLookup] = None,
) -> FilterResult:
    """Score *record* against *criteria*.

    ``honeypot_check`` and ``rug_check`` are optional external lookups; an
    exception raised by either counts as "not flagged".
    """

    if now is None:
        now = time.time()
    score = 0
    reasons: List[str] = []

    if now - record.detected_at <= criteria.max_age:
        score += FRESHNESS_POINTS
    else:
        reasons.append("token_too_old")

    usd = record.liquidity.usd
    if usd > 0 and usd >= criteria.min_liquidity:
        score += LIQUIDITY_POINTS
    else:
        reasons.append("insufficient_liquidity")

    if is_valid_identifier(record.address):
        score += ADDRESS_POINTS
    else:
        reasons.append("invalid_address")

    if (record.symbol or "").strip() and (record.name or "").strip():
        score += METADATA_POINTS
    else:
        reasons.append("missing_metadata")

    score += source_weight(record.source)

    if record.has_market_data:
        activity = _activity_reasons(record, criteria)
        if activity:
            reasons.extend(activity)
        else:
            score += ACTIVITY_POINTS

    if criteria.filter_honeypots and looks_like_honeypot(record, honeypot_check):
        score -= HONEYPOT_PENALTY
        reasons.append("honeypot_detected")

    if criteria.filter_rugs and looks_like_rug(record, rug_check):
        score -= RUG_PENALTY
        reasons.append("rug_risk_detected")

    return FilterResult(
        passed=score >= criteria.min_confidence_score,
        score=float(score),
        reasons=reasons,
    )
