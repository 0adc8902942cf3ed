from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass(slots=True)
class LiquiditySnapshot:
    """Pool depth backing a token at detection time."""

    usd: float = 0.0
    sol: float = 0.0


@dataclass(slots=True)
class CandidateRecord:
    """A token discovered by one of the detection strategies.

    Records are treated as read-only once a strategy has emitted them. A
    later record for the same ``address`` may supersede this one when it
    carries a higher ``trending_score``.
    """

    address: str
    name: str
    symbol: str
    detected_at: float
    source: str
    decimals: int = 9
    liquidity: LiquiditySnapshot = field(default_factory=LiquiditySnapshot)
    volume_5m: float = 0.0
    volume_1h: float = 0.0
    volume_24h: float = 0.0
    price_change_5m: float = 0.0
    price_change_1h: float = 0.0
    price_change_24h: float = 0.0
    txns_5m: int = 0
    txns_1h: int = 0
    txns_24h: int = 0
    price_usd: Optional[float] = None
    trending_score: Optional[float] = None
    security_score: Optional[float] = None
    dex_id: Optional[str] = None
    pair_address: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def has_market_data(self) -> bool:
        """``True`` when the record carries any volume or transaction windows."""

        return any(
            (
                self.volume_5m,
                self.volume_1h,
                self.volume_24h,
                self.txns_5m,
                self.txns_1h,
                self.txns_24h,
            )
        )


@dataclass(slots=True)
class DetectionResult:
    """One emission cycle of a strategy."""

    records: List[CandidateRecord]
    source: str
    strategy: str
    timestamp: float
    processing_time: float = 0.0
    batch_size: int = 0
    errors: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class FilterResult:
    """Outcome of scoring a record against acceptance criteria."""

    passed: bool
    score: float
    reasons: List[str] = field(default_factory=list)


@dataclass(slots=True)
class StrategyStatus:
    is_running: bool = False
    detected_count: int = 0
    last_detection: Optional[float] = None
    error_count: int = 0
    avg_processing_time: float = 0.0
    emitted_batches: int = 0
    last_error: Optional[str] = None


@dataclass(slots=True)
class DetectionSummary:
    """Diagnostic event emitted after every processed :class:`DetectionResult`."""

    source: str
    strategy: str
    original_count: int
    filtered_count: int
    processing_time: float
    timestamp: float
    rejected_count: int = 0
    invalid_count: int = 0
    duplicate_count: int = 0
    cached: bool = False


@dataclass(slots=True)
class Listing:
    """Market-data gateway response for a single listing request."""

    items: List[Dict[str, Any]]
    endpoint: str
    cached: bool = False
    fetched_at: float = 0.0
