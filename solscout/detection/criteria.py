from __future__ import annotations

from dataclasses import dataclass
from typing import Dict

_HOUR = 3600.0


@dataclass(frozen=True, slots=True)
class AcceptanceCriteria:
    """Thresholds applied by :func:`solscout.detection.scoring.score_candidate`.

    ``max_age`` is expressed in seconds. Volume and transaction minimums only
    apply to records that actually carry market windows.
    """

    name: str
    min_liquidity: float = 0.0
    max_age: float = 24 * _HOUR
    min_confidence_score: float = 0.0
    min_volume_5m: float = 0.0
    min_volume_1h: float = 0.0
    min_volume_24h: float = 0.0
    min_txns_5m: int = 0
    min_txns_1h: int = 0
    min_txns_24h: int = 0
    filter_honeypots: bool = True
    filter_rugs: bool = True


AGGRESSIVE = AcceptanceCriteria(
    name="aggressive",
    min_liquidity=0.0,
    max_age=72 * _HOUR,
    min_confidence_score=5.0,
    filter_honeypots=False,
    filter_rugs=False,
)

DEFAULT = AcceptanceCriteria(
    name="default",
    min_liquidity=100.0,
    max_age=24 * _HOUR,
    min_confidence_score=30.0,
    min_volume_24h=1_000.0,
    min_txns_24h=10,
)

CONSERVATIVE = AcceptanceCriteria(
    name="conservative",
    min_liquidity=1_000.0,
    max_age=6 * _HOUR,
    min_confidence_score=60.0,
    min_volume_24h=10_000.0,
    min_txns_24h=100,
)

NEW_TOKEN = AcceptanceCriteria(
    name="new_token",
    min_liquidity=5.0,
    max_age=2 * _HOUR,
    min_confidence_score=20.0,
    min_volume_5m=1.0,
    min_txns_5m=1,
    filter_honeypots=False,
    filter_rugs=False,
)

PRESETS: Dict[str, AcceptanceCriteria] = {
    preset.name: preset for preset in (AGGRESSIVE, DEFAULT, CONSERVATIVE, NEW_TOKEN)
}


def get_criteria(name: str | AcceptanceCriteria | None) -> AcceptanceCriteria:
    """Resolve a preset by name, passing through ready-made criteria."""

    if isinstance(name, AcceptanceCriteria):
        return name
    if not name:
        return AGGRESSIVE
    key = str(name).strip().lower().replace("-", "_")
    try:
        return PRESETS[key]
    except KeyError:
        raise ValueError(
            f"unknown criteria preset {name!r}; expected one of {', '.join(sorted(PRESETS))}"
        ) from None
