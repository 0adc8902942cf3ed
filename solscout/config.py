from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, List, Mapping, Optional, Sequence

from .config_schema import KNOWN_SOURCES, validate_config

log = logging.getLogger(__name__)

DEFAULT_RPC_URL = "https://api.mainnet-beta.solana.com"
DEFAULT_DEXSCREENER_URL = "https://api.dexscreener.com"


def to_ws_url(url: str) -> str:
    """Derive a websocket endpoint from an HTTP RPC url."""

    trimmed = (url or "").strip()
    lowered = trimmed.lower()
    if lowered.startswith(("ws://", "wss://")):
        return trimmed
    if lowered.startswith("http://"):
        return "ws://" + trimmed[7:]
    if lowered.startswith("https://"):
        return "wss://" + trimmed[8:]
    return "wss://" + trimmed.lstrip("/")


def _source_list(raw: Any, default: Sequence[str]) -> List[str]:
    if raw is None:
        return list(default)
    if isinstance(raw, str):
        items = [part.strip().lower() for part in raw.split(",")]
    else:
        items = [str(part).strip().lower() for part in raw]
    items = [item for item in items if item]
    unknown = [item for item in items if item not in KNOWN_SOURCES]
    if unknown:
        log.warning("Ignoring unknown detection source(s): %s", ", ".join(unknown))
    return [item for item in items if item in KNOWN_SOURCES]


def _positive(value: float) -> bool:
    return value > 0


def _non_negative(value: float) -> bool:
    return value >= 0


def _at_least_two(value: float) -> bool:
    return value >= 2


def _number(
    name: str,
    cfg: Mapping[str, Any],
    key: str,
    default: float,
    cast=float,
    valid: Callable[[float], bool] = _positive,
):
    raw = os.getenv(name)
    if raw not in (None, ""):
        try:
            value = cast(raw)
        except ValueError:
            log.warning("Invalid %s=%r; ignoring", name, raw)
        else:
            if valid(value):
                return value
            log.warning("Invalid %s=%r; ignoring", name, raw)
    value = cfg.get(key, default)
    try:
        value = cast(value)
    except (TypeError, ValueError):
        log.warning("Invalid %s=%r in config; using %r", key, value, default)
        return cast(default)
    if not valid(value):
        log.warning("Invalid %s=%r in config; using %r", key, value, default)
        return cast(default)
    return value


@dataclass
class DetectorConfig:
    """Detection engine settings populated from environment or file settings."""

    enabled_sources: List[str] = field(default_factory=lambda: list(KNOWN_SOURCES))
    required_sources: Optional[List[str]] = None
    criteria: str = "aggressive"
    scan_interval: float = 5.0
    boost_interval_multiplier: float = 2.0
    stagger_delay: float = 30.0
    cleanup_interval: float = 60.0
    max_detected_tokens: int = 1000
    max_processed_signatures: int = 10000
    scan_signature_limit: int = 20
    scan_sample_size: int = 5
    solana_rpc_url: str = DEFAULT_RPC_URL
    solana_ws_url: Optional[str] = None
    dexscreener_base_url: str = DEFAULT_DEXSCREENER_URL
    gateway_cache_ttl: float = 30.0

    def __post_init__(self) -> None:
        if self.required_sources is None:
            self.required_sources = list(self.enabled_sources)
        if not self.solana_ws_url:
            self.solana_ws_url = to_ws_url(self.solana_rpc_url)

    @property
    def boost_interval(self) -> float:
        return self.scan_interval * self.boost_interval_multiplier

    @classmethod
    def from_env(cls, cfg: Mapping[str, Any] | None = None) -> "DetectorConfig":
        """Create a config using environment variables and an optional mapping."""
        cfg = cfg or {}
        env = os.getenv
        enabled = _source_list(
            env("DETECTION_SOURCES") or cfg.get("enabled_sources"), KNOWN_SOURCES
        )
        required_raw = env("DETECTION_REQUIRED_SOURCES")
        if required_raw is None:
            required_raw = cfg.get("required_sources")
        required = _source_list(required_raw, enabled) if required_raw is not None else None
        rpc_url = env("SOLANA_RPC_URL") or cfg.get("solana_rpc_url") or DEFAULT_RPC_URL
        return cls(
            enabled_sources=enabled,
            required_sources=required,
            criteria=env("DETECTION_CRITERIA") or cfg.get("criteria") or "aggressive",
            scan_interval=_number("DETECTION_SCAN_INTERVAL", cfg, "scan_interval", 5.0),
            boost_interval_multiplier=_number(
                "DETECTION_BOOST_MULTIPLIER", cfg, "boost_interval_multiplier", 2.0
            ),
            stagger_delay=_number(
                "DETECTION_STAGGER_DELAY", cfg, "stagger_delay", 30.0, valid=_non_negative
            ),
            cleanup_interval=_number(
                "DETECTION_CLEANUP_INTERVAL", cfg, "cleanup_interval", 60.0
            ),
            max_detected_tokens=_number(
                "DETECTION_MAX_TOKENS", cfg, "max_detected_tokens", 1000, int
            ),
            max_processed_signatures=_number(
                "DETECTION_MAX_SIGNATURES",
                cfg,
                "max_processed_signatures",
                10000,
                int,
                valid=_at_least_two,
            ),
            scan_signature_limit=_number(
                "DETECTION_SCAN_LIMIT", cfg, "scan_signature_limit", 20, int
            ),
            scan_sample_size=_number("DETECTION_SCAN_SAMPLE", cfg, "scan_sample_size", 5, int),
            solana_rpc_url=rpc_url,
            solana_ws_url=env("SOLANA_WS_URL") or cfg.get("solana_ws_url"),
            dexscreener_base_url=(
                env("DEXSCREENER_BASE_URL")
                or cfg.get("dexscreener_base_url")
                or DEFAULT_DEXSCREENER_URL
            ).rstrip("/"),
            gateway_cache_ttl=_number(
                "DEXSCREENER_CACHE_TTL", cfg, "gateway_cache_ttl", 30.0
            ),
        )

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def load_config(path: str | Path | None = None) -> DetectorConfig:
    """Load a TOML config file, validate it and apply environment overrides.

    With no *path* only the environment and defaults are used.
    """

    data: dict[str, Any] = {}
    if path is not None:
        with open(path, "rb") as fh:
            raw = tomllib.load(fh)
        section = raw.get("detection", raw)
        data = validate_config(dict(section))
    return DetectorConfig.from_env(data)
