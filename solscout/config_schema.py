from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import AnyUrl, BaseModel, ConfigDict, ValidationError, field_validator, model_validator

from .detection.criteria import PRESETS

KNOWN_SOURCES = ("websocket", "polling", "scanning", "boost")


class DetectorConfigModel(BaseModel):
    """Schema for solscout configuration files."""

    model_config = ConfigDict(extra="allow")

    enabled_sources: Optional[List[str]] = None
    required_sources: Optional[List[str]] = None
    criteria: Optional[str] = None
    scan_interval: Optional[float] = None
    boost_interval_multiplier: Optional[float] = None
    stagger_delay: Optional[float] = None
    cleanup_interval: Optional[float] = None
    max_detected_tokens: Optional[int] = None
    max_processed_signatures: Optional[int] = None
    scan_signature_limit: Optional[int] = None
    scan_sample_size: Optional[int] = None
    solana_rpc_url: Optional[AnyUrl] = None
    solana_ws_url: Optional[AnyUrl] = None
    dexscreener_base_url: Optional[AnyUrl] = None
    gateway_cache_ttl: Optional[float] = None

    @field_validator("enabled_sources", "required_sources")
    @classmethod
    def _known_sources(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        if value is None:
            return value
        unknown = [name for name in value if name not in KNOWN_SOURCES]
        if unknown:
            raise ValueError(f"unknown detection source(s): {', '.join(unknown)}")
        return value

    @field_validator("criteria")
    @classmethod
    def _known_preset(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value.strip().lower().replace("-", "_") not in PRESETS:
            raise ValueError(f"unknown criteria preset {value!r}")
        return value

    @field_validator(
        "scan_interval",
        "boost_interval_multiplier",
        "cleanup_interval",
        "gateway_cache_ttl",
    )
    @classmethod
    def _positive_float(cls, value: Optional[float]) -> Optional[float]:
        if value is not None and value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("stagger_delay")
    @classmethod
    def _non_negative(cls, value: Optional[float]) -> Optional[float]:
        if value is not None and value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator(
        "max_detected_tokens",
        "scan_signature_limit",
        "scan_sample_size",
    )
    @classmethod
    def _positive_int(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("max_processed_signatures")
    @classmethod
    def _signature_cap(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value < 2:
            raise ValueError("must be at least 2")
        return value

    @model_validator(mode="after")
    def _required_subset(self) -> "DetectorConfigModel":
        if self.enabled_sources is not None and self.required_sources is not None:
            extra = [s for s in self.required_sources if s not in self.enabled_sources]
            if extra:
                raise ValueError(
                    f"required source(s) not enabled: {', '.join(extra)}"
                )
        return self


def validate_config(data: Dict[str, Any]) -> Dict[str, Any]:
    """Validate ``data`` against :class:`DetectorConfigModel`.

    Returns the validated data with unset keys dropped and URLs rendered back
    to strings. Raises ``ValueError`` on validation errors.
    """
    try:
        model = DetectorConfigModel(**data)
    except ValidationError as exc:
        raise ValueError(str(exc)) from exc
    return model.model_dump(mode="json", exclude_none=True)
