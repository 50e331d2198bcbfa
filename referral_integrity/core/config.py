from __future__ import annotations

import json
import re
from dataclasses import dataclass
from functools import lru_cache

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

CATEGORIES = (
    "ai",
    "marketing",
    "courses",
    "productivity",
    "business",
    "web",
    "ecommerce",
    "creative",
    "software",
)
DEFAULT_CATEGORY = "software"
DEFAULT_SITE_ORIGIN = "https://deals.tinmanapps.com"
DEFAULT_REF_PREFIX = "https://appsumo.8odi.net/9L0P95?u="
DEFAULT_FORBIDDEN_PATTERNS = (
    r"impactradius",
    r"impact\.com",
    r"\bref=",
    r"\baffiliate\b",
)


class Settings(BaseSettings):
    environment: str = "dev"
    site_origin: str = Field(
        default=DEFAULT_SITE_ORIGIN,
        validation_alias=AliasChoices("SITE_ORIGIN", "SITE_URL", "site_origin"),
    )
    ref_prefix: str = DEFAULT_REF_PREFIX
    track_url: str | None = None
    referral_map_path: str = "data/referral-map.json"
    http_timeout_seconds: float = 10.0
    probe_attempts: int = 3
    forbidden_patterns_json: str | None = None
    otel_enabled: bool = False
    otel_service_name: str = "referral-integrity"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    @field_validator("site_origin")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.strip().rstrip("/")

    @field_validator("probe_attempts")
    @classmethod
    def _bound_attempts(cls, value: int) -> int:
        return min(5, max(1, value))

    @property
    def track_endpoint(self) -> str:
        return self.track_url or f"{self.site_origin}/api/track"

    def forbidden_patterns(self) -> tuple[str, ...]:
        return parse_forbidden_patterns(self.forbidden_patterns_json)

    def referral_config(self) -> ReferralConfig:
        return ReferralConfig(site_origin=self.site_origin, ref_prefix=self.ref_prefix)


@dataclass(frozen=True, slots=True)
class ReferralConfig:
    """Values every repair and validation step derives masked links from."""

    site_origin: str = DEFAULT_SITE_ORIGIN
    ref_prefix: str = DEFAULT_REF_PREFIX
    categories: frozenset[str] = frozenset(CATEGORIES)
    default_category: str = DEFAULT_CATEGORY

    @property
    def track_base(self) -> str:
        return f"{self.site_origin}/api/track"


def parse_forbidden_patterns(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return DEFAULT_FORBIDDEN_PATTERNS
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        return DEFAULT_FORBIDDEN_PATTERNS
    if not isinstance(decoded, list):
        return DEFAULT_FORBIDDEN_PATTERNS
    patterns = tuple(item.strip() for item in decoded if isinstance(item, str) and _compiles(item.strip()))
    return patterns or DEFAULT_FORBIDDEN_PATTERNS


def _compiles(pattern: str) -> bool:
    if not pattern:
        return False
    try:
        re.compile(pattern)
    except re.error:
        return False
    return True


@lru_cache
def get_settings() -> Settings:
    return Settings()
