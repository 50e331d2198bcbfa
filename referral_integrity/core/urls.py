from __future__ import annotations

import re
from typing import Any
from urllib.parse import parse_qsl, quote, unquote, urlsplit

from referral_integrity.core.config import ReferralConfig

# encodeURIComponent leaves these unescaped in addition to alphanumerics and "-_."
URI_COMPONENT_SAFE = "!~*'()"
RELATIVE_TRACK_BASE = "/api/track"

_EXTERNAL_URL = re.compile(r"^https?://", re.IGNORECASE)
_BAD_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")
_FORBIDDEN_URL_CHARS = re.compile(r"[\s\x00-\x1f\x7f]")


def percent_encode(value: str) -> str:
    return quote(value, safe=URI_COMPONENT_SAFE)


def decode_component(value: str) -> str:
    """Strict percent-decoding; raises ``ValueError`` on malformed escapes."""
    if _BAD_ESCAPE.search(value):
        raise ValueError(f"malformed percent-escape in {value!r}")
    return unquote(value, errors="strict")


def is_external(value: Any) -> bool:
    return isinstance(value, str) and bool(_EXTERNAL_URL.match(value))


def is_absolute_http_url(value: Any) -> bool:
    if not isinstance(value, str) or not value:
        return False
    if _FORBIDDEN_URL_CHARS.search(value):
        return False
    try:
        value.encode("utf-8")
        parsed = urlsplit(value)
        port = parsed.port
    except (UnicodeEncodeError, ValueError):
        return False
    if parsed.scheme.lower() not in {"http", "https"}:
        return False
    if not parsed.hostname:
        return False
    return port is None or port > 0


def masked_url_for(source_url: str, config: ReferralConfig) -> str:
    if not source_url:
        return ""
    return config.ref_prefix + percent_encode(source_url)


def track_path_for(slug: str, category: str, masked: str, config: ReferralConfig) -> str:
    if not masked:
        return ""
    return (
        f"{config.track_base}?deal={percent_encode(slug)}"
        f"&cat={percent_encode(category)}&redirect={percent_encode(masked)}"
    )


def is_internal_track_path(value: Any, config: ReferralConfig) -> bool:
    if not isinstance(value, str):
        return False
    candidate = value.strip()
    for base in (config.track_base, RELATIVE_TRACK_BASE):
        if candidate == base or candidate.startswith(base + "?"):
            return True
    return False


def track_redirect_param(value: str) -> str | None:
    _, _, query = value.partition("?")
    for key, item in parse_qsl(query, keep_blank_values=True):
        if key == "redirect":
            return item
    return None


def masked_leaks_raw_url(value: Any, config: ReferralConfig) -> bool:
    """True when a masked value holds an absolute URL outside ``ref_prefix``."""
    if not isinstance(value, str) or not value:
        return False
    if value.startswith(config.ref_prefix):
        return False
    stripped = value.strip()
    return is_external(stripped) or stripped.startswith("//") or "://" in stripped


def track_path_leaks_raw_url(value: Any, config: ReferralConfig) -> bool:
    """True when a track path is hosted elsewhere or redirects outside ``ref_prefix``."""
    if not isinstance(value, str) or not value:
        return False
    if not is_internal_track_path(value, config):
        stripped = value.strip()
        return (
            is_external(stripped)
            or stripped.startswith("//")
            or "://" in stripped
            or "%3A%2F%2F" in stripped.upper()
        )
    redirect = track_redirect_param(value)
    if not redirect:
        return False
    return not redirect.startswith(config.ref_prefix)
