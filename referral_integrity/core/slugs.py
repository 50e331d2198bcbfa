from __future__ import annotations

import re
import unicodedata
from typing import Any

from referral_integrity.core.config import ReferralConfig

_DISALLOWED_CHARS = re.compile(r"[^a-z0-9\s-]", re.ASCII)
_WHITESPACE_RUN = re.compile(r"\s+", re.ASCII)
_HYPHEN_RUN = re.compile(r"-+")


def canonical_slug(raw: Any) -> str:
    """Lowercase NFKD slug of ``[a-z0-9-]``; empty when nothing survives."""
    if not isinstance(raw, str):
        return ""
    text = unicodedata.normalize("NFKD", raw.lower()).lower()
    text = _DISALLOWED_CHARS.sub("", text)
    text = _WHITESPACE_RUN.sub("-", text)
    text = _HYPHEN_RUN.sub("-", text)
    return text.strip("-")


def normalize_category(raw: Any, config: ReferralConfig) -> str:
    if not isinstance(raw, str):
        return config.default_category
    category = raw.strip().lower()
    if category in config.categories:
        return category
    return config.default_category
