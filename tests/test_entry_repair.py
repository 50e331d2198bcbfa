from __future__ import annotations

from typing import Any
from urllib.parse import parse_qs, urlsplit

import pytest

from referral_integrity.core.config import DEFAULT_REF_PREFIX, ReferralConfig
from referral_integrity.core.urls import percent_encode
from referral_integrity.jobs.entry_repair import repair_entry
from referral_integrity.schemas.referrals import ChangeKind

CONFIG = ReferralConfig()


def test_repair_canonicalizes_slug_and_derives_masked_link() -> None:
    result = repair_entry(
        "  Côté Deal!!  ",
        {"category": "SAAS", "sourceUrl": "https://product.example.com/x"},
        CONFIG,
    )

    masked = DEFAULT_REF_PREFIX + "https%3A%2F%2Fproduct.example.com%2Fx"
    assert result.slug == "cote-deal"
    assert result.entry.slug == "cote-deal"
    assert result.entry.category == "software"
    assert result.entry.source_url == "https://product.example.com/x"
    assert result.entry.masked == masked
    assert "deal=cote-deal&cat=software&redirect=" + percent_encode(masked) in result.entry.track_path
    assert result.entry.track_path.startswith("https://deals.tinmanapps.com/api/track?")
    assert result.entry.archived is False
    assert ChangeKind.SLUG in result.changes
    assert ChangeKind.CATEGORY in result.changes


def test_track_path_decodes_to_current_masked_value() -> None:
    result = repair_entry("deal", {"category": "web", "sourceUrl": "https://product.example.com/a?b=c&d=e"}, CONFIG)

    query = parse_qs(urlsplit(result.entry.track_path).query)
    assert query["redirect"] == [result.entry.masked]
    assert query["deal"] == ["deal"]
    assert query["cat"] == ["web"]


def test_invalid_source_archives_entry_and_clears_links() -> None:
    stale_masked = DEFAULT_REF_PREFIX + "https%3A%2F%2Fold.example.com"
    result = repair_entry(
        "broken",
        {
            "slug": "broken",
            "category": "ai",
            "sourceUrl": "not-a-url",
            "masked": stale_masked,
            "trackPath": "https://deals.tinmanapps.com/api/track?deal=broken&cat=ai&redirect=" + percent_encode(stale_masked),
            "archived": False,
        },
        CONFIG,
    )

    assert result.entry.source_url == ""
    assert result.entry.masked == ""
    assert result.entry.track_path == ""
    assert result.entry.archived is True
    assert result.changes == (
        ChangeKind.SOURCE_NULLIFIED,
        ChangeKind.MASKED,
        ChangeKind.TRACK_PATH,
        ChangeKind.ARCHIVED,
    )


def test_raw_urls_in_masked_or_track_path_are_stripped() -> None:
    result = repair_entry(
        "leaky",
        {
            "slug": "leaky",
            "category": "ai",
            "sourceUrl": "https://product.example.com/leaky",
            "masked": "https://product.example.com/leaky",
            "trackPath": "https://product.example.com/leaky",
            "archived": False,
        },
        CONFIG,
    )

    assert ChangeKind.RAW_URL_STRIPPED in result.changes
    assert result.entry.masked.startswith(DEFAULT_REF_PREFIX)
    assert result.entry.track_path.startswith("https://deals.tinmanapps.com/api/track?")


def test_source_url_is_trimmed_not_guessed() -> None:
    trimmed = repair_entry("a", {"slug": "a", "category": "ai", "sourceUrl": "  https://x.example.com  "}, CONFIG)
    relative = repair_entry("b", {"slug": "b", "category": "ai", "sourceUrl": "/products/b"}, CONFIG)

    assert trimmed.entry.source_url == "https://x.example.com"
    assert ChangeKind.SOURCE_TRIMMED in trimmed.changes
    assert relative.entry.source_url == ""
    assert relative.entry.archived is True


def test_archived_flag_is_coerced_but_never_unarchived() -> None:
    source = "https://product.example.com/x"
    coerced = repair_entry("a", {"slug": "a", "category": "ai", "sourceUrl": source, "archived": "yes"}, CONFIG)
    kept = repair_entry("b", {"slug": "b", "category": "ai", "sourceUrl": source, "archived": True}, CONFIG)

    assert coerced.entry.archived is False
    assert ChangeKind.ARCHIVED in coerced.changes
    assert kept.entry.archived is True
    assert ChangeKind.ARCHIVED not in kept.changes


def test_embedded_slug_is_used_when_key_is_unusable() -> None:
    result = repair_entry("!!!", {"slug": "Real Slug", "sourceUrl": "https://x.example.com"}, CONFIG)
    assert result.slug == "real-slug"


def test_unusable_slug_yields_empty_result_slug() -> None:
    result = repair_entry("***", {"sourceUrl": "https://x.example.com"}, CONFIG)
    assert result.slug == ""


def test_unmanaged_fields_are_preserved() -> None:
    result = repair_entry(
        "deal",
        {"title": "Deal", "firstSeenAt": "2024-01-01T00:00:00Z", "sourceUrl": "https://x.example.com"},
        CONFIG,
    )
    payload = result.entry.to_json()
    assert payload["title"] == "Deal"
    assert payload["firstSeenAt"] == "2024-01-01T00:00:00Z"


def test_configuration_is_threaded_through_derivation() -> None:
    config = ReferralConfig(site_origin="https://staging.example.com", ref_prefix="https://partner.example.net/r?u=")
    result = repair_entry("deal", {"category": "ai", "sourceUrl": "https://x.example.com"}, config)

    assert result.entry.masked == "https://partner.example.net/r?u=https%3A%2F%2Fx.example.com"
    assert result.entry.track_path.startswith("https://staging.example.com/api/track?deal=deal&cat=ai&")


@pytest.mark.parametrize(
    ("raw_slug", "raw_entry"),
    [
        (None, None),
        (123, "not an object"),
        ("x", []),
        ("y", {"sourceUrl": 5, "category": ["ai"], "archived": None, "masked": {}, "trackPath": 3}),
        ("z", {"sourceUrl": "http://[::1", "masked": "//evil.example.org", "archived": 1}),
    ],
)
def test_repair_is_total_on_malformed_input(raw_slug: Any, raw_entry: Any) -> None:
    result = repair_entry(raw_slug, raw_entry, CONFIG)

    assert result.entry.source_url == ""
    assert result.entry.masked == ""
    assert result.entry.track_path == ""
    assert result.entry.archived is True


@pytest.mark.parametrize(
    ("raw_slug", "raw_entry"),
    [
        ("  Côté Deal!!  ", {"category": "SAAS", "sourceUrl": "https://product.example.com/x"}),
        ("broken", {"sourceUrl": "not-a-url", "masked": "https://raw.example.com", "archived": "no"}),
        ("Mixed Case", {"category": "Marketing", "sourceUrl": " https://a.example.com/p?q=1 ", "archived": True}),
        ("unicode", {"category": "web", "sourceUrl": "https://exämple.com/ü"}),
    ],
)
def test_repair_reaches_a_fixed_point(raw_slug: str, raw_entry: dict[str, Any]) -> None:
    first = repair_entry(raw_slug, raw_entry, CONFIG)
    second = repair_entry(first.slug, first.entry.to_json(), CONFIG)

    assert second.changes == ()
    assert second.slug == first.slug
    assert second.entry == first.entry
