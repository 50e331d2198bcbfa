from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from referral_integrity.core.config import ReferralConfig
from referral_integrity.core.slugs import canonical_slug, normalize_category
from referral_integrity.core.urls import (
    is_absolute_http_url,
    masked_leaks_raw_url,
    masked_url_for,
    track_path_for,
    track_path_leaks_raw_url,
)
from referral_integrity.schemas.referrals import ChangeKind, ReferralEntry

MANAGED_FIELDS = frozenset({"slug", "category", "sourceUrl", "masked", "trackPath", "archived"})


@dataclass(frozen=True, slots=True)
class RepairResult:
    slug: str
    entry: ReferralEntry
    changes: tuple[ChangeKind, ...]

    @property
    def changed(self) -> bool:
        return bool(self.changes)


def repair_entry(raw_slug: Any, raw_entry: Any, config: ReferralConfig) -> RepairResult:
    """Bring one stored entry into compliance without ever raising.

    Malformed values are coerced to safe defaults: an entry whose source URL is
    missing or invalid loses its masked link and track path and is archived.
    Feeding the returned entry back in yields no further changes.
    """
    raw: dict[str, Any] = raw_entry if isinstance(raw_entry, dict) else {}
    changes: list[ChangeKind] = []

    slug = canonical_slug(raw_slug) or canonical_slug(raw.get("slug"))
    if slug != raw_slug or raw.get("slug") != slug:
        _record(changes, ChangeKind.SLUG)

    stored_category = raw.get("category")
    category = normalize_category(stored_category, config)
    if category != stored_category:
        _record(changes, ChangeKind.CATEGORY)

    stored_source = raw.get("sourceUrl")
    candidate = stored_source.strip() if isinstance(stored_source, str) else ""
    source_url = candidate if is_absolute_http_url(candidate) else ""
    if source_url != stored_source:
        _record(changes, ChangeKind.SOURCE_TRIMMED if source_url else ChangeKind.SOURCE_NULLIFIED)

    stored_masked = raw.get("masked")
    stored_track = raw.get("trackPath")
    if masked_leaks_raw_url(stored_masked, config) or track_path_leaks_raw_url(stored_track, config):
        _record(changes, ChangeKind.RAW_URL_STRIPPED)

    if source_url:
        masked = masked_url_for(source_url, config)
        track_path = track_path_for(slug, category, masked, config)
    else:
        masked = ""
        track_path = ""

    # Final guard in case a derived value still points outside the referral prefix.
    if masked_leaks_raw_url(masked, config) or track_path_leaks_raw_url(track_path, config):
        _record(changes, ChangeKind.RAW_URL_STRIPPED)
        _record(changes, ChangeKind.SOURCE_NULLIFIED)
        source_url = ""
        masked = ""
        track_path = ""

    if masked != stored_masked:
        _record(changes, ChangeKind.MASKED)
    if track_path != stored_track:
        _record(changes, ChangeKind.TRACK_PATH)

    stored_archived = raw.get("archived")
    if not source_url:
        archived = True
        if stored_archived is not True:
            _record(changes, ChangeKind.ARCHIVED)
    elif isinstance(stored_archived, bool):
        archived = stored_archived
    else:
        archived = False
        _record(changes, ChangeKind.ARCHIVED)

    extras = {key: value for key, value in raw.items() if isinstance(key, str) and key not in MANAGED_FIELDS}
    entry = ReferralEntry.model_validate(
        {
            **extras,
            "slug": slug,
            "category": category,
            "sourceUrl": source_url,
            "masked": masked,
            "trackPath": track_path,
            "archived": archived,
        }
    )
    return RepairResult(slug=slug, entry=entry, changes=tuple(changes))


def _record(changes: list[ChangeKind], kind: ChangeKind) -> None:
    if kind not in changes:
        changes.append(kind)
