from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

from referral_integrity.core.config import ReferralConfig
from referral_integrity.jobs.entry_repair import RepairResult, repair_entry
from referral_integrity.schemas.referrals import ChangeKind, ReferralEntry, ReferralMap
from referral_integrity.services.map_store import MapStore

logger = logging.getLogger(__name__)

AGGREGATE_FIELDS = frozenset({"items", "total", "categories", "generatedAt"})

_COUNTERS: dict[ChangeKind, str] = {
    ChangeKind.SLUG: "slug_fixes",
    ChangeKind.CATEGORY: "category_fixes",
    ChangeKind.SOURCE_NULLIFIED: "source_nullified",
    ChangeKind.SOURCE_TRIMMED: "source_trimmed",
    ChangeKind.MASKED: "masked_repaired",
    ChangeKind.TRACK_PATH: "track_path_repaired",
    ChangeKind.RAW_URL_STRIPPED: "raw_url_stripped",
    ChangeKind.ARCHIVED: "archived_fixed",
}


@dataclass(slots=True)
class RepairReport:
    scanned: int = 0
    total: int = 0
    active: int = 0
    archived: int = 0
    entries_changed: int = 0
    slug_fixes: int = 0
    category_fixes: int = 0
    source_nullified: int = 0
    source_trimmed: int = 0
    masked_repaired: int = 0
    track_path_repaired: int = 0
    raw_url_stripped: int = 0
    archived_fixed: int = 0
    slug_collisions: int = 0
    dropped_empty_slug: int = 0
    dropped_keys: list[str] = field(default_factory=list)
    collision_keys: list[str] = field(default_factory=list)

    def record(self, changes: tuple[ChangeKind, ...]) -> None:
        if changes:
            self.entries_changed += 1
        for kind in changes:
            attribute = _COUNTERS[kind]
            setattr(self, attribute, getattr(self, attribute) + 1)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    def summary_lines(self) -> list[str]:
        return [
            f"items scanned       : {self.scanned}",
            f"items total (post)  : {self.total}",
            f"slug fixes          : {self.slug_fixes}",
            f"category fixes      : {self.category_fixes}",
            f"source nullified    : {self.source_nullified}",
            f"source trimmed      : {self.source_trimmed}",
            f"masked repaired     : {self.masked_repaired}",
            f"trackPath repaired  : {self.track_path_repaired}",
            f"raw URLs stripped   : {self.raw_url_stripped}",
            f"archived fixed      : {self.archived_fixed}",
            f"slug collisions     : {self.slug_collisions}",
            f"dropped (empty slug): {self.dropped_empty_slug}",
            f"active deals        : {self.active}",
            f"archived deals      : {self.archived}",
        ]


@dataclass(slots=True)
class MapRepairOutcome:
    referral_map: ReferralMap
    report: RepairReport
    written: bool


def rebuild_map(
    payload: dict[str, Any],
    config: ReferralConfig,
    *,
    now: datetime | None = None,
) -> tuple[ReferralMap, RepairReport]:
    """Repair every entry and derive the aggregate from the repaired set only."""
    raw_items = payload.get("items")
    if not isinstance(raw_items, dict):
        if raw_items is not None:
            logger.warning("referral map items is %s, treating as empty", type(raw_items).__name__)
        raw_items = {}

    report = RepairReport(scanned=len(raw_items))
    kept: dict[str, tuple[str, RepairResult]] = {}

    for raw_slug, raw_entry in raw_items.items():
        result = repair_entry(raw_slug, raw_entry, config)
        if not result.slug:
            report.dropped_empty_slug += 1
            report.dropped_keys.append(str(raw_slug))
            logger.warning("dropping entry %r: slug is empty after canonicalization", raw_slug)
            continue

        if result.slug in kept:
            report.slug_collisions += 1
            earlier_key, _ = kept[result.slug]
            if earlier_key == result.slug and raw_slug != result.slug:
                report.collision_keys.append(str(raw_slug))
                logger.warning("slug collision on %r: keeping canonically keyed entry over %r", result.slug, raw_slug)
                continue
            report.collision_keys.append(str(earlier_key))
            logger.warning("slug collision on %r: %r replaces earlier entry", result.slug, raw_slug)

        kept[result.slug] = (raw_slug, result)

    items: dict[str, ReferralEntry] = {}
    for slug in sorted(kept):
        raw_slug, result = kept[slug]
        report.record(result.changes)
        if result.changes:
            logger.debug("repaired %r -> %r: %s", raw_slug, slug, [kind.value for kind in result.changes])
        items[slug] = result.entry

    extras = {key: value for key, value in payload.items() if key not in AGGREGATE_FIELDS}
    referral_map = ReferralMap.model_validate(
        {
            **extras,
            "items": items,
            "total": len(items),
            "categories": sorted({entry.category for entry in items.values()}),
            "generatedAt": now or datetime.now(timezone.utc),
        }
    )

    report.total = referral_map.total
    report.archived = referral_map.archived_count
    report.active = referral_map.active_count
    return referral_map, report


def repair_map(
    path: str | os.PathLike[str],
    config: ReferralConfig,
    *,
    dry_run: bool = False,
    now: datetime | None = None,
) -> MapRepairOutcome:
    """Load, repair and atomically rewrite the map, snapshotting the prior bytes.

    Raises ``MapLoadError`` before anything is written when the map cannot be read.
    """
    store = MapStore(path)
    loaded = store.load()
    referral_map, report = rebuild_map(loaded.payload, config, now=now)

    if dry_run:
        logger.info("dry run: %s left untouched", store.path)
        return MapRepairOutcome(referral_map=referral_map, report=report, written=False)

    store.write_snapshot(loaded.raw_bytes)
    store.write(referral_map.to_json())
    return MapRepairOutcome(referral_map=referral_map, report=report, written=True)
