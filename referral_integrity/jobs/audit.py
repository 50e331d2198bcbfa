from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any

from referral_integrity.core.config import ReferralConfig
from referral_integrity.core.slugs import canonical_slug
from referral_integrity.core.urls import (
    is_absolute_http_url,
    masked_leaks_raw_url,
    masked_url_for,
    track_path_for,
    track_path_leaks_raw_url,
)
from referral_integrity.services.map_store import MapStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AuditReport:
    entries: int = 0
    violations: dict[str, list[str]] = field(default_factory=dict)
    aggregate_violations: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.violations and not self.aggregate_violations

    @property
    def violation_count(self) -> int:
        return sum(len(items) for items in self.violations.values()) + len(self.aggregate_violations)


def audit_entry(key: str, entry: Any, config: ReferralConfig) -> list[str]:
    """List invariant violations of one stored entry; an empty list means compliant."""
    if not isinstance(entry, dict):
        return ["entry is not an object"]

    problems: list[str] = []
    if not key or canonical_slug(key) != key:
        problems.append("key is not a canonical slug")
    if entry.get("slug") != key:
        problems.append("slug field does not match key")

    category = entry.get("category")
    if category not in config.categories:
        problems.append(f"invalid category: {category!r}")

    archived = entry.get("archived")
    if not isinstance(archived, bool):
        problems.append("archived is not a boolean")

    source_url = entry.get("sourceUrl")
    masked = entry.get("masked")
    track_path = entry.get("trackPath")
    if not isinstance(source_url, str):
        problems.append("sourceUrl is missing")
    elif not source_url:
        if masked != "" or track_path != "":
            problems.append("entry without sourceUrl still carries masked/trackPath")
        if archived is not True:
            problems.append("entry without sourceUrl is not archived")
    elif not is_absolute_http_url(source_url):
        problems.append("sourceUrl is not an absolute http(s) URL")
    else:
        expected_masked = masked_url_for(source_url, config)
        if masked != expected_masked:
            problems.append("masked is not derived from sourceUrl")
        elif track_path != track_path_for(key, category, expected_masked, config):
            problems.append("trackPath does not encode the current masked value")

    if masked_leaks_raw_url(masked, config):
        problems.append("masked leaks a raw URL")
    if track_path_leaks_raw_url(track_path, config):
        problems.append("trackPath leaks a raw URL")
    return problems


def audit_payload(payload: dict[str, Any], config: ReferralConfig) -> AuditReport:
    items = payload.get("items")
    if not isinstance(items, dict):
        return AuditReport(aggregate_violations=["items is not an object"])

    report = AuditReport(entries=len(items))
    for key, entry in items.items():
        problems = audit_entry(key, entry, config)
        if problems:
            report.violations[key] = problems

    if payload.get("total") != len(items):
        report.aggregate_violations.append(f"total {payload.get('total')!r} != item count {len(items)}")
    present = sorted(
        {
            entry["category"]
            for entry in items.values()
            if isinstance(entry, dict) and isinstance(entry.get("category"), str)
        }
    )
    if payload.get("categories") != present:
        report.aggregate_violations.append("categories do not match the categories present")
    return report


def audit_map(path: str | os.PathLike[str], config: ReferralConfig) -> AuditReport:
    loaded = MapStore(path).load()
    report = audit_payload(loaded.payload, config)
    for key, problems in report.violations.items():
        for problem in problems:
            logger.warning("[%s] %s", key, problem)
    for problem in report.aggregate_violations:
        logger.warning("[aggregate] %s", problem)
    return report
