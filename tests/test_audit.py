from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from referral_integrity.core.config import ReferralConfig
from referral_integrity.jobs.audit import audit_entry, audit_map, audit_payload
from referral_integrity.jobs.map_repair import rebuild_map, repair_map
from referral_integrity.services.map_store import MapLoadError

CONFIG = ReferralConfig()
NOW = datetime(2026, 10, 18, tzinfo=timezone.utc)

RAW_PAYLOAD = {
    "items": {
        "  Côté Deal!!  ": {"category": "SAAS", "sourceUrl": "https://product.example.com/x"},
        "broken": {"sourceUrl": "not-a-url", "masked": "https://raw.example.com", "archived": "no"},
        "fine": {"category": "web", "sourceUrl": "https://fine.example.com/p?q=1", "archived": True},
    }
}


def test_repaired_map_audits_clean() -> None:
    referral_map, _ = rebuild_map(RAW_PAYLOAD, CONFIG, now=NOW)
    report = audit_payload(referral_map.to_json(), CONFIG)

    assert report.ok
    assert report.entries == 3


def test_unrepaired_map_reports_violations() -> None:
    report = audit_payload(RAW_PAYLOAD, CONFIG)

    assert not report.ok
    assert "key is not a canonical slug" in report.violations["  Côté Deal!!  "]
    assert "masked leaks a raw URL" in report.violations["broken"]
    assert any(problem.startswith("total") for problem in report.aggregate_violations)


def test_audit_entry_flags_track_path_encoding_stale_masked() -> None:
    referral_map, _ = rebuild_map(RAW_PAYLOAD, CONFIG, now=NOW)
    entry = referral_map.items["fine"].to_json()
    entry["sourceUrl"] = "https://fine.example.com/other"
    entry["masked"] = CONFIG.ref_prefix + "https%3A%2F%2Ffine.example.com%2Fother"

    assert audit_entry("fine", entry, CONFIG) == ["trackPath does not encode the current masked value"]


def test_audit_entry_flags_routable_entry_without_source() -> None:
    problems = audit_entry(
        "orphan",
        {"slug": "orphan", "category": "ai", "sourceUrl": "", "masked": "", "trackPath": "", "archived": False},
        CONFIG,
    )
    assert problems == ["entry without sourceUrl is not archived"]


def test_audit_map_reads_from_disk(tmp_path: Path) -> None:
    map_path = tmp_path / "referral-map.json"
    map_path.write_text(json.dumps(RAW_PAYLOAD), encoding="utf-8")

    assert not audit_map(map_path, CONFIG).ok
    repair_map(map_path, CONFIG, now=NOW)
    assert audit_map(map_path, CONFIG).ok


def test_audit_map_missing_file_raises(tmp_path: Path) -> None:
    with pytest.raises(MapLoadError):
        audit_map(tmp_path / "absent.json", CONFIG)
