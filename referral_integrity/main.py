from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Sequence

from opentelemetry import trace

from referral_integrity.core.config import Settings, get_settings
from referral_integrity.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from referral_integrity.core.urls import is_absolute_http_url
from referral_integrity.jobs.audit import audit_map
from referral_integrity.jobs.map_repair import repair_map
from referral_integrity.jobs.validator import ProbeCase, ValidationFailure, validate_redirect_chain
from referral_integrity.services.map_store import MapLoadError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

EXIT_OK = 0
EXIT_FAILED = 1


def parse_case(raw: str) -> ProbeCase:
    parts = [part.strip() for part in raw.split(",", maxsplit=2)]
    if len(parts) != 3 or not all(parts):
        raise argparse.ArgumentTypeError(f"expected SLUG,CATEGORY,URL, got {raw!r}")
    slug, category, destination = parts
    if not is_absolute_http_url(destination):
        raise argparse.ArgumentTypeError(f"destination is not an absolute http(s) URL: {destination!r}")
    return ProbeCase(slug=slug, category=category, destination=destination)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="referral-integrity",
        description="Repair, audit and live-validate the referral redirect map.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log every repaired entry")
    commands = parser.add_subparsers(dest="command", required=True)

    repair = commands.add_parser("repair", help="Repair the referral map in place and write a -prev snapshot")
    repair.add_argument("--map", dest="map_path", help="Referral map path (default: REFERRAL_MAP_PATH)")
    repair.add_argument("--dry-run", action="store_true", help="Report repairs without writing")
    repair.add_argument("--json", action="store_true", help="Print the repair report as JSON")

    check = commands.add_parser("check", help="Audit the stored referral map without modifying it")
    check.add_argument("--map", dest="map_path", help="Referral map path (default: REFERRAL_MAP_PATH)")

    validate = commands.add_parser("validate", help="Probe the live track endpoint as a release gate")
    validate.add_argument("--track-url", help="Endpoint under test (default: TRACK_URL or SITE_ORIGIN/api/track)")
    validate.add_argument(
        "--case",
        dest="cases",
        action="append",
        type=parse_case,
        metavar="SLUG,CATEGORY,URL",
        help="Synthetic deal to route; repeat to probe several routes concurrently",
    )
    return parser


def run_repair(args: argparse.Namespace, settings: Settings) -> int:
    path = args.map_path or settings.referral_map_path
    with tracer.start_as_current_span("referral.repair_map") as span:
        span.set_attribute("referral.map_path", path)
        try:
            outcome = repair_map(path, settings.referral_config(), dry_run=args.dry_run)
        except MapLoadError as exc:
            logger.error("repair aborted: %s", exc)
            return EXIT_FAILED
        report = outcome.report
        span.set_attribute("referral.total", report.total)
        span.set_attribute("referral.entries_changed", report.entries_changed)

    for line in report.summary_lines():
        logger.info(line)
    if args.json:
        print(json.dumps({"written": outcome.written, **report.as_dict()}, indent=2))
    return EXIT_OK


def run_check(args: argparse.Namespace, settings: Settings) -> int:
    path = args.map_path or settings.referral_map_path
    with tracer.start_as_current_span("referral.audit_map") as span:
        span.set_attribute("referral.map_path", path)
        try:
            report = audit_map(path, settings.referral_config())
        except MapLoadError as exc:
            logger.error("audit aborted: %s", exc)
            return EXIT_FAILED
        span.set_attribute("referral.violations", report.violation_count)

    if not report.ok:
        logger.error("integrity violations: %d across %d entries", report.violation_count, report.entries)
        return EXIT_FAILED
    logger.info("referral map clean: %d entries validated", report.entries)
    return EXIT_OK


def run_validate(args: argparse.Namespace, settings: Settings) -> int:
    endpoint = args.track_url or settings.track_endpoint
    config = settings.referral_config()
    logger.info("site origin: %s", config.site_origin)
    logger.info("track endpoint: %s", endpoint)
    logger.info("ref prefix: %s", config.ref_prefix)

    with tracer.start_as_current_span("referral.validate_chain") as span:
        span.set_attribute("referral.track_endpoint", endpoint)
        try:
            report = asyncio.run(
                validate_redirect_chain(
                    config,
                    track_endpoint=endpoint,
                    cases=args.cases,
                    forbidden_patterns=settings.forbidden_patterns(),
                    attempts=settings.probe_attempts,
                    timeout_seconds=settings.http_timeout_seconds,
                )
            )
        except ValidationFailure as failure:
            span.set_attribute("referral.failed_invariant", failure.invariant)
            logger.error("validation failed %s", failure)
            return EXIT_FAILED
        except Exception:  # pragma: no cover - release gate must fail closed
            logger.exception("validator crashed")
            return EXIT_FAILED

    for result in report.results:
        logger.info(
            "deal=%s status=%s destination=%s (%s)",
            result.case.slug,
            result.status_code,
            result.destination,
            result.destination_status,
        )
    logger.info("referral chain validated for %d route(s)", len(report.results))
    return EXIT_OK


COMMANDS = {
    "repair": run_repair,
    "check": run_check,
    "validate": run_validate,
}


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(verbose=args.verbose)
    runtime = setup_telemetry(settings)
    try:
        return COMMANDS[args.command](args, settings)
    finally:
        shutdown_telemetry(runtime)


if __name__ == "__main__":
    sys.exit(main())
