from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

import httpx

from referral_integrity.core.config import DEFAULT_FORBIDDEN_PATTERNS, ReferralConfig
from referral_integrity.core.urls import decode_component, is_absolute_http_url, masked_url_for

logger = logging.getLogger(__name__)

USER_AGENT = "referral-integrity-validator/1.0"
DEFAULT_ATTEMPTS = 3
MAX_ATTEMPTS = 5


class ValidationFailure(Exception):
    """One live invariant did not hold; ``invariant`` is a stable dotted code."""

    def __init__(self, invariant: str, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.invariant = invariant
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return f"[{self.invariant}] {self.message}"


@dataclass(frozen=True, slots=True)
class ProbeCase:
    slug: str = "test-slug"
    category: str = "software"
    destination: str = "https://appsumo.com"


@dataclass(slots=True)
class CaseResult:
    case: ProbeCase
    request_url: str
    status_code: int
    location: str
    destination: str
    destination_status: int


@dataclass(slots=True)
class ValidationReport:
    track_endpoint: str
    results: list[CaseResult]


def compile_forbidden_patterns(patterns: Iterable[str]) -> list[re.Pattern[str]]:
    return [re.compile(pattern, re.IGNORECASE) for pattern in patterns]


def validate_configuration(
    config: ReferralConfig,
    track_endpoint: str,
    patterns: Sequence[re.Pattern[str]],
) -> None:
    if not is_absolute_http_url(config.ref_prefix):
        raise ValidationFailure(
            "config.ref_prefix_invalid",
            f"REF_PREFIX is not an absolute http(s) URL: {config.ref_prefix!r}",
        )
    matched = _first_forbidden(config.ref_prefix, patterns)
    if matched is not None:
        raise ValidationFailure(
            "config.ref_prefix_forbidden",
            f"REF_PREFIX contains forbidden raw affiliate pattern {matched.pattern!r}",
        )
    if not is_absolute_http_url(track_endpoint):
        raise ValidationFailure(
            "config.track_endpoint_invalid",
            f"track endpoint is not an absolute http(s) URL: {track_endpoint!r}",
        )


async def validate_redirect_chain(
    config: ReferralConfig,
    *,
    track_endpoint: str | None = None,
    cases: Sequence[ProbeCase] | None = None,
    forbidden_patterns: Iterable[str] = DEFAULT_FORBIDDEN_PATTERNS,
    attempts: int = DEFAULT_ATTEMPTS,
    timeout_seconds: float = 10.0,
    client: httpx.AsyncClient | None = None,
) -> ValidationReport:
    """Drive the live track endpoint and assert the masked redirect contract.

    Raises ``ValidationFailure`` for the first failing case, in case order.
    """
    endpoint = track_endpoint or config.track_base
    patterns = compile_forbidden_patterns(forbidden_patterns)
    validate_configuration(config, endpoint, patterns)
    probe_cases = list(cases) if cases else [ProbeCase()]
    bounded_attempts = min(MAX_ATTEMPTS, max(1, attempts))

    if client is not None:
        results = await _run_cases(client, probe_cases, config, endpoint, patterns, bounded_attempts)
    else:
        async with httpx.AsyncClient(timeout=timeout_seconds, follow_redirects=False) as temp_client:
            results = await _run_cases(temp_client, probe_cases, config, endpoint, patterns, bounded_attempts)
    return ValidationReport(track_endpoint=endpoint, results=results)


async def probe_case(
    client: httpx.AsyncClient,
    case: ProbeCase,
    *,
    config: ReferralConfig,
    track_endpoint: str,
    patterns: Sequence[re.Pattern[str]],
    attempts: int = DEFAULT_ATTEMPTS,
) -> CaseResult:
    expected_masked = masked_url_for(case.destination, config)
    details: dict[str, Any] = {"deal": case.slug, "cat": case.category}
    response = await _send(
        client,
        "GET",
        track_endpoint,
        invariant="probe.timeout",
        attempts=attempts,
        details=details,
        params={"deal": case.slug, "cat": case.category, "redirect": expected_masked},
        follow_redirects=False,
    )
    request_url = str(response.request.url)
    details["request_url"] = request_url
    logger.info("probed %s -> %s", request_url, response.status_code)

    if not 300 <= response.status_code <= 399:
        raise ValidationFailure(
            "redirect.missing",
            f"track endpoint answered {response.status_code} instead of a redirect",
            {**details, "status_code": response.status_code},
        )
    location = response.headers.get("location")
    if not location:
        raise ValidationFailure(
            "redirect.location_missing",
            f"redirect {response.status_code} carries no Location header",
            {**details, "status_code": response.status_code},
        )
    details["location"] = location

    if not location.startswith(config.ref_prefix):
        raise ValidationFailure(
            "redirect.prefix_mismatch",
            f"Location does not start with REF_PREFIX {config.ref_prefix!r}: {location!r}",
            details,
        )
    try:
        destination = decode_component(location[len(config.ref_prefix) :])
    except ValueError as exc:
        raise ValidationFailure("redirect.undecodable", f"Location remainder is not percent-encoded: {exc}", details) from exc
    if not is_absolute_http_url(destination):
        raise ValidationFailure(
            "redirect.destination_invalid",
            f"decoded destination is not an absolute URL: {destination!r}",
            details,
        )
    if location != expected_masked:
        raise ValidationFailure(
            "redirect.location_mismatch",
            f"Location {location!r} differs from the masked value sent {expected_masked!r}",
            details,
        )
    details["destination"] = destination

    head = await _send(
        client,
        "HEAD",
        destination,
        invariant="destination.unreachable",
        attempts=attempts,
        details=details,
        follow_redirects=True,
    )
    if not head.is_success:
        raise ValidationFailure(
            "destination.unreachable",
            f"destination answered HEAD with {head.status_code}",
            {**details, "destination_status": head.status_code},
        )

    for observed in (location, destination, str(head.url)):
        matched = _first_forbidden(observed, patterns)
        if matched is not None:
            raise ValidationFailure(
                "leak.forbidden_pattern",
                f"forbidden raw affiliate pattern {matched.pattern!r} found in {observed!r}",
                details,
            )

    return CaseResult(
        case=case,
        request_url=request_url,
        status_code=response.status_code,
        location=location,
        destination=destination,
        destination_status=head.status_code,
    )


async def _run_cases(
    client: httpx.AsyncClient,
    cases: list[ProbeCase],
    config: ReferralConfig,
    track_endpoint: str,
    patterns: Sequence[re.Pattern[str]],
    attempts: int,
) -> list[CaseResult]:
    outcomes = await asyncio.gather(
        *(
            probe_case(
                client,
                case,
                config=config,
                track_endpoint=track_endpoint,
                patterns=patterns,
                attempts=attempts,
            )
            for case in cases
        ),
        return_exceptions=True,
    )
    results: list[CaseResult] = []
    for outcome in outcomes:
        if isinstance(outcome, BaseException):
            raise outcome
        results.append(outcome)
    return results


async def _send(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    invariant: str,
    attempts: int,
    details: dict[str, Any],
    **kwargs: Any,
) -> httpx.Response:
    last_error: httpx.TransportError | None = None
    for attempt in range(1, attempts + 1):
        try:
            return await client.request(method, url, headers={"User-Agent": USER_AGENT}, **kwargs)
        except httpx.TransportError as exc:
            last_error = exc
            logger.warning("%s %s failed (attempt %d/%d): %s", method, url, attempt, attempts, exc)
        except httpx.RequestError as exc:
            # Redirect loops and undecodable bodies will not change on retry.
            raise ValidationFailure(
                invariant,
                f"{method} {url} failed: {type(exc).__name__}: {exc}",
                details,
            ) from exc
    raise ValidationFailure(
        invariant,
        f"{method} {url} failed after {attempts} attempts: {last_error}",
        details,
    )


def _first_forbidden(value: str, patterns: Sequence[re.Pattern[str]]) -> re.Pattern[str] | None:
    for pattern in patterns:
        if pattern.search(value):
            return pattern
    return None
