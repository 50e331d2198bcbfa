import logging

from referral_integrity.core.config import Settings
from referral_integrity.core.telemetry import (
    configure_logging,
    parse_headers,
    setup_telemetry,
    shutdown_telemetry,
)


def test_parse_headers_skips_malformed_pairs() -> None:
    assert parse_headers("authorization=Bearer abc, x-team = ops,broken,=empty") == {
        "authorization": "Bearer abc",
        "x-team": "ops",
    }
    assert parse_headers(None) == {}


def test_disabled_telemetry_is_a_no_op() -> None:
    runtime = setup_telemetry(Settings(otel_enabled=False))

    assert runtime.enabled is False
    assert runtime.provider is None
    shutdown_telemetry(runtime)


def test_verbose_logging_only_lowers_the_package_level() -> None:
    configure_logging(verbose=True)
    assert logging.getLogger("referral_integrity.jobs.map_repair").getEffectiveLevel() == logging.DEBUG
    assert logging.getLogger("httpx").getEffectiveLevel() != logging.DEBUG

    configure_logging(verbose=False)
    assert logging.getLogger("referral_integrity").level == logging.INFO
