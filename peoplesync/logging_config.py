"""
Structured logging configuration using structlog.

Every event is a JSON line with a machine-readable event name. Upstream
credentials and webhook secrets never reach the output: values under the
keys in ``REDACTED_KEYS`` are masked before rendering.
"""
import logging
import sys

import structlog

REDACTED_KEYS = frozenset({"access_token", "refresh_token", "authenticity_secret", "client_secret"})


def redact_credentials(logger, method_name, event_dict):
    for key in REDACTED_KEYS.intersection(event_dict):
        if event_dict[key]:
            event_dict[key] = "***"
    return event_dict


def configure_logging(debug: bool = False):
    """Configure stdlib logging and structlog for JSON output."""
    level = logging.DEBUG if debug else logging.INFO

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            redact_credentials,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(**context):
    """
    Logger with organization-scoped context bound.

    Usage:
        log = get_logger(organization_id=org_id, component="sync")
        log.info("sync_page_fetched", page=3, records=100)
    """
    return structlog.get_logger().bind(**context)
