"""
Sentry configuration for error tracking.

Captures unhandled exceptions from the API and worker jobs with the
organization attached.
"""
import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from peoplesync.config import settings
from peoplesync.logging_config import get_logger

log = get_logger(component="sentry")


def configure_sentry():
    """
    Initialize Sentry with FastAPI and SQLAlchemy integrations.

    Does nothing unless SENTRY_DSN is set.
    """
    dsn = settings.SENTRY_DSN

    if not dsn:
        log.warning("sentry_disabled", reason="SENTRY_DSN not set")
        return

    sentry_sdk.init(
        dsn=dsn,
        integrations=[
            FastApiIntegration(),
            SqlalchemyIntegration(),
        ],
        before_send=add_context,
        traces_sample_rate=0.1,
        environment=settings.ENVIRONMENT,
        release=settings.APP_VERSION,
    )

    log.info("sentry_initialized", environment=settings.ENVIRONMENT)


def add_context(event, hint):
    """Tag events raised from integration errors with their organization."""
    exc_info = (hint or {}).get("exc_info")
    if exc_info:
        organization_id = getattr(exc_info[1], "organization_id", None)
        if organization_id:
            event.setdefault("tags", {})["organization_id"] = organization_id
    return event


def capture_exception(exc_info=None, organization_id: str | None = None):
    """
    Capture an exception to Sentry.

    Usage:
        try:
            ...
        except Exception as exc:
            capture_exception(exc, organization_id=org_id)
    """
    if not sentry_sdk.get_client().is_active():
        return
    with sentry_sdk.new_scope() as scope:
        if organization_id:
            scope.set_tag("organization_id", organization_id)
        sentry_sdk.capture_exception(exc_info)
