"""
ARQ background worker for PeopleSync.

Runs full syncs and recipient eligibility off the request path, using the
Redis queue at ``settings.REDIS_URL``.
"""
from arq import Retry, create_pool
from arq.connections import RedisSettings
from redis.exceptions import RedisError

from peoplesync.config import settings
from peoplesync.database import AsyncSessionLocal
from peoplesync.errors import NotConnected, ReconnectRequired, UpstreamTransportError
from peoplesync.logging_config import configure_logging, get_logger
from peoplesync.models.campaign import CampaignStatus
from peoplesync.sentry_config import capture_exception, configure_sentry
from peoplesync.services.eligibility_service import EligibilityService, Outcome
from peoplesync.services.pco_client import pco_client_session
from peoplesync.services.sync_service import ResourceType, SyncService


# Seconds before a sync aborted by an upstream error is retried
SYNC_RETRY_DEFER = 60


async def sync_resource_job(ctx: dict, organization_id: str, resource_type: str) -> dict:
    """Run one full sync. Upstream failures are retried; a lost credential is not."""
    job_try = ctx.get("job_try", 1)
    max_tries = ctx.get("max_tries", WorkerSettings.max_tries)
    log = get_logger(organization_id=organization_id, component="worker", job="sync", resource_type=resource_type)
    log.info("job_started", attempt=job_try, max_tries=max_tries)

    session_factory = ctx.get("session_factory", AsyncSessionLocal)
    client_session = ctx.get("client_session", pco_client_session)
    async with session_factory() as db, client_session() as client:
        try:
            result = await SyncService(db, client).sync_resource(organization_id, resource_type)
        except (NotConnected, ReconnectRequired) as exc:
            log.warning("job_abandoned", error_code=exc.code, error=exc.message)
            return {"status": exc.code, "error": exc.message}
        except UpstreamTransportError as exc:
            if job_try < max_tries:
                log.warning("job_retrying", error=exc.message, defer_seconds=SYNC_RETRY_DEFER * job_try)
                raise Retry(defer=SYNC_RETRY_DEFER * job_try) from exc
            capture_exception(exc, organization_id=organization_id)
            raise
        except Exception as exc:
            capture_exception(exc, organization_id=organization_id)
            raise

    return {
        "status": "completed",
        "counts": result.counts,
        "pages_fetched": result.pages_fetched,
        "skipped": result.skipped,
        "truncated": result.truncated,
    }


async def filter_email_recipients_job(ctx: dict, organization_id: str, email_id: str) -> dict:
    """
    Compute the recipients of a campaign and record the outcome on it.

    Returns the recipient map for the dispatcher when the campaign is ready.
    """
    log = get_logger(organization_id=organization_id, component="worker", job="eligibility", email_id=email_id)

    async with ctx.get("session_factory", AsyncSessionLocal)() as db:
        service = EligibilityService(db)
        campaign = await service.get_campaign(organization_id, email_id)
        if campaign is None:
            log.error("job_campaign_not_found")
            return {"outcome": Outcome.SKIPPED.value, "reason": "not_found", "recipients": {}}

        try:
            result = await service.compute_eligible_recipients(campaign)
        except Exception as exc:
            log.error("job_failed", error=repr(exc))
            campaign.status = CampaignStatus.FAILED.value
            campaign.error_message = "Failed to compute recipients"
            await db.commit()
            capture_exception(exc, organization_id=organization_id)
            raise

        if result.outcome is Outcome.READY:
            campaign.status = CampaignStatus.SENDING.value
            campaign.error_message = None
            campaign.recipient_count = result.recipient_count
        elif result.outcome is Outcome.SKIPPED:
            campaign.status = CampaignStatus.FAILED.value
            campaign.error_message = result.message
            campaign.recipient_count = 0
        await db.commit()

    log.info("job_completed", outcome=result.outcome.value, reason=result.reason, recipients=result.recipient_count)
    return result.to_dict()


ARQ_FUNCTIONS = [
    sync_resource_job,
    filter_email_recipients_job,
]


async def enqueue_job(function: str, *args) -> bool:
    """Enqueue a job for background processing using ARQ."""
    log = get_logger(component="worker", job=function)
    try:
        redis = await create_pool(RedisSettings.from_dsn(settings.REDIS_URL))
        try:
            await redis.enqueue_job(function, *args)
        finally:
            await redis.close()
    except (RedisError, OSError) as exc:
        log.error("enqueue_failed", error=str(exc))
        return False
    log.info("job_enqueued", args=list(args))
    return True


async def enqueue_sync(organization_id: str, resource_type: ResourceType | str) -> bool:
    return await enqueue_job("sync_resource_job", organization_id, ResourceType(resource_type).value)


async def enqueue_eligibility(organization_id: str, email_id: str) -> bool:
    return await enqueue_job("filter_email_recipients_job", organization_id, email_id)


async def startup(ctx: dict) -> None:
    configure_logging(debug=settings.DEBUG)
    configure_sentry()
    get_logger(component="worker").info("worker_started", functions=len(ARQ_FUNCTIONS))


class WorkerSettings:
    """Settings for ARQ worker - use with 'arq peoplesync.worker.WorkerSettings'"""
    redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)
    job_timeout = 3600
    max_tries = 3
    functions = ARQ_FUNCTIONS
    on_startup = startup