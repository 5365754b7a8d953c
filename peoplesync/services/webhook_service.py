"""
Upstream webhook ingestion.

Verifies the HMAC-SHA256 authenticity signature of each delivery against the
secret stored for (organization, event name), then applies the nested
resource change to the mirror tables. Every mutation is idempotent, so
redelivery and concurrent delivery are safe.

SECURITY: All queries MUST include organization_id filter.
Failure to do so will result in data leakage between tenants.
"""
import hashlib
import hmac
import json
import re
from dataclasses import dataclass, field
from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from peoplesync.clock import parse_timestamp
from peoplesync.errors import PersistenceError, SignatureVerificationError
from peoplesync.logging_config import get_logger
from peoplesync.models.people import EmailStatusValue
from peoplesync.models.webhook import PcoWebhook
from peoplesync.routes.metrics import track_webhook
from peoplesync.services.mirror_service import MirrorService


HEADER_EVENT_ID = "X-PCO-Webhooks-Event-ID"
HEADER_EVENT_NAME = "X-PCO-Webhooks-Name"
HEADER_SIGNATURE = "X-PCO-Webhooks-Authenticity"

LIST_EVENTS = (
    "people.v2.events.list.created",
    "people.v2.events.list.updated",
    "people.v2.events.list.refreshed",
    "people.v2.events.list.destroyed",
)
LIST_RESULT_EVENTS = (
    "people.v2.events.list_result.created",
    "people.v2.events.list_result.destroyed",
)
EMAIL_EVENTS = (
    "people.v2.events.email.created",
    "people.v2.events.email.updated",
    "people.v2.events.email.destroyed",
)
PERSON_EVENTS = (
    "people.v2.events.person.created",
    "people.v2.events.person.updated",
    "people.v2.events.person.destroyed",
)

# One upstream subscription is registered per name on connect
SUBSCRIBED_EVENTS = LIST_EVENTS + LIST_RESULT_EVENTS + EMAIL_EVENTS + PERSON_EVENTS

_CATEGORY_LINK = re.compile(r"/list_categories/(\d+)$")


class MalformedPayload(ValueError):
    """The verified body does not have the expected event envelope shape."""


@dataclass
class WebhookResult:
    status_code: int
    body: dict[str, Any] = field(default_factory=dict)


def compute_signature(secret: str, raw_body: bytes) -> str:
    """Hex HMAC-SHA256 of the exact request body."""
    return hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, raw_body: bytes, signature: str) -> bool:
    return hmac.compare_digest(compute_signature(secret, raw_body), signature.strip().lower())


def require_valid_signature(
    secret: str, raw_body: bytes, signature: str, organization_id: str | None = None
) -> None:
    if not verify_signature(secret, raw_body, signature):
        raise SignatureVerificationError("Invalid signature", organization_id=organization_id)


def _action(event_name: str) -> str:
    return event_name.rsplit(".", 1)[-1]


def _as_list(data: Any) -> list:
    if data is None:
        return []
    return data if isinstance(data, list) else [data]


def _relationship_id(resource: dict, name: str) -> str | None:
    related = ((resource.get("relationships") or {}).get(name) or {}).get("data")
    if isinstance(related, dict) and related.get("id") is not None:
        return str(related["id"])
    return None


def _email_status(attributes: dict) -> EmailStatusValue:
    return EmailStatusValue.PCO_BLOCKED if attributes.get("blocked") else EmailStatusValue.SUBSCRIBED


class WebhookService:
    """Verifies and applies one webhook delivery for one organization."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.mirror = MirrorService(db)

    async def get_secret(self, organization_id: str, event_name: str) -> str | None:
        stmt = select(PcoWebhook.authenticity_secret).where(
            PcoWebhook.organization_id == organization_id,
            PcoWebhook.name == event_name,
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def handle(self, organization_id: str, headers: Mapping[str, str], raw_body: bytes) -> WebhookResult:
        """
        Verify and apply a delivery.

        Returns 400 for missing headers or a malformed envelope, 404 when no
        secret is stored for the event, 401 on signature mismatch and 500 when
        a mirror write fails.
        """
        lowered = {k.lower(): v for k, v in headers.items()}
        event_id = lowered.get(HEADER_EVENT_ID.lower())
        event_name = lowered.get(HEADER_EVENT_NAME.lower())
        signature = lowered.get(HEADER_SIGNATURE.lower())
        log = get_logger(organization_id=organization_id, component="webhook", event_id=event_id, event=event_name)

        result = await self._handle(organization_id, event_id, event_name, signature, raw_body, log)
        track_webhook(event_name or "", result.status_code)
        return result

    async def _handle(self, organization_id, event_id, event_name, signature, raw_body, log) -> WebhookResult:
        if not event_id:
            log.error("webhook_missing_header", header=HEADER_EVENT_ID)
            return WebhookResult(400, {"received": False, "error": "No webhook ID found"})
        if not event_name:
            log.error("webhook_missing_header", header=HEADER_EVENT_NAME)
            return WebhookResult(400, {"received": False, "error": "No webhook name found"})
        if not signature:
            log.error("webhook_missing_header", header=HEADER_SIGNATURE)
            return WebhookResult(400, {"received": False, "error": "No authenticity signature found"})

        secret = await self.get_secret(organization_id, event_name)
        if not secret:
            log.error("webhook_secret_not_found")
            return WebhookResult(404, {"received": False, "error": "Authenticity secret not found"})

        try:
            require_valid_signature(secret, raw_body, signature, organization_id)
        except SignatureVerificationError as exc:
            log.error("webhook_signature_invalid")
            return WebhookResult(401, {"received": False, "error": exc.message})

        if event_name not in SUBSCRIBED_EVENTS:
            log.warning("webhook_event_ignored")
            return WebhookResult(200, {"received": True, "ignored": True})

        try:
            payloads = self.parse_envelope(raw_body)
        except MalformedPayload as exc:
            log.error("webhook_payload_malformed", error=str(exc))
            return WebhookResult(400, {"received": False, "error": "Malformed payload"})

        try:
            for payload in payloads:
                await self.apply_event(organization_id, event_name, payload)
            await self.mirror.commit()
        except PersistenceError as exc:
            log.error("webhook_mutation_failed", error=exc.message)
            return WebhookResult(500, {"received": False, "error": f"Failed to apply {_action(event_name)} event"})
        except (KeyError, TypeError, AttributeError) as exc:
            await self.db.rollback()
            log.error("webhook_payload_malformed", error=repr(exc))
            return WebhookResult(400, {"received": False, "error": "Malformed payload"})

        log.info("webhook_applied", events=len(payloads))
        return WebhookResult(200, {"received": True})

    @staticmethod
    def parse_envelope(raw_body: bytes) -> list[dict]:
        """
        Extract the resource payloads from an event envelope.

        The envelope is ``{"data": [event, ...]}`` and each event carries the
        resource change as a JSON-encoded string in ``attributes.payload``.
        """
        try:
            envelope = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError) as exc:
            raise MalformedPayload("Body is not JSON") from exc
        if not isinstance(envelope, dict):
            raise MalformedPayload("Envelope is not an object")

        events = _as_list(envelope.get("data"))
        if not events:
            raise MalformedPayload("Envelope has no events")

        payloads = []
        for event in events:
            try:
                payload = event["attributes"]["payload"]
            except (KeyError, TypeError) as exc:
                raise MalformedPayload("Event has no attributes.payload") from exc
            if isinstance(payload, str):
                try:
                    payload = json.loads(payload)
                except ValueError as exc:
                    raise MalformedPayload("attributes.payload is not JSON") from exc
            if not isinstance(payload, dict) or "data" not in payload:
                raise MalformedPayload("Resource payload has no data")
            payloads.append(payload)
        return payloads

    async def apply_event(self, organization_id: str, event_name: str, payload: dict) -> None:
        """Route one resource change to its mirror mutation."""
        if event_name in LIST_EVENTS:
            await self._apply_list(organization_id, _action(event_name), payload["data"])
        elif event_name in LIST_RESULT_EVENTS:
            for list_result in _as_list(payload["data"]):
                await self._apply_list_result(organization_id, _action(event_name), list_result)
        elif event_name in EMAIL_EVENTS:
            await self._apply_email(organization_id, _action(event_name), payload["data"])
        elif event_name in PERSON_EVENTS:
            await self._apply_person(organization_id, _action(event_name), payload["data"])

    async def _apply_list(self, organization_id: str, action: str, resource: dict) -> None:
        pco_list_id = str(resource["id"])
        if action == "destroyed":
            await self.mirror.delete_list(organization_id, pco_list_id)
            return

        attributes = resource.get("attributes") or {}
        category_id = _relationship_id(resource, "category")
        if category_id is None:
            link = (resource.get("links") or {}).get("category")
            match = _CATEGORY_LINK.search(link) if isinstance(link, str) else None
            category_id = match.group(1) if match else None

        await self.mirror.upsert_list(
            organization_id,
            pco_list_id,
            description=attributes.get("name_or_description"),
            refreshed_at=parse_timestamp(attributes.get("refreshed_at")),
            total_people=attributes.get("total_people"),
            category_id=category_id,
        )

    async def _apply_list_result(self, organization_id: str, action: str, resource: dict) -> None:
        pco_person_id = _relationship_id(resource, "person")
        pco_list_id = _relationship_id(resource, "list")
        if pco_person_id is None or pco_list_id is None:
            raise KeyError("list_result without person/list relationship")

        if action == "destroyed":
            await self.mirror.remove_list_member(organization_id, pco_list_id, pco_person_id)
        else:
            await self.mirror.add_list_member(organization_id, pco_list_id, pco_person_id)

    async def _apply_email(self, organization_id: str, action: str, resource: dict) -> None:
        pco_email_id = str(resource["id"])
        if action == "destroyed":
            await self.mirror.delete_email(organization_id, pco_email_id)
            return

        attributes = resource.get("attributes") or {}
        # Only primary addresses are mirrored
        if action == "updated" and attributes.get("primary") is False:
            await self.mirror.delete_email(organization_id, pco_email_id)
            return
        if action == "created" and not attributes.get("primary"):
            return

        address = attributes["address"]
        pco_person_id = _relationship_id(resource, "person")
        if pco_person_id is None:
            raise KeyError("email without person relationship")

        if action == "updated":
            touched = await self.mirror.update_email(organization_id, pco_email_id, pco_person_id, address)
            if not touched:
                # The create was missed; converge instead of failing
                await self.mirror.upsert_email(organization_id, pco_email_id, pco_person_id, address)
        else:
            await self.mirror.upsert_email(organization_id, pco_email_id, pco_person_id, address)

        await self.mirror.record_email_status(organization_id, address, _email_status(attributes))

    async def _apply_person(self, organization_id: str, action: str, resource: dict) -> None:
        pco_id = str(resource["id"])
        if action == "destroyed":
            await self.mirror.delete_person(organization_id, pco_id)
        else:
            await self.mirror.upsert_person(organization_id, pco_id, resource.get("attributes") or {})
