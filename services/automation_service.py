import os
import time
import random
import logging
from dataclasses import dataclass
from datetime import datetime
import httpx
from celery import shared_task
from sqlalchemy import select
from database.models.crm import Lead
from database.models.general import WebhookSubscription, IntegrationConfig, User
from backend.utils.encryption import encrypt_settings, decrypt_settings
from services.pipeline import ActivityType, AutomationEvent, Channel, SYSTEM_ACTOR
from services.errors import AutomationDeliveryError, NotFoundError, ValidationError, delivery_failure
from services.template_service import get_templates_for_status, render_template, serialize_template

logger = logging.getLogger(__name__)

AUTOMATION_MODE = os.getenv("AUTOMATION_MODE", "simulated")
AUTOMATION_FAILURE_RATE = float(os.getenv("AUTOMATION_FAILURE_RATE", "0.2"))
WEBHOOK_DELIVERY_MODE = os.getenv("WEBHOOK_DELIVERY_MODE", "simulated")
WEBHOOK_SUCCESS_RATE = float(os.getenv("WEBHOOK_SUCCESS_RATE", "0.9"))
WEBHOOK_TIMEOUT_SECONDS = float(os.getenv("WEBHOOK_TIMEOUT_SECONDS", "10"))

SIMULATED_FAILURE_CODES = ["EAUTH", "ETIMEDOUT", "ECONNREFUSED", "ERATELIMIT"]

# Redelivery delay (seconds) for retryable failures
RETRY_DELAYS = {"ETIMEDOUT": 60, "ERATELIMIT": 3600}


# --- Channel senders (email / WhatsApp) ---

class SimulatedChannelSender:
    """Models provider flakiness: fails with `failure_rate` probability using a fixed taxonomy."""

    def __init__(self, failure_rate: float = AUTOMATION_FAILURE_RATE, rng: random.Random = None):
        self.failure_rate = failure_rate
        self.rng = rng or random.Random()

    async def send(self, channel: Channel, lead: dict, content: str, subject: str = None, template_id: str = None):
        if self.rng.random() < self.failure_rate:
            raise delivery_failure(channel.value, self.rng.choice(SIMULATED_FAILURE_CODES))

class LiveChannelSender:
    """Real providers: SMTP (aiosmtplib) for email, WhatsApp Cloud API (httpx)."""

    def __init__(self, integrations):
        self.integrations = integrations

    async def send(self, channel: Channel, lead: dict, content: str, subject: str = None, template_id: str = None):
        from services.email_service import email_service
        from services.whatsapp_service import send_whatsapp_message

        if channel == Channel.EMAIL:
            if not lead.get("email"):
                raise delivery_failure(channel.value, "EPROVIDER", "Lead has no email address")
            smtp = await self.integrations.get("smtp")
            await email_service.send_email(smtp, lead["email"], subject or "Mastry Cohort", content)
        else:
            config = await self.integrations.get("whatsapp")
            to_number = (lead.get("phone_normalized") or "").lstrip("+")
            await send_whatsapp_message(config, to_number, content, template_id=template_id)


# --- Webhook transports ---

@dataclass
class WebhookDelivery:
    status: int
    latency_ms: int
    response: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

class SimulatedWebhookTransport:
    def __init__(self, success_rate: float = WEBHOOK_SUCCESS_RATE, rng: random.Random = None):
        self.success_rate = success_rate
        self.rng = rng or random.Random()

    async def deliver(self, subscription: WebhookSubscription, event: str, payload: dict) -> WebhookDelivery:
        logger.info(f"[Automation] Simulating webhook {subscription.webhook_url} for {event}")
        success = self.rng.random() < self.success_rate
        return WebhookDelivery(
            status=200 if success else 500,
            latency_ms=self.rng.randint(0, 499),
            response="OK" if success else "Internal Server Error",
        )

class HttpWebhookTransport:
    def __init__(self, timeout: float = WEBHOOK_TIMEOUT_SECONDS, transport: httpx.AsyncBaseTransport = None):
        self.timeout = timeout
        self.transport = transport

    async def deliver(self, subscription: WebhookSubscription, event: str, payload: dict) -> WebhookDelivery:
        started = time.monotonic()
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                response = await client.post(subscription.webhook_url, json={"event": event, "data": payload})
                status, text = response.status_code, response.text[:200]
            except httpx.TimeoutException:
                status, text = 504, "Timed out"
            except httpx.TransportError as e:
                status, text = 502, f"Transport error: {e}"
        return WebhookDelivery(status=status, latency_ms=int((time.monotonic() - started) * 1000), response=text)


# --- Integration configs ---

class IntegrationStore:
    def __init__(self, store):
        self.store = store

    async def save(self, provider: str, enabled: bool, settings: dict) -> dict:
        async with self.store.writer() as session:
            config = await session.get(IntegrationConfig, provider)
            if not config:
                config = IntegrationConfig(provider=provider)
                session.add(config)
            config.enabled = enabled
            config.settings = encrypt_settings(settings)
            config.updated_at = datetime.utcnow()
        logger.info(f"[Automation] Saved {provider} integration (enabled={enabled})")
        return {"provider": provider, "enabled": enabled}

    async def get(self, provider: str) -> dict:
        """Decrypted settings of an enabled integration; empty dict otherwise."""
        async with self.store.reader() as session:
            config = await session.get(IntegrationConfig, provider)
            if not config or not config.enabled:
                return {}
            return decrypt_settings(config.settings)


def serialize_webhook(w: WebhookSubscription) -> dict:
    return {
        "id": w.id,
        "name": w.name,
        "webhook_url": w.webhook_url,
        "triggers": list(w.triggers or []),
        "is_active": w.is_active,
        "last_triggered": w.last_triggered,
    }


class AutomationDispatcher:
    """
    Fans engine events out to webhook subscribers and sends email/WhatsApp
    automations. Every attempt, successful or not, lands in the activity log.
    Must be called outside any Store writer block.
    """

    def __init__(self, store, activity_log, sender=None, webhook_transport=None):
        self.store = store
        self.activity_log = activity_log
        self.sender = sender or SimulatedChannelSender()
        self.webhook_transport = webhook_transport or SimulatedWebhookTransport()

    # --- Webhook subscriptions ---

    async def save_webhook(self, name: str, webhook_url: str, triggers: list, is_active: bool = True, webhook_id: str = None) -> dict:
        if not name or not webhook_url:
            raise ValidationError("Webhook name and URL are required")
        async with self.store.writer() as session:
            webhook = await session.get(WebhookSubscription, webhook_id) if webhook_id else None
            if not webhook:
                webhook = WebhookSubscription(created_at=datetime.utcnow())
                if webhook_id:
                    webhook.id = webhook_id
                session.add(webhook)
            webhook.name = name
            webhook.webhook_url = webhook_url
            webhook.triggers = list(dict.fromkeys(triggers or []))
            webhook.is_active = is_active
            await session.flush()
            return serialize_webhook(webhook)

    async def list_webhooks(self) -> list:
        async with self.store.reader() as session:
            result = await session.execute(select(WebhookSubscription).order_by(WebhookSubscription.created_at))
            return [serialize_webhook(w) for w in result.scalars().all()]

    async def delete_webhook(self, webhook_id: str):
        async with self.store.writer() as session:
            webhook = await session.get(WebhookSubscription, webhook_id)
            if not webhook:
                raise NotFoundError("Webhook not found")
            await session.delete(webhook)

    async def trigger_webhooks(self, event_name, payload: dict) -> list:
        """
        Delivers `event_name` to every active subscription listening for it.
        One subscriber failing never blocks the others.
        """
        if isinstance(event_name, AutomationEvent):
            event_name = event_name.value

        async with self.store.reader() as session:
            result = await session.execute(select(WebhookSubscription).where(WebhookSubscription.is_active.is_(True)))
            subscriptions = [w for w in result.scalars().all() if event_name in (w.triggers or [])]

        deliveries = []
        for sub in subscriptions:
            try:
                delivery = await self.webhook_transport.deliver(sub, event_name, payload)
            except Exception as e:
                logger.error(f"[Automation] Webhook {sub.name} crashed for {event_name}: {e}")
                delivery = WebhookDelivery(status=0, latency_ms=0, response=f"Delivery error: {e}")

            if not delivery.ok:
                logger.warning(f"[Automation] Webhook {sub.name} -> {sub.webhook_url} failed with {delivery.status}")

            async with self.store.writer() as session:
                row = await session.get(WebhookSubscription, sub.id)
                if row:
                    row.last_triggered = datetime.utcnow()
                if payload.get("id"):
                    self.activity_log.record(session, payload["id"], ActivityType.WEBHOOK_TRIGGERED, {
                        "webhook_name": sub.name,
                        "url": sub.webhook_url,
                        "event": event_name,
                        "status": delivery.status,
                        "latency_ms": delivery.latency_ms,
                        "response": delivery.response,
                    }, SYSTEM_ACTOR)
            deliveries.append({"webhook_id": sub.id, "status": delivery.status, "ok": delivery.ok})
        return deliveries

    # --- Email / WhatsApp ---

    async def trigger_automation(self, channel, lead_id: str, content: str, actor_id: str,
                                 subject: str = None, template_id: str = None) -> dict:
        """
        Sends one message. Success logs email_sent / whatsapp_triggered; failure
        logs <channel>_failed and re-raises AutomationDeliveryError so the caller
        decides whether to retry.
        """
        try:
            channel = Channel(channel)
        except ValueError:
            raise ValidationError(f"Unknown automation channel '{channel}'")

        async with self.store.reader() as session:
            lead = await session.get(Lead, lead_id)
            if not lead or lead.deleted_at:
                raise NotFoundError(f"Lead {lead_id} not found")
            lead_data = {
                "id": lead.id,
                "email": lead.email,
                "phone_normalized": lead.phone_normalized,
                "first_name": lead.first_name,
            }

        try:
            await self.sender.send(channel, lead_data, content, subject=subject, template_id=template_id)
        except AutomationDeliveryError as e:
            logger.warning(f"[Automation] {channel.value} to lead {lead_id} failed: {e.code} (retryable={e.retryable})")
            failed_type = ActivityType.EMAIL_FAILED if channel == Channel.EMAIL else ActivityType.WHATSAPP_FAILED
            await self.activity_log.log_activity(lead_id, failed_type, {
                "error_code": e.code,
                "message": e.detail,
                "retryable": e.retryable,
            }, actor_id)
            raise

        sent_type = ActivityType.EMAIL_SENT if channel == Channel.EMAIL else ActivityType.WHATSAPP_TRIGGERED
        snippet = content[:50] + "..." if len(content) > 50 else content
        activity = await self.activity_log.log_activity(lead_id, sent_type, {"content_snippet": snippet}, actor_id)
        logger.info(f"[Automation] {channel.value} sent to lead {lead_id}")
        return activity

    async def trigger_status_automations(self, lead_id: str, status: str, actor_id: str, payment_link: str = None) -> list:
        """Fires every active template for `status`; failures are reported per template."""
        async with self.store.reader() as session:
            lead = await session.get(Lead, lead_id)
            if not lead or lead.deleted_at:
                raise NotFoundError(f"Lead {lead_id} not found")
            lead_data = {
                "first_name": lead.first_name, "last_name": lead.last_name, "full_name": lead.full_name,
                "email": lead.email, "phone_normalized": lead.phone_normalized,
            }
            agent = await session.get(User, lead.assigned_to) if lead.assigned_to else None
            templates = [serialize_template(t) for t in await get_templates_for_status(session, status)]

        outcomes = []
        for tpl in templates:
            content = render_template(tpl["body"], lead_data, agent.full_name if agent else None, payment_link)
            subject = render_template(tpl["subject"], lead_data) if tpl["subject"] else None
            try:
                await self.trigger_automation(
                    tpl["channel"], lead_id, content, actor_id,
                    subject=subject, template_id=tpl["provider_template_id"],
                )
                outcomes.append({"template_id": tpl["id"], "channel": tpl["channel"], "success": True})
            except AutomationDeliveryError as e:
                outcomes.append({
                    "template_id": tpl["id"], "channel": tpl["channel"], "success": False,
                    "error_code": e.code, "error": str(e), "retryable": e.retryable,
                })
        return outcomes


def build_dispatcher(store, activity_log) -> AutomationDispatcher:
    """Dispatcher wired from AUTOMATION_MODE / WEBHOOK_DELIVERY_MODE."""
    sender = LiveChannelSender(IntegrationStore(store)) if AUTOMATION_MODE == "live" else SimulatedChannelSender()
    transport = HttpWebhookTransport() if WEBHOOK_DELIVERY_MODE == "http" else SimulatedWebhookTransport()
    return AutomationDispatcher(store, activity_log, sender=sender, webhook_transport=transport)


# --- Celery Tasks ---

@shared_task(name="redeliver_automation")
def redeliver_automation_task(channel: str, lead_id: str, content: str, actor_id: str, subject: str = None):
    """
    Caller-scheduled retry of a retryable automation failure.
    A failed retry is logged like any other attempt and not rescheduled.
    """
    import asyncio
    from database.session import AsyncSessionLocal
    from services.store import Store
    from services.activity_service import ActivityLog

    async def _run():
        store = Store(AsyncSessionLocal)
        dispatcher = build_dispatcher(store, ActivityLog(store))
        try:
            await dispatcher.trigger_automation(channel, lead_id, content, actor_id, subject=subject)
            return True
        except AutomationDeliveryError as e:
            logger.warning(f"[Automation] Redelivery of {channel} to {lead_id} failed again: {e.code}")
            return False

    return asyncio.run(_run())
