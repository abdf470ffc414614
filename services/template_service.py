import os
import logging
from urllib.parse import quote
from sqlalchemy import select
from database.models.general import MessageTemplate
from services.pipeline import Channel, LeadStatus
from services.errors import NotFoundError, ValidationError
from services.contact_utils import national_number

logger = logging.getLogger(__name__)

PAYMENT_CHECKOUT_BASE_URL = os.getenv("PAYMENT_CHECKOUT_BASE_URL", "https://learn.mastry.in/web/checkout")

# (status_trigger, name, subject, body)
DEFAULT_EMAIL_TEMPLATES = [
    ("new_lead", "Welcome Email", "Welcome to Mastry!",
     "Hi {{first_name}},\n\nThanks for your interest in our cohort. We will be in touch shortly.\n\nCheers,\nTeam Mastry"),
    ("eligible", "Eligibility Confirmed", "You are eligible! Next steps inside.",
     "Hi {{first_name}},\n\nWe reviewed your profile and you are eligible for the cohort. Let's schedule a chat.\n\nBest,\nTeam Mastry"),
    ("non_eligible", "Not Eligible", "Update on your application",
     "Hi {{first_name}},\n\nUnfortunately we cannot proceed with your application at this time.\n\nRegards,\nTeam Mastry"),
    ("interview_scheduled", "Interview Invitation", "Your interview is scheduled, {{first_name}}!",
     "Hi {{first_name}},\n\nYour interview has been scheduled. Please check your calendar invite.\n\nBest regards,\nTeam Mastry"),
    ("follow_ups", "Follow Up", "Checking in",
     "Hi {{first_name}},\n\nJust checking in to see if you have any questions about the cohort.\n\nBest,\n{{assigned_to_name}}"),
    ("selected", "Selection Notice", "Congratulations! You are selected.",
     "Hi {{first_name}},\n\nWe are thrilled to offer you a spot in the upcoming cohort.\n\nCheers,\nTeam Mastry"),
    ("rejected", "Rejection Notice", "Application Update",
     "Hi {{first_name}},\n\nWe have decided not to move forward with your application for this cohort.\n\nBest,\nTeam Mastry"),
    ("payment_link", "Payment Link", "Complete your Enrollment",
     "Hi {{first_name}},\n\nHere is your payment link to secure your spot:\n\n{{payment_link}}\n\nTeam Mastry"),
    ("enrolled", "Enrollment Success", "Welcome to the Cohort!",
     "Hi {{first_name}},\n\nYour enrollment is confirmed. See you soon!\n\nTeam Mastry"),
]

# (status_trigger, name, provider_template_id, preview)
DEFAULT_WHATSAPP_TEMPLATES = [
    ("new_lead", "Welcome Message", "welcome_v1", "Hi {{first_name}}! Thanks for applying to Mastry. We'll review your profile soon."),
    ("eligible", "Eligibility Confirmed", "eligible_v1", "Hi {{first_name}}, good news! You are eligible for the cohort."),
    ("non_eligible", "Not Eligible", "non_eligible_v1", "Hi {{first_name}}, thank you for applying. Unfortunately you're not eligible at this time."),
    ("interview_scheduled", "Interview Reminder", "interview_reminder_v2", "Hi {{first_name}}! Your interview is scheduled. Check your email for details."),
    ("follow_ups", "Follow Up", "follow_up_v1", "Hi {{first_name}}, just checking if you have any questions?"),
    ("selected", "Selection Alert", "selected_v1", "Congrats {{first_name}}! You've been selected for the cohort."),
    ("rejected", "Rejection Notice", "rejected_v1", "Hi {{first_name}}, we've decided not to move forward with your application this time."),
    ("payment_link", "Send Payment Link", "payment_link_v1", "Hi {{first_name}}, secure your spot now: {{payment_link}}"),
    ("enrolled", "Enrollment Success", "enrolled_v1", "Welcome aboard {{first_name}}! Your enrollment is confirmed."),
]


def render_template(text: str, lead: dict, assigned_to_name: str = None, payment_link: str = None) -> str:
    replacements = {
        "{{first_name}}": lead.get("first_name") or "",
        "{{last_name}}": lead.get("last_name") or "",
        "{{full_name}}": lead.get("full_name") or "",
        "{{email}}": lead.get("email") or "",
        "{{phone}}": lead.get("phone_normalized") or "",
        "{{assigned_to_name}}": assigned_to_name or "",
        "{{payment_link}}": payment_link or f"{PAYMENT_CHECKOUT_BASE_URL}/",
    }
    for key, value in replacements.items():
        text = text.replace(key, value)
    return text


def build_payment_link(service_id: str, coupon_code: str, lead: dict) -> str:
    name = f"{lead.get('first_name', '')}+{lead.get('last_name', '')}".replace(" ", "+")
    phone = national_number(lead.get("phone_normalized") or "", lead.get("country_code"))
    params = [
        f"couponcode={coupon_code}" if coupon_code else "",
        f"name={name}",
        f"email={quote(lead.get('email') or '', safe='')}",
        f"phone={phone}",
    ]
    return f"{PAYMENT_CHECKOUT_BASE_URL}/{service_id}?" + "&".join(p for p in params if p)


def serialize_template(t: MessageTemplate) -> dict:
    return {
        "id": t.id,
        "channel": t.channel,
        "name": t.name,
        "status_trigger": t.status_trigger,
        "subject": t.subject,
        "body": t.body,
        "provider_template_id": t.provider_template_id,
        "is_active": t.is_active,
    }


async def seed_default_templates(session):
    """Inserts the default templates once; existing templates are left alone."""
    existing = (await session.execute(select(MessageTemplate.id).limit(1))).scalars().first()
    if existing:
        return
    for status, name, subject, body in DEFAULT_EMAIL_TEMPLATES:
        session.add(MessageTemplate(
            id=f"tpl_{status}", channel=Channel.EMAIL.value, name=name,
            status_trigger=status, subject=subject, body=body, is_active=True,
        ))
    for status, name, provider_id, preview in DEFAULT_WHATSAPP_TEMPLATES:
        session.add(MessageTemplate(
            id=f"wa_{status}", channel=Channel.WHATSAPP.value, name=name,
            status_trigger=status, body=preview, provider_template_id=provider_id, is_active=True,
        ))
    logger.info("Seeded default message templates")


async def get_templates_for_status(session, status: str) -> list:
    stmt = select(MessageTemplate).where(
        MessageTemplate.status_trigger == status,
        MessageTemplate.is_active.is_(True),
    ).order_by(MessageTemplate.channel)
    return (await session.execute(stmt)).scalars().all()


# Triggers besides pipeline stages that templates may be keyed on
EXTRA_TRIGGERS = {"payment_link"}


class TemplateLibrary:
    """Editable email / WhatsApp templates behind status automations."""

    def __init__(self, store):
        self.store = store

    async def list_templates(self, channel: str = None) -> list:
        async with self.store.reader() as session:
            stmt = select(MessageTemplate).order_by(MessageTemplate.channel, MessageTemplate.name)
            if channel:
                stmt = stmt.where(MessageTemplate.channel == channel)
            return [serialize_template(t) for t in (await session.execute(stmt)).scalars().all()]

    async def save_template(self, channel: str, name: str, status_trigger: str, body: str,
                            subject: str = None, provider_template_id: str = None,
                            is_active: bool = True, template_id: str = None) -> dict:
        try:
            channel = Channel(channel)
        except ValueError:
            raise ValidationError(f"Unknown channel '{channel}'")
        if status_trigger not in {s.value for s in LeadStatus} | EXTRA_TRIGGERS:
            raise ValidationError(f"Unknown template trigger '{status_trigger}'")
        if not (name or "").strip() or not (body or "").strip():
            raise ValidationError("Template name and body are required")
        if channel == Channel.EMAIL and not (subject or "").strip():
            raise ValidationError("Email templates need a subject")
        if channel == Channel.WHATSAPP and not provider_template_id:
            raise ValidationError("WhatsApp templates need a provider template id")

        async with self.store.writer() as session:
            template = await session.get(MessageTemplate, template_id) if template_id else None
            if not template:
                template = MessageTemplate()
                if template_id:
                    template.id = template_id
                session.add(template)
            template.channel = channel.value
            template.name = name.strip()
            template.status_trigger = status_trigger
            template.body = body
            template.subject = subject if channel == Channel.EMAIL else None
            template.provider_template_id = provider_template_id if channel == Channel.WHATSAPP else None
            template.is_active = is_active
            await session.flush()
            saved = serialize_template(template)
        logger.info(f"Saved {saved['channel']} template {saved['id']} for '{status_trigger}'")
        return saved

    async def delete_template(self, template_id: str):
        async with self.store.writer() as session:
            template = await session.get(MessageTemplate, template_id)
            if not template:
                raise NotFoundError("Template not found")
            await session.delete(template)
        logger.info(f"Deleted template {template_id}")
