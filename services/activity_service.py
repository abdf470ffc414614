import logging
from datetime import datetime
from sqlalchemy import select, desc
from database.models.crm import Lead, LeadActivity
from services.pipeline import ActivityType, CallStatus, SYSTEM_ACTOR
from services.errors import NotFoundError, ValidationError
from services.contact_utils import normalize_phone

logger = logging.getLogger(__name__)


def serialize_activity(a: LeadActivity) -> dict:
    return {
        "id": a.id,
        "lead_id": a.lead_id,
        "event_type": a.event_type,
        "event_data": a.event_data or {},
        "performed_by": a.performed_by,
        "timestamp": a.timestamp,
    }


class ActivityLog:
    """
    Append-only audit trail. Entries are never updated or deleted, including
    entries that belong to purged leads.
    """

    def __init__(self, store):
        self.store = store

    def record(self, session, lead_id: str, event_type, event_data: dict = None, performed_by: str = SYSTEM_ACTOR) -> LeadActivity:
        """Adds an entry inside the caller's writer transaction."""
        if isinstance(event_type, ActivityType):
            event_type = event_type.value
        activity = LeadActivity(
            lead_id=lead_id,
            event_type=event_type,
            event_data=event_data or {},
            performed_by=performed_by,
            timestamp=datetime.utcnow(),
        )
        session.add(activity)
        return activity

    async def log_activity(self, lead_id: str, event_type, event_data: dict = None, performed_by: str = SYSTEM_ACTOR) -> dict:
        async with self.store.writer() as session:
            activity = self.record(session, lead_id, event_type, event_data, performed_by)
            await session.flush()
            return serialize_activity(activity)

    async def get_activities_for_lead(self, lead_id: str) -> list:
        async with self.store.reader() as session:
            stmt = (
                select(LeadActivity)
                .where(LeadActivity.lead_id == lead_id)
                .order_by(desc(LeadActivity.timestamp), desc(LeadActivity.id))
            )
            result = await session.execute(stmt)
            return [serialize_activity(a) for a in result.scalars().all()]

    async def log_note(self, lead_id: str, text: str, performed_by: str) -> dict:
        if not (text or "").strip():
            raise ValidationError("Note text is required")
        await self._require_lead(lead_id)
        return await self.log_activity(lead_id, ActivityType.NOTE_ADDED, {"text": text.strip()}, performed_by)

    async def log_call(self, lead_id: str, duration: str, status: str, performed_by: str,
                       recording_url: str = None, notes: str = None, source: str = None) -> dict:
        try:
            status = CallStatus(status).value
        except ValueError:
            raise ValidationError(f"Unknown call status '{status}'")
        await self._require_lead(lead_id)

        data = {"duration": duration, "status": status}
        if recording_url:
            data["recording_url"] = recording_url
        if notes:
            data["notes"] = notes
        if source:
            data["source"] = source
        return await self.log_activity(lead_id, ActivityType.CALL_LOGGED, data, performed_by)

    async def sync_external_call(self, phone_raw: str, performed_by: str, duration: str = "15:00") -> bool:
        """Logs a call synced from the booking system against the lead owning `phone_raw`."""
        normalized = normalize_phone(phone_raw)
        async with self.store.reader() as session:
            stmt = select(Lead.id).where(Lead.phone_normalized == normalized, Lead.deleted_at.is_(None))
            lead_id = (await session.execute(stmt)).scalar_one_or_none()

        if not lead_id:
            logger.info(f"[Activity] No lead matches synced call from {normalized}")
            return False

        await self.log_call(
            lead_id, duration, CallStatus.COMPLETED.value, performed_by,
            notes="Synced from Trafft", source="Trafft",
        )
        return True

    async def get_all_call_logs(self) -> list:
        async with self.store.reader() as session:
            stmt = (
                select(LeadActivity, Lead)
                .join(Lead, Lead.id == LeadActivity.lead_id)
                .where(LeadActivity.event_type == ActivityType.CALL_LOGGED.value)
                .order_by(desc(LeadActivity.timestamp), desc(LeadActivity.id))
            )
            result = await session.execute(stmt)
            logs = []
            for activity, lead in result.all():
                entry = serialize_activity(activity)
                entry["lead"] = {"id": lead.id, "full_name": lead.full_name, "phone_normalized": lead.phone_normalized}
                logs.append(entry)
            return logs

    async def _require_lead(self, lead_id: str):
        async with self.store.reader() as session:
            lead = await session.get(Lead, lead_id)
            if not lead:
                raise NotFoundError(f"Lead {lead_id} not found")
