import logging
from datetime import datetime
from typing import Literal, Optional
from pydantic import BaseModel, Field, model_validator
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select, desc
from sqlalchemy.exc import IntegrityError
from database.models.crm import Lead
from database.models.general import User
from services.pipeline import ActivityType, AutomationEvent, INITIAL_STATUS, get_status_definition
from services.errors import CRMError, ConflictError, DuplicateLeadError, NotFoundError, ValidationError
from services.contact_utils import normalize_phone, resolve_country_code, digits_only, validate_email, sanitize_name
from services.rotation_service import assign_next_agent
from services.tag_service import clean_tags, register_tags

logger = logging.getLogger(__name__)

# Fields callers may write through update(); everything else is engine-owned
UPDATABLE_FIELDS = {
    "first_name", "last_name", "email", "country_code", "phone_raw",
    "status", "source", "source_details", "assigned_to", "tags",
    "custom_fields", "payment_details", "rejection_reason",
}

MERGEABLE_FIELDS = {"first_name", "last_name", "email", "tags", "source_details"}

DEFAULT_SOURCE = "Manual Entry"


def _meta_form_snapshot():
    return {"Meta Lead Form": {"ad_id": None, "form_id": None, "captured_at": datetime.utcnow().isoformat()}}

def _deftform_snapshot():
    return {"Deftform Submission": {"submitted_at": datetime.utcnow().isoformat(), "referrer": None}}

# Default source_details snapshot per recognised source
SOURCE_ENRICHERS = {
    "Meta Form": _meta_form_snapshot,
    "Deftform": _deftform_snapshot,
}


class EmiDetails(BaseModel):
    tenure: str
    monthly_amount: float = Field(gt=0)
    next_payment_date: str

class PaymentDetails(BaseModel):
    amount: float = Field(ge=0)
    mode: Literal["UPI", "Card", "NetBanking", "EMI"]
    transaction_id: str = Field(min_length=1)
    coupon_code: Optional[str] = None
    payment_date: Optional[str] = None
    emi_details: Optional[EmiDetails] = None

    @model_validator(mode="after")
    def emi_needs_schedule(self):
        if self.mode == "EMI" and not self.emi_details:
            raise ValueError("EMI payments need an emi_details schedule")
        return self


def _iso(value):
    return value.isoformat() if value else None

def serialize_lead(l: Lead) -> dict:
    return {
        "id": l.id,
        "version": l.version,
        "first_name": l.first_name,
        "last_name": l.last_name,
        "full_name": l.full_name,
        "email": l.email,
        "country_code": l.country_code,
        "phone_raw": l.phone_raw,
        "phone_normalized": l.phone_normalized,
        "status": l.status,
        "status_updated_at": _iso(l.status_updated_at),
        "source": l.source,
        "source_details": dict(l.source_details or {}),
        "assigned_to": l.assigned_to,
        "tags": list(l.tags or []),
        "custom_fields": dict(l.custom_fields or {}),
        "payment_details": l.payment_details,
        "rejection_reason": l.rejection_reason,
        "merged_identities": l.merged_identities or {"emails": [], "names": []},
        "created_at": _iso(l.created_at),
        "created_by": l.created_by,
        "updated_at": _iso(l.updated_at),
        "deleted_at": _iso(l.deleted_at),
        "deleted_by": l.deleted_by,
    }

def _full_name(first: str, last: str) -> str:
    return " ".join(p for p in [(first or "").strip(), (last or "").strip()] if p)

def _require_type(value, kind, field: str):
    if value is not None and not isinstance(value, kind):
        raise ValidationError(f"{field} must be a {'list' if kind is list else 'mapping'}")
    return value

def _bulk_outcome(lead_id: str, lead: dict = None, error: CRMError = None) -> dict:
    if error:
        return {"id": lead_id, "success": False, "error_type": type(error).__name__, "error": str(error)}
    return {"id": lead_id, "success": True, "version": lead["version"]}


class LeadEngine:
    """
    Lead repository: create / update / merge / soft delete / restore / purge.

    Each mutation runs in one Store writer transaction together with its
    activity entries; automation events fire after the commit.
    """

    def __init__(self, store, activity_log, dispatcher):
        self.store = store
        self.activity_log = activity_log
        self.dispatcher = dispatcher

    # --- Reads ---

    async def get_lead(self, lead_id: str) -> dict:
        async with self.store.reader() as session:
            lead = await session.get(Lead, lead_id)
            if not lead:
                raise NotFoundError(f"Lead {lead_id} not found")
            return serialize_lead(lead)

    async def list_leads(self, status: str = None, assigned_to: str = None, tag: str = None,
                         source: str = None, search: str = None) -> list:
        async with self.store.reader() as session:
            stmt = select(Lead).where(Lead.deleted_at.is_(None))
            if status:
                stmt = stmt.where(Lead.status == status)
            if assigned_to:
                stmt = stmt.where(Lead.assigned_to == assigned_to)
            if source:
                stmt = stmt.where(Lead.source == source)
            stmt = stmt.order_by(desc(Lead.created_at))
            leads = (await session.execute(stmt)).scalars().all()

        if tag:
            leads = [l for l in leads if tag in (l.tags or [])]
        if search:
            needle = search.lower()
            leads = [
                l for l in leads
                if needle in (l.full_name or "").lower()
                or needle in (l.email or "").lower()
                or digits_only(search) and digits_only(search) in (l.phone_normalized or "")
            ]
        return [serialize_lead(l) for l in leads]

    async def list_trash(self) -> list:
        async with self.store.reader() as session:
            stmt = select(Lead).where(Lead.deleted_at.is_not(None)).order_by(desc(Lead.deleted_at))
            return [serialize_lead(l) for l in (await session.execute(stmt)).scalars().all()]

    async def check_duplicate(self, phone_raw: str, country_code: str = None) -> dict:
        normalized = normalize_phone(phone_raw, country_code)
        async with self.store.reader() as session:
            existing = await self._find_active_by_phone(session, normalized)
            return {
                "exists": existing is not None,
                "lead": serialize_lead(existing) if existing else None,
                "normalized_phone": normalized,
            }

    # --- Create ---

    async def create_lead(self, data: dict, actor_id: str) -> dict:
        phone_raw = (data.get("phone_raw") or "").strip()
        if not digits_only(phone_raw):
            raise ValidationError("A phone number is required")
        first_name = sanitize_name(data.get("first_name"))
        if not first_name:
            raise ValidationError("First name is required")
        last_name = sanitize_name(data.get("last_name"))
        email = self._check_email(data.get("email"))

        country_code = resolve_country_code(phone_raw, data.get("country_code"))
        normalized = normalize_phone(phone_raw, data.get("country_code"))
        source = data.get("source") or DEFAULT_SOURCE
        source_details = {}
        if source in SOURCE_ENRICHERS:
            source_details = SOURCE_ENRICHERS[source]()
        source_details.update(_require_type(data.get("source_details"), dict, "source_details") or {})
        tags = clean_tags(_require_type(data.get("tags"), list, "tags"))
        custom_fields = dict(_require_type(data.get("custom_fields"), dict, "custom_fields") or {})

        async with self.store.writer() as session:
            existing = await self._find_active_by_phone(session, normalized)
            if existing:
                raise DuplicateLeadError(normalized, existing.id)

            assigned_to = data.get("assigned_to")
            if assigned_to:
                await self._check_agent(session, assigned_to)
            else:
                assigned_to = await assign_next_agent(session)

            now = datetime.utcnow()
            lead = Lead(
                version=1,
                first_name=first_name,
                last_name=last_name,
                full_name=_full_name(first_name, last_name),
                email=email,
                country_code=country_code,
                phone_raw=phone_raw,
                phone_normalized=normalized,
                status=INITIAL_STATUS.value,
                status_updated_at=now,
                source=source,
                source_details=source_details,
                assigned_to=assigned_to,
                tags=tags,
                custom_fields=custom_fields,
                merged_identities={"emails": [], "names": []},
                created_at=now,
                created_by=actor_id,
                updated_at=now,
            )
            session.add(lead)
            try:
                await session.flush()
            except IntegrityError:
                # Another writer on the same database claimed the phone first
                raise DuplicateLeadError(normalized, "unknown")

            await register_tags(session, tags)
            self.activity_log.record(session, lead.id, ActivityType.LEAD_CREATED, {"source": source}, actor_id)
            snapshot = serialize_lead(lead)

        logger.info(f"[LeadEngine] Created lead {snapshot['id']} ({normalized}) assigned to {snapshot['assigned_to']}")
        await self.dispatcher.trigger_webhooks(AutomationEvent.LEAD_CREATED, snapshot)
        return snapshot

    # --- Update ---

    async def update_lead(self, lead_id: str, updates: dict, actor_id: str,
                          expected_version: int = None, silent: bool = False) -> dict:
        """
        Shallow update with optimistic concurrency. A stale `expected_version`
        raises ConflictError and leaves the record untouched; omitting it is
        last-write-wins.
        """
        async with self.store.writer() as session:
            lead = await self._get_active(session, lead_id)
            if expected_version is not None and lead.version != expected_version:
                raise ConflictError(lead_id, expected_version, lead.version)
            events = await self._apply_update(session, lead, updates, actor_id, silent=silent)
            snapshot = serialize_lead(lead)

        logger.info(f"[LeadEngine] Updated lead {lead_id} to v{snapshot['version']} ({', '.join(sorted(updates))})")
        await self._fire(events, snapshot)
        return snapshot

    async def _apply_update(self, session, lead: Lead, updates: dict, actor_id: str,
                            is_bulk: bool = False, silent: bool = False) -> list:
        unknown = set(updates) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

        updates = dict(updates)
        # --- Validate everything before touching the record ---
        if "first_name" in updates:
            updates["first_name"] = sanitize_name(updates["first_name"])
            if not updates["first_name"]:
                raise ValidationError("First name is required")
        if "last_name" in updates:
            updates["last_name"] = sanitize_name(updates["last_name"])
        if "email" in updates:
            updates["email"] = self._check_email(updates["email"])
        if "tags" in updates:
            updates["tags"] = clean_tags(_require_type(updates["tags"], list, "tags"))
        for field in ("custom_fields", "source_details"):
            if field in updates:
                _require_type(updates[field], dict, field)
        if updates.get("payment_details") is not None:
            updates["payment_details"] = self._check_payment(updates["payment_details"])
        if updates.get("assigned_to"):
            await self._check_agent(session, updates["assigned_to"])

        new_status = updates.get("status")
        if new_status is not None:
            updates["status"] = get_status_definition(new_status).slug.value
        status_changed = new_status is not None and updates["status"] != lead.status
        if {"status", "payment_details", "rejection_reason"} & set(updates):
            # Preconditions hold on the record as it will be after this update
            definition = get_status_definition(updates.get("status", lead.status))
            payment = updates["payment_details"] if "payment_details" in updates else lead.payment_details
            reason = updates["rejection_reason"] if "rejection_reason" in updates else lead.rejection_reason
            if definition.requires_payment and not payment:
                raise ValidationError(f"Leads in '{definition.label}' require payment details")
            if definition.requires_rejection_reason and not (reason or "").strip():
                raise ValidationError(f"Leads in '{definition.label}' require a rejection reason")

        if "phone_raw" in updates or "country_code" in updates:
            phone_raw = updates.get("phone_raw", lead.phone_raw)
            if not digits_only(phone_raw):
                raise ValidationError("A phone number is required")
            requested_code = updates.get("country_code", lead.country_code)
            normalized = normalize_phone(phone_raw, requested_code)
            other = await self._find_active_by_phone(session, normalized)
            if other and other.id != lead.id:
                raise DuplicateLeadError(normalized, other.id)
            updates["country_code"] = resolve_country_code(phone_raw, requested_code)
            lead.phone_normalized = normalized

        # --- Apply ---
        old = {
            "status": lead.status,
            "tags": list(lead.tags or []),
            "payment_details": lead.payment_details,
            "assigned_to": lead.assigned_to,
        }
        now = datetime.utcnow()
        for field, value in updates.items():
            setattr(lead, field, value)
        if "first_name" in updates or "last_name" in updates:
            lead.full_name = _full_name(lead.first_name, lead.last_name)
        lead.version += 1
        lead.updated_at = now

        bulk_flag = {"is_bulk": True} if is_bulk else {}
        events = []
        if status_changed and not silent:
            lead.status_updated_at = now
            self.activity_log.record(session, lead.id, ActivityType.STATUS_CHANGED,
                                     {"from": old["status"], "to": lead.status, **bulk_flag}, actor_id)
            events.append(AutomationEvent.STATUS_CHANGED)
        else:
            if status_changed:
                lead.status_updated_at = now
            events.append(AutomationEvent.LEAD_UPDATED)

        if "tags" in updates and updates["tags"] != old["tags"]:
            await register_tags(session, updates["tags"])
            self.activity_log.record(session, lead.id, ActivityType.TAGS_UPDATED,
                                     {"tags": updates["tags"], **bulk_flag}, actor_id)

        if updates.get("payment_details") and not old["payment_details"]:
            self.activity_log.record(session, lead.id, ActivityType.PAYMENT_ADDED,
                                     {"amount": updates["payment_details"]["amount"], **bulk_flag}, actor_id)
            events.append(AutomationEvent.PAYMENT_ADDED)

        if updates.get("assigned_to") and updates["assigned_to"] != old["assigned_to"]:
            self.activity_log.record(session, lead.id, ActivityType.ASSIGNED_TO_CHANGED,
                                     {"from": old["assigned_to"], "to": updates["assigned_to"], **bulk_flag}, actor_id)
            events.append(AutomationEvent.LEAD_ASSIGNED)

        return events

    # --- Merge ---

    async def merge_lead(self, existing_id: str, incoming: dict, actor_id: str) -> dict:
        """
        Folds a duplicate submission into an existing lead. Fills gaps only:
        populated names and email are never overwritten. Repeating the same
        payload adds nothing new to merged_identities or tags.
        """
        incoming_tags = clean_tags(_require_type(incoming.get("tags"), list, "tags"))
        incoming_details = _require_type(incoming.get("source_details"), dict, "source_details")
        email = (incoming.get("email") or "").strip() or None
        if email:
            valid, error, _ = validate_email(email)
            if not valid:
                logger.info(f"[LeadEngine] Ignoring invalid email {email} merged into lead {existing_id}: {error}")
                email = None

        async with self.store.writer() as session:
            lead = await self._get_active(session, existing_id)

            first = sanitize_name(incoming.get("first_name"))
            last = sanitize_name(incoming.get("last_name"))

            if not lead.first_name and first:
                lead.first_name = first
            if not lead.last_name and last:
                lead.last_name = last
            if not lead.email and email:
                lead.email = email
            lead.full_name = _full_name(lead.first_name, lead.last_name)

            identities = lead.merged_identities or {}
            emails = list(identities.get("emails") or [])
            names = list(identities.get("names") or [])
            if email and email != lead.email and email not in emails:
                emails.append(email)
            incoming_name = _full_name(first, last)
            if incoming_name and incoming_name != lead.full_name and incoming_name not in names:
                names.append(incoming_name)
            lead.merged_identities = {"emails": emails, "names": names}

            if incoming_tags:
                lead.tags = clean_tags(list(lead.tags or []) + incoming_tags)
                await register_tags(session, incoming_tags)
            if incoming_details:
                lead.source_details = {**(lead.source_details or {}), **incoming_details}

            lead.version += 1
            lead.updated_at = datetime.utcnow()
            self.activity_log.record(session, lead.id, ActivityType.LEAD_MERGED, {"merged_data": incoming}, actor_id)
            snapshot = serialize_lead(lead)

        logger.info(f"[LeadEngine] Merged incoming submission into lead {existing_id} (v{snapshot['version']})")
        await self.dispatcher.trigger_webhooks(AutomationEvent.LEAD_UPDATED, snapshot)
        return snapshot

    # --- Bulk (per-record atomic, batch not transactional) ---

    async def bulk_update(self, lead_ids: list, updates: dict, actor_id: str) -> list:
        outcomes = []
        for lead_id in lead_ids:
            try:
                async with self.store.writer() as session:
                    lead = await self._get_active(session, lead_id)
                    events = await self._apply_update(session, lead, updates, actor_id, is_bulk=True)
                    snapshot = serialize_lead(lead)
            except CRMError as e:
                logger.warning(f"[LeadEngine] Bulk update skipped lead {lead_id}: {e}")
                outcomes.append(_bulk_outcome(lead_id, error=e))
                continue
            await self._fire(events, snapshot)
            outcomes.append(_bulk_outcome(lead_id, snapshot))
        return outcomes

    async def bulk_reassign(self, lead_ids: list, user_id: str, actor_id: str) -> list:
        return await self.bulk_update(lead_ids, {"assigned_to": user_id}, actor_id)

    async def bulk_add_tags(self, lead_ids: list, tags: list, actor_id: str) -> list:
        tags = clean_tags(tags)
        return await self._bulk_tags(lead_ids, tags, actor_id, ActivityType.TAGS_ADDED,
                                     lambda current: clean_tags(current + tags))

    async def bulk_remove_tags(self, lead_ids: list, tags: list, actor_id: str) -> list:
        tags = clean_tags(tags)
        return await self._bulk_tags(lead_ids, tags, actor_id, ActivityType.TAGS_REMOVED,
                                     lambda current: [t for t in current if t not in tags])

    async def _bulk_tags(self, lead_ids, tags, actor_id, event_type, transform) -> list:
        if not tags:
            raise ValidationError("At least one tag is required")
        outcomes = []
        for lead_id in lead_ids:
            try:
                async with self.store.writer() as session:
                    lead = await self._get_active(session, lead_id)
                    lead.tags = transform(list(lead.tags or []))
                    lead.version += 1
                    lead.updated_at = datetime.utcnow()
                    if event_type == ActivityType.TAGS_ADDED:
                        await register_tags(session, tags)
                    self.activity_log.record(session, lead.id, event_type, {"tags": tags, "is_bulk": True}, actor_id)
                    snapshot = serialize_lead(lead)
            except CRMError as e:
                outcomes.append(_bulk_outcome(lead_id, error=e))
                continue
            await self.dispatcher.trigger_webhooks(AutomationEvent.LEAD_UPDATED, snapshot)
            outcomes.append(_bulk_outcome(lead_id, snapshot))
        return outcomes

    # --- Trash ---

    async def delete_lead(self, lead_id: str, actor_id: str) -> dict:
        snapshot = await self._soft_delete(lead_id, actor_id, is_bulk=False)
        await self.dispatcher.trigger_webhooks(AutomationEvent.LEAD_DELETED, snapshot)
        return snapshot

    async def bulk_delete(self, lead_ids: list, actor_id: str) -> list:
        outcomes = []
        for lead_id in lead_ids:
            try:
                snapshot = await self._soft_delete(lead_id, actor_id, is_bulk=True)
            except CRMError as e:
                outcomes.append(_bulk_outcome(lead_id, error=e))
                continue
            await self.dispatcher.trigger_webhooks(AutomationEvent.LEAD_DELETED, snapshot)
            outcomes.append(_bulk_outcome(lead_id, snapshot))
        return outcomes

    async def _soft_delete(self, lead_id: str, actor_id: str, is_bulk: bool) -> dict:
        async with self.store.writer() as session:
            lead = await self._get_active(session, lead_id)
            now = datetime.utcnow()
            lead.deleted_at = now
            lead.deleted_by = actor_id
            lead.version += 1
            lead.updated_at = now
            self.activity_log.record(session, lead.id, ActivityType.LEAD_DELETED, {"is_bulk": is_bulk}, actor_id)
            snapshot = serialize_lead(lead)
        logger.info(f"[LeadEngine] Moved lead {lead_id} to trash")
        return snapshot

    async def restore_lead(self, lead_id: str, actor_id: str) -> dict:
        async with self.store.writer() as session:
            lead = await session.get(Lead, lead_id)
            if not lead:
                raise NotFoundError(f"Lead {lead_id} not found")
            if not lead.deleted_at:
                raise ValidationError(f"Lead {lead_id} is not in the trash")
            other = await self._find_active_by_phone(session, lead.phone_normalized)
            if other:
                raise DuplicateLeadError(lead.phone_normalized, other.id)

            lead.deleted_at = None
            lead.deleted_by = None
            lead.version += 1
            lead.updated_at = datetime.utcnow()
            self.activity_log.record(session, lead.id, ActivityType.LEAD_RESTORED, {}, actor_id)
            snapshot = serialize_lead(lead)

        logger.info(f"[LeadEngine] Restored lead {lead_id}")
        await self.dispatcher.trigger_webhooks(AutomationEvent.LEAD_UPDATED, snapshot)
        return snapshot

    async def purge_lead(self, lead_id: str):
        """Irreversible. Activities of the purged lead are kept for audit."""
        async with self.store.writer() as session:
            lead = await session.get(Lead, lead_id)
            if not lead:
                raise NotFoundError(f"Lead {lead_id} not found")
            if not lead.deleted_at:
                raise ValidationError("Move the lead to trash before deleting it permanently")
            await session.delete(lead)
        logger.info(f"[LeadEngine] Permanently deleted lead {lead_id}")

    async def empty_trash(self) -> int:
        async with self.store.writer() as session:
            trashed = (await session.execute(select(Lead).where(Lead.deleted_at.is_not(None)))).scalars().all()
            for lead in trashed:
                await session.delete(lead)
        logger.info(f"[LeadEngine] Emptied trash ({len(trashed)} leads)")
        return len(trashed)

    # --- Helpers ---

    async def _fire(self, events: list, snapshot: dict):
        for event in events:
            await self.dispatcher.trigger_webhooks(event, snapshot)

    async def _get_active(self, session, lead_id: str) -> Lead:
        lead = await session.get(Lead, lead_id)
        if not lead or lead.deleted_at:
            raise NotFoundError(f"Lead {lead_id} not found")
        return lead

    async def _find_active_by_phone(self, session, normalized: str):
        stmt = select(Lead).where(Lead.phone_normalized == normalized, Lead.deleted_at.is_(None))
        return (await session.execute(stmt)).scalars().first()

    async def _check_agent(self, session, user_id: str):
        user = await session.get(User, user_id)
        if not user or user.deleted_at:
            raise ValidationError(f"Unknown agent {user_id}")

    def _check_email(self, email):
        email = (email or "").strip()
        if not email:
            return None
        valid, error, warning = validate_email(email)
        if not valid:
            raise ValidationError(error)
        if warning:
            logger.info(f"[LeadEngine] Email warning for {email}: {warning}")
        return email

    def _check_payment(self, payment: dict) -> dict:
        try:
            return PaymentDetails.model_validate(payment).model_dump(exclude_none=True)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid payment details: {e.errors()[0]['msg']}")
