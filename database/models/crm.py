from sqlalchemy import Column, Integer, String, ForeignKey, JSON, DateTime, Text, Index, text
from datetime import datetime
import uuid
from ..base import Base

class Lead(Base):
    __tablename__ = "leads"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    version = Column(Integer, nullable=False, default=1) # Optimistic concurrency counter

    first_name = Column(String, default="")
    last_name = Column(String, default="")
    full_name = Column(String, default="")
    email = Column(String, index=True)
    country_code = Column(String, default="+91")
    phone_raw = Column(String)
    phone_normalized = Column(String, index=True) # Dedup key, e.g. +919876543210

    status = Column(String, default="new_lead", index=True)
    status_updated_at = Column(DateTime, nullable=True)
    source = Column(String, default="Manual Entry")
    source_details = Column(JSON, default=dict) # {"Meta Lead Form": {...}}

    assigned_to = Column(String, ForeignKey("users.id"), nullable=True)
    tags = Column(JSON, default=list)
    custom_fields = Column(JSON, default=dict)

    payment_details = Column(JSON, nullable=True) # amount, mode, transaction_id, coupon_code, emi_details
    rejection_reason = Column(Text, nullable=True)
    merged_identities = Column(JSON, default=lambda: {"emails": [], "names": []})

    created_at = Column(DateTime, default=datetime.utcnow)
    created_by = Column(String)
    updated_at = Column(DateTime, default=datetime.utcnow)
    deleted_at = Column(DateTime, nullable=True) # Soft delete (trash)
    deleted_by = Column(String, nullable=True)

    __table_args__ = (
        # Only leads outside the trash compete for a phone number
        Index(
            "uq_leads_active_phone",
            "phone_normalized",
            unique=True,
            postgresql_where=text("deleted_at IS NULL"),
            sqlite_where=text("deleted_at IS NULL"),
        ),
    )

class LeadActivity(Base):
    __tablename__ = "lead_activities"

    id = Column(Integer, primary_key=True, index=True)
    # No FK: activities outlive purged leads
    lead_id = Column(String, index=True)

    event_type = Column(String, index=True) # status_changed, tags_updated, email_failed, webhook_triggered...
    event_data = Column(JSON, default=dict) # e.g. {"from": "new_lead", "to": "eligible"}
    performed_by = Column(String) # user_id or 'system'
    timestamp = Column(DateTime, default=datetime.utcnow, index=True)

class AssignmentRotation(Base):
    """Singleton row (id=1) holding the round-robin pointer."""
    __tablename__ = "assignment_rotation"

    id = Column(Integer, primary_key=True)
    last_assigned_user_id = Column(String, nullable=True)
    eligible_user_ids = Column(JSON, default=list)
    updated_at = Column(DateTime, default=datetime.utcnow)

class TagDefinition(Base):
    """Known tags, including ones no lead currently carries."""
    __tablename__ = "tag_definitions"

    id = Column(Integer, primary_key=True, index=True) # Preserves display order
    name = Column(String, unique=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
