from dataclasses import dataclass
from enum import Enum

SYSTEM_ACTOR = "system"

class LeadStatus(str, Enum):
    NEW_LEAD = "new_lead"
    ELIGIBLE = "eligible"
    NON_ELIGIBLE = "non_eligible"
    INTERVIEW_SCHEDULED = "interview_scheduled"
    FOLLOW_UPS = "follow_ups"
    SELECTED = "selected"
    REJECTED = "rejected"
    NOT_INTERESTED = "not_interested"
    ENROLLED = "enrolled"

@dataclass(frozen=True)
class StatusDefinition:
    slug: LeadStatus
    label: str
    color: str
    order: int
    requires_payment: bool = False
    requires_rejection_reason: bool = False

PIPELINE = [
    StatusDefinition(LeadStatus.NEW_LEAD, "New Lead", "#3B82F6", 1),
    StatusDefinition(LeadStatus.ELIGIBLE, "Eligible", "#10B981", 2),
    StatusDefinition(LeadStatus.NON_ELIGIBLE, "Non Eligible", "#6B7280", 3),
    StatusDefinition(LeadStatus.INTERVIEW_SCHEDULED, "Interview Scheduled", "#F59E0B", 4),
    StatusDefinition(LeadStatus.FOLLOW_UPS, "Follow-ups", "#8B5CF6", 5),
    StatusDefinition(LeadStatus.SELECTED, "Selected", "#06B6D4", 6),
    StatusDefinition(LeadStatus.REJECTED, "Rejected", "#EF4444", 7, requires_rejection_reason=True),
    StatusDefinition(LeadStatus.NOT_INTERESTED, "Not Interested", "#9CA3AF", 8),
    StatusDefinition(LeadStatus.ENROLLED, "Enrolled", "#7C3AED", 9, requires_payment=True),
]

STATUS_DEFINITIONS = {s.slug: s for s in PIPELINE}
INITIAL_STATUS = PIPELINE[0].slug

def get_status_definition(value) -> StatusDefinition:
    """Resolves a status slug; unknown slugs are rejected (no free-form stages)."""
    from services.errors import ValidationError
    try:
        return STATUS_DEFINITIONS[LeadStatus(value)]
    except ValueError:
        raise ValidationError(f"Unknown pipeline status '{value}'")

class ActivityType(str, Enum):
    LEAD_CREATED = "lead_created"
    LEAD_MERGED = "lead_updated (merged)"
    STATUS_CHANGED = "status_changed"
    TAGS_UPDATED = "tags_updated"
    TAGS_ADDED = "tags_added"
    TAGS_REMOVED = "tags_removed"
    PAYMENT_ADDED = "payment_added"
    ASSIGNED_TO_CHANGED = "assigned_to_changed"
    LEAD_DELETED = "lead_deleted"
    LEAD_RESTORED = "lead_restored"
    TAG_RENAMED = "tag_renamed"
    TAG_MERGED = "tag_merged"
    TAG_DELETED = "tag_deleted"
    NOTE_ADDED = "note_added"
    CALL_LOGGED = "call_logged"
    EMAIL_SENT = "email_sent"
    EMAIL_FAILED = "email_failed"
    WHATSAPP_TRIGGERED = "whatsapp_triggered"
    WHATSAPP_FAILED = "whatsapp_failed"
    WEBHOOK_TRIGGERED = "webhook_triggered"
    OTHER = "other"

    @classmethod
    def _missing_(cls, value):
        # Forward compatibility: unknown stored event types still load
        return cls.OTHER

class AutomationEvent(str, Enum):
    LEAD_CREATED = "lead_created"
    LEAD_UPDATED = "lead_updated"
    STATUS_CHANGED = "status_changed"
    LEAD_DELETED = "lead_deleted"
    PAYMENT_ADDED = "payment_added"
    LEAD_ASSIGNED = "lead_assigned"
    OTHER = "other"

    @classmethod
    def _missing_(cls, value):
        return cls.OTHER

class Channel(str, Enum):
    EMAIL = "email"
    WHATSAPP = "whatsapp"

class Role(str, Enum):
    SUPERADMIN = "superadmin"
    TEAM_MEMBER = "team_member"

class CallStatus(str, Enum):
    COMPLETED = "Completed"
    NO_SHOW = "No-Show"
    CANCELLED = "Cancelled"
    RESCHEDULED = "Rescheduled"
