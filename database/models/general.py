from sqlalchemy import Column, String, Boolean, JSON, DateTime, Text
from datetime import datetime
import uuid
from ..base import Base

class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, index=True)
    full_name = Column(String)
    password_hash = Column(String, nullable=True)
    role = Column(String, default="team_member") # superadmin, team_member
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    last_login = Column(DateTime, nullable=True)
    deleted_at = Column(DateTime, nullable=True)

class WebhookSubscription(Base):
    __tablename__ = "webhook_subscriptions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String, nullable=False)
    webhook_url = Column(String, nullable=False)
    triggers = Column(JSON, default=list) # ["lead_created", "status_changed"]
    is_active = Column(Boolean, default=True)
    last_triggered = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

class MessageTemplate(Base):
    """Email / WhatsApp template fired when a lead enters `status_trigger`."""
    __tablename__ = "message_templates"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    channel = Column(String, nullable=False) # email, whatsapp
    name = Column(String)
    status_trigger = Column(String, index=True)
    subject = Column(String, nullable=True) # Email only
    body = Column(Text)
    provider_template_id = Column(String, nullable=True) # WhatsApp only
    is_active = Column(Boolean, default=True)

class IntegrationConfig(Base):
    """Provider credentials (smtp, whatsapp, trafft...). Secret keys are encrypted."""
    __tablename__ = "integration_configs"

    provider = Column(String, primary_key=True)
    enabled = Column(Boolean, default=False)
    settings = Column(JSON, default=dict)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
