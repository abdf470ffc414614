from fastapi import FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import os
import logging
from contextlib import asynccontextmanager
from dotenv import load_dotenv

# Load .env before project modules read their settings at import time
load_dotenv(".env.dev" if os.getenv("ENV") == "dev" else ".env")

# Configure Logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)
from pydantic import BaseModel
from typing import List, Optional
from database.session import AsyncSessionLocal
from services.store import Store
from services.errors import (
    CRMError, AutomationDeliveryError, ConflictError, DuplicateLeadError,
    LastSuperAdminError, NotFoundError, ValidationError,
)
from services.pipeline import PIPELINE, SYSTEM_ACTOR, Role
from services.activity_service import ActivityLog
from services.tag_service import TagRegistry
from services.user_service import UserService
from services.lead_service import LeadEngine
from services.automation_service import IntegrationStore, build_dispatcher, redeliver_automation_task, RETRY_DELAYS
from services.template_service import TemplateLibrary, build_payment_link, seed_default_templates
from celery_app import celery_app # Ensure Celery is loaded for task dispatch

SUPERADMIN_EMAIL = os.getenv("SUPERADMIN_EMAIL", "admin@mastry.in")
SUPERADMIN_NAME = os.getenv("SUPERADMIN_NAME", "Super Admin")
SUPERADMIN_PASSWORD = os.getenv("SUPERADMIN_PASSWORD")

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Auto-create tables (no alembic migrations yet)
    from database.session import engine
    from database.base import Base
    from database.models import general, crm
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    await user_service.bootstrap(SUPERADMIN_EMAIL, SUPERADMIN_NAME, SUPERADMIN_PASSWORD)
    async with store.writer() as session:
        await seed_default_templates(session)
    yield

app = FastAPI(
    title="Cohort CRM API",
    description="Lead lifecycle engine for cohort admissions (SQL + Celery)",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origin_regex='.*', # Allow all origins for dev
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Engine wiring (one Store per process: single writer) ---
store = Store(AsyncSessionLocal)
activity_log = ActivityLog(store)
dispatcher = build_dispatcher(store, activity_log)
tag_registry = TagRegistry(store, activity_log)
user_service = UserService(store)
lead_engine = LeadEngine(store, activity_log, dispatcher)
integrations = IntegrationStore(store)
templates = TemplateLibrary(store)

ERROR_STATUS = {
    DuplicateLeadError: 409,
    ConflictError: 409,
    NotFoundError: 404,
    ValidationError: 422,
    LastSuperAdminError: 403,
    AutomationDeliveryError: 502,
}

@app.exception_handler(CRMError)
async def crm_error_handler(request: Request, exc: CRMError):
    status_code = ERROR_STATUS.get(type(exc), 400)
    body = {"detail": str(exc), "error_type": type(exc).__name__}
    if isinstance(exc, DuplicateLeadError):
        body["existing_lead_id"] = exc.existing_lead_id
    if isinstance(exc, ConflictError):
        body["current_version"] = exc.current_version
    if isinstance(exc, AutomationDeliveryError):
        body.update({"error_code": exc.code, "retryable": exc.retryable})
    return JSONResponse(status_code=status_code, content=body)

@app.get("/")
def read_root():
    return {"status": "ok", "message": "Cohort CRM API is running (PostgreSQL + Celery)"}

@app.get("/health")
def health_check():
    return {"status": "healthy"}

@app.get("/api/pipeline")
async def read_pipeline():
    return [
        {"slug": s.slug.value, "label": s.label, "color": s.color, "order": s.order}
        for s in PIPELINE
    ]

# --- Leads ---

class LeadCreate(BaseModel):
    first_name: str
    last_name: str = ""
    email: Optional[str] = None
    phone_raw: str
    country_code: Optional[str] = None
    source: Optional[str] = None
    source_details: Optional[dict] = None
    assigned_to: Optional[str] = None
    tags: List[str] = []
    custom_fields: Optional[dict] = None

class LeadUpdate(BaseModel):
    updates: dict
    expected_version: Optional[int] = None
    silent: bool = False

class DuplicateCheck(BaseModel):
    phone_raw: str
    country_code: Optional[str] = None

class BulkRequest(BaseModel):
    lead_ids: List[str]

class BulkUpdateRequest(BulkRequest):
    updates: dict

class BulkTagsRequest(BulkRequest):
    tags: List[str]

class BulkReassignRequest(BulkRequest):
    user_id: str

@app.get("/api/leads")
async def read_leads(status: str = None, assigned_to: str = None, tag: str = None,
                     source: str = None, search: str = None):
    return await lead_engine.list_leads(status=status, assigned_to=assigned_to, tag=tag, source=source, search=search)

@app.post("/api/leads", status_code=201)
async def create_lead_endpoint(body: LeadCreate, x_actor_id: str = Header(SYSTEM_ACTOR)):
    return await lead_engine.create_lead(body.model_dump(exclude_none=True), x_actor_id)

@app.post("/api/leads/check-duplicate")
async def check_duplicate_endpoint(body: DuplicateCheck):
    return await lead_engine.check_duplicate(body.phone_raw, body.country_code)

@app.get("/api/leads/trash")
async def read_trash():
    return await lead_engine.list_trash()

@app.delete("/api/leads/trash")
async def empty_trash_endpoint():
    count = await lead_engine.empty_trash()
    return {"status": "success", "purged": count}

@app.get("/api/leads/{lead_id}")
async def read_lead(lead_id: str):
    return await lead_engine.get_lead(lead_id)

@app.patch("/api/leads/{lead_id}")
async def update_lead_endpoint(lead_id: str, body: LeadUpdate, x_actor_id: str = Header(SYSTEM_ACTOR)):
    return await lead_engine.update_lead(
        lead_id, body.updates, x_actor_id,
        expected_version=body.expected_version, silent=body.silent,
    )

@app.post("/api/leads/{lead_id}/merge")
async def merge_lead_endpoint(lead_id: str, incoming: dict, x_actor_id: str = Header(SYSTEM_ACTOR)):
    return await lead_engine.merge_lead(lead_id, incoming, x_actor_id)

@app.delete("/api/leads/{lead_id}")
async def delete_lead_endpoint(lead_id: str, x_actor_id: str = Header(SYSTEM_ACTOR)):
    return await lead_engine.delete_lead(lead_id, x_actor_id)

@app.post("/api/leads/{lead_id}/restore")
async def restore_lead_endpoint(lead_id: str, x_actor_id: str = Header(SYSTEM_ACTOR)):
    return await lead_engine.restore_lead(lead_id, x_actor_id)

@app.delete("/api/leads/{lead_id}/purge")
async def purge_lead_endpoint(lead_id: str):
    await lead_engine.purge_lead(lead_id)
    return {"status": "deleted", "id": lead_id}

@app.post("/api/leads/bulk/update")
async def bulk_update_endpoint(body: BulkUpdateRequest, x_actor_id: str = Header(SYSTEM_ACTOR)):
    return {"results": await lead_engine.bulk_update(body.lead_ids, body.updates, x_actor_id)}

@app.post("/api/leads/bulk/tags/add")
async def bulk_add_tags_endpoint(body: BulkTagsRequest, x_actor_id: str = Header(SYSTEM_ACTOR)):
    return {"results": await lead_engine.bulk_add_tags(body.lead_ids, body.tags, x_actor_id)}

@app.post("/api/leads/bulk/tags/remove")
async def bulk_remove_tags_endpoint(body: BulkTagsRequest, x_actor_id: str = Header(SYSTEM_ACTOR)):
    return {"results": await lead_engine.bulk_remove_tags(body.lead_ids, body.tags, x_actor_id)}

@app.post("/api/leads/bulk/delete")
async def bulk_delete_endpoint(body: BulkRequest, x_actor_id: str = Header(SYSTEM_ACTOR)):
    return {"results": await lead_engine.bulk_delete(body.lead_ids, x_actor_id)}

@app.post("/api/leads/bulk/reassign")
async def bulk_reassign_endpoint(body: BulkReassignRequest, x_actor_id: str = Header(SYSTEM_ACTOR)):
    return {"results": await lead_engine.bulk_reassign(body.lead_ids, body.user_id, x_actor_id)}

# --- Activities ---

class NoteRequest(BaseModel):
    text: str

class CallRequest(BaseModel):
    duration: str
    status: str
    recording_url: Optional[str] = None
    notes: Optional[str] = None

class CallSyncRequest(BaseModel):
    phone_raw: str
    duration: str = "15:00"

@app.get("/api/leads/{lead_id}/activities")
async def read_activities(lead_id: str):
    return await activity_log.get_activities_for_lead(lead_id)

@app.post("/api/leads/{lead_id}/notes", status_code=201)
async def add_note(lead_id: str, body: NoteRequest, x_actor_id: str = Header(SYSTEM_ACTOR)):
    return await activity_log.log_note(lead_id, body.text, x_actor_id)

@app.post("/api/leads/{lead_id}/calls", status_code=201)
async def add_call(lead_id: str, body: CallRequest, x_actor_id: str = Header(SYSTEM_ACTOR)):
    return await activity_log.log_call(
        lead_id, body.duration, body.status, x_actor_id,
        recording_url=body.recording_url, notes=body.notes,
    )

@app.post("/api/calls/sync")
async def sync_call(body: CallSyncRequest, x_actor_id: str = Header(SYSTEM_ACTOR)):
    matched = await activity_log.sync_external_call(body.phone_raw, x_actor_id, duration=body.duration)
    return {"matched": matched}

@app.get("/api/calls")
async def read_call_logs():
    return await activity_log.get_all_call_logs()

# --- Tags ---

class TagRequest(BaseModel):
    name: str

class TagPairRequest(BaseModel):
    old: str
    new: str

@app.get("/api/tags")
async def read_tags():
    return await tag_registry.list_tags()

@app.post("/api/tags", status_code=201)
async def create_tag_endpoint(body: TagRequest):
    return await tag_registry.create_tag(body.name)

@app.post("/api/tags/rename")
async def rename_tag_endpoint(body: TagPairRequest, x_actor_id: str = Header(SYSTEM_ACTOR)):
    return await tag_registry.rename_tag(body.old, body.new, x_actor_id)

@app.post("/api/tags/merge")
async def merge_tag_endpoint(body: TagPairRequest, x_actor_id: str = Header(SYSTEM_ACTOR)):
    return await tag_registry.merge_tag(body.old, body.new, x_actor_id)

@app.delete("/api/tags/{name}")
async def delete_tag_endpoint(name: str, x_actor_id: str = Header(SYSTEM_ACTOR)):
    return await tag_registry.delete_tag(name, x_actor_id)

# --- Automations ---

class AutomationRequest(BaseModel):
    channel: str
    content: str
    subject: Optional[str] = None
    template_id: Optional[str] = None
    # Schedule a Celery redelivery when the failure is retryable
    retry: bool = False

class StatusAutomationRequest(BaseModel):
    status: str
    service_id: Optional[str] = None
    coupon_code: Optional[str] = None

@app.post("/api/leads/{lead_id}/automations")
async def send_automation(lead_id: str, body: AutomationRequest, x_actor_id: str = Header(SYSTEM_ACTOR)):
    try:
        activity = await dispatcher.trigger_automation(
            body.channel, lead_id, body.content, x_actor_id,
            subject=body.subject, template_id=body.template_id,
        )
    except AutomationDeliveryError as e:
        if body.retry and e.retryable:
            countdown = RETRY_DELAYS.get(e.code, 60)
            redeliver_automation_task.apply_async(
                args=[body.channel, lead_id, body.content, x_actor_id, body.subject],
                countdown=countdown,
            )
            logger.info(f"[Automation] Redelivery of {body.channel} to {lead_id} scheduled in {countdown}s")
        raise
    return {"status": "sent", "activity": activity}

@app.post("/api/leads/{lead_id}/status-automations")
async def send_status_automations(lead_id: str, body: StatusAutomationRequest, x_actor_id: str = Header(SYSTEM_ACTOR)):
    payment_link = None
    if body.service_id:
        lead = await lead_engine.get_lead(lead_id)
        payment_link = build_payment_link(body.service_id, body.coupon_code, lead)
    outcomes = await dispatcher.trigger_status_automations(lead_id, body.status, x_actor_id, payment_link=payment_link)
    return {"results": outcomes}

# --- Webhooks ---

class WebhookRequest(BaseModel):
    name: str
    webhook_url: str
    triggers: List[str] = []
    is_active: bool = True

@app.get("/api/webhooks")
async def read_webhooks():
    return await dispatcher.list_webhooks()

@app.post("/api/webhooks", status_code=201)
async def create_webhook(body: WebhookRequest):
    return await dispatcher.save_webhook(body.name, body.webhook_url, body.triggers, body.is_active)

@app.put("/api/webhooks/{webhook_id}")
async def update_webhook(webhook_id: str, body: WebhookRequest):
    return await dispatcher.save_webhook(body.name, body.webhook_url, body.triggers, body.is_active, webhook_id=webhook_id)

@app.delete("/api/webhooks/{webhook_id}")
async def delete_webhook_endpoint(webhook_id: str):
    await dispatcher.delete_webhook(webhook_id)
    return {"status": "deleted", "id": webhook_id}

# --- Templates ---

class TemplateRequest(BaseModel):
    channel: str
    name: str
    status_trigger: str
    body: str
    subject: Optional[str] = None
    provider_template_id: Optional[str] = None
    is_active: bool = True

@app.get("/api/templates")
async def read_templates(channel: Optional[str] = None):
    return await templates.list_templates(channel)

@app.post("/api/templates", status_code=201)
async def create_template(body: TemplateRequest):
    return await templates.save_template(**body.model_dump())

@app.put("/api/templates/{template_id}")
async def update_template(template_id: str, body: TemplateRequest):
    return await templates.save_template(**body.model_dump(), template_id=template_id)

@app.delete("/api/templates/{template_id}")
async def delete_template_endpoint(template_id: str):
    await templates.delete_template(template_id)
    return {"status": "deleted", "id": template_id}

# --- Users ---

class InviteRequest(BaseModel):
    email: str
    full_name: str
    role: str = Role.TEAM_MEMBER.value
    password: Optional[str] = None

class LoginRequest(BaseModel):
    email: str
    password: str

class ActiveRequest(BaseModel):
    is_active: bool

@app.get("/api/users")
async def read_users():
    return await user_service.list_users()

@app.post("/api/users", status_code=201)
async def invite_user_endpoint(body: InviteRequest):
    return await user_service.invite_user(body.email, body.full_name, body.role, body.password)

@app.delete("/api/users/{user_id}")
async def delete_user_endpoint(user_id: str):
    await user_service.delete_user(user_id)
    return {"status": "deleted", "id": user_id}

@app.post("/api/users/{user_id}/active")
async def set_user_active_endpoint(user_id: str, body: ActiveRequest):
    return await user_service.set_user_active(user_id, body.is_active)

@app.post("/api/users/{user_id}/toggle")
async def toggle_user_endpoint(user_id: str):
    return await user_service.toggle_user_status(user_id)

@app.post("/api/auth/login")
async def login_endpoint(body: LoginRequest):
    user = await user_service.authenticate(body.email, body.password)
    if not user:
        return JSONResponse(status_code=401, content={"detail": "Invalid credentials"})
    return {"status": "success", "user": user}

# --- Integrations ---

class IntegrationRequest(BaseModel):
    enabled: bool = True
    settings: dict = {}

@app.put("/api/integrations/{provider}")
async def save_integration(provider: str, body: IntegrationRequest):
    return await integrations.save(provider, body.enabled, body.settings)
