import logging
from datetime import datetime
from sqlalchemy import select
from database.models.crm import Lead, TagDefinition
from services.pipeline import ActivityType
from services.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


def clean_tags(tags) -> list:
    """Strips blanks and de-duplicates while keeping insertion order."""
    seen = []
    for t in tags or []:
        t = (t or "").strip()
        if t and t not in seen:
            seen.append(t)
    return seen


async def register_tags(session, names):
    """Idempotently adds tags to the registry inside the caller's transaction."""
    names = clean_tags(names)
    if not names:
        return
    result = await session.execute(select(TagDefinition.name).where(TagDefinition.name.in_(names)))
    known = set(result.scalars().all())
    for name in names:
        if name not in known:
            session.add(TagDefinition(name=name, created_at=datetime.utcnow()))
    await session.flush()


class TagRegistry:
    def __init__(self, store, activity_log):
        self.store = store
        self.activity_log = activity_log

    async def create_tag(self, name: str) -> list:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Tag name is required")
        async with self.store.writer() as session:
            await register_tags(session, [name])
        logger.info(f"[TagRegistry] Created tag '{name}'")
        return await self.list_tags()

    async def list_tags(self) -> list:
        """Each known tag with its live count across non-deleted leads, zero counts included."""
        async with self.store.reader() as session:
            registry = (await session.execute(select(TagDefinition.name).order_by(TagDefinition.id))).scalars().all()
            lead_tags = (await session.execute(select(Lead.tags).where(Lead.deleted_at.is_(None)))).scalars().all()

        counts = {name: 0 for name in registry}
        for tags in lead_tags:
            for t in clean_tags(tags):
                counts[t] = counts.get(t, 0) + 1
        return [{"name": name, "count": count} for name, count in counts.items()]

    async def rename_tag(self, old: str, new: str, actor_id: str) -> dict:
        old, new = self._check_pair(old, new)
        async with self.store.writer() as session:
            affected = await self._replace_on_leads(session, old, new, ActivityType.TAG_RENAMED, actor_id)
            old_row = await self._get_definition(session, old)
            new_row = await self._get_definition(session, new)
            if not old_row and not affected:
                raise NotFoundError(f"Tag '{old}' not found")

            if old_row and new_row:
                # `new` already had its own slot; collapse into it
                await session.delete(old_row)
            elif old_row:
                old_row.name = new
            elif not new_row:
                session.add(TagDefinition(name=new, created_at=datetime.utcnow()))

        logger.info(f"[TagRegistry] Renamed '{old}' -> '{new}' on {affected} leads")
        return {"affected": affected, "tags": await self.list_tags()}

    async def merge_tag(self, old: str, new: str, actor_id: str) -> dict:
        old, new = self._check_pair(old, new)
        async with self.store.writer() as session:
            affected = await self._replace_on_leads(session, old, new, ActivityType.TAG_MERGED, actor_id)
            old_row = await self._get_definition(session, old)
            if not old_row and not affected:
                raise NotFoundError(f"Tag '{old}' not found")
            if old_row:
                await session.delete(old_row)
            await session.flush()
            await register_tags(session, [new])

        logger.info(f"[TagRegistry] Merged '{old}' into '{new}' on {affected} leads")
        return {"affected": affected, "tags": await self.list_tags()}

    async def delete_tag(self, name: str, actor_id: str) -> dict:
        name = (name or "").strip()
        async with self.store.writer() as session:
            affected = 0
            for lead in await self._leads_with(session, name):
                lead.tags = [t for t in lead.tags if t != name]
                self._touch(lead)
                self.activity_log.record(session, lead.id, ActivityType.TAG_DELETED, {"tag": name}, actor_id)
                affected += 1

            row = await self._get_definition(session, name)
            if not row and not affected:
                raise NotFoundError(f"Tag '{name}' not found")
            if row:
                await session.delete(row)

        logger.info(f"[TagRegistry] Deleted tag '{name}' from {affected} leads")
        return {"affected": affected, "tags": await self.list_tags()}

    # --- Helpers ---

    def _check_pair(self, old: str, new: str):
        old, new = (old or "").strip(), (new or "").strip()
        if not old or not new:
            raise ValidationError("Both the source and target tag names are required")
        if old == new:
            raise ValidationError("Source and target tag names must differ")
        return old, new

    async def _replace_on_leads(self, session, old: str, new: str, event_type: ActivityType, actor_id: str) -> int:
        affected = 0
        for lead in await self._leads_with(session, old):
            lead.tags = clean_tags([new if t == old else t for t in lead.tags])
            self._touch(lead)
            self.activity_log.record(session, lead.id, event_type, {"old": old, "new": new}, actor_id)
            affected += 1
        return affected

    async def _leads_with(self, session, tag: str) -> list:
        # JSON containment differs per database; filter Python-side.
        # Trashed leads are rewritten too so a restore keeps the vocabulary consistent.
        leads = (await session.execute(select(Lead).order_by(Lead.created_at))).scalars().all()
        return [l for l in leads if tag in (l.tags or [])]

    async def _get_definition(self, session, name: str):
        result = await session.execute(select(TagDefinition).where(TagDefinition.name == name))
        return result.scalar_one_or_none()

    def _touch(self, lead):
        lead.version += 1
        lead.updated_at = datetime.utcnow()
