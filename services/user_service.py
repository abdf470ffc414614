from passlib.context import CryptContext
import logging
from datetime import datetime
from sqlalchemy import select
from database.models.general import User
from services.pipeline import Role
from services.errors import LastSuperAdminError, NotFoundError, ValidationError
from services.rotation_service import load_rotation, save_rotation, add_eligible, remove_eligible, RotationState

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
logger = logging.getLogger(__name__)

def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)

def get_password_hash(password):
    return pwd_context.hash(password)

def serialize_user(u: User) -> dict:
    return {
        "id": u.id,
        "email": u.email,
        "full_name": u.full_name,
        "role": u.role,
        "is_active": u.is_active,
        "created_at": u.created_at,
        "last_login": u.last_login,
    }

class UserService:
    """Agents and the rotation eligibility list that follows them."""

    def __init__(self, store):
        self.store = store

    async def bootstrap(self, email: str, full_name: str, password: str = None):
        """Seeds the first superadmin and the rotation singleton on an empty database."""
        async with self.store.writer() as session:
            existing = (await session.execute(select(User).limit(1))).scalars().first()
            if existing:
                return None

            user = User(
                email=email.lower(),
                full_name=full_name,
                role=Role.SUPERADMIN.value,
                is_active=True,
                password_hash=get_password_hash(password) if password else None,
                created_at=datetime.utcnow(),
            )
            session.add(user)
            await session.flush()
            await save_rotation(session, RotationState(eligible_user_ids=[user.id]))
            logger.info(f"[Users] Bootstrapped superadmin {user.email}")
            return serialize_user(user)

    async def list_users(self) -> list:
        async with self.store.reader() as session:
            result = await session.execute(
                select(User).where(User.deleted_at.is_(None)).order_by(User.created_at)
            )
            return [serialize_user(u) for u in result.scalars().all()]

    async def invite_user(self, email: str, full_name: str, role: str = Role.TEAM_MEMBER.value, password: str = None) -> dict:
        try:
            role = Role(role).value
        except ValueError:
            raise ValidationError(f"Unknown role '{role}'")
        email = (email or "").strip().lower()
        if not email:
            raise ValidationError("Email is required")

        async with self.store.writer() as session:
            result = await session.execute(select(User).where(User.email == email))
            if result.scalars().first():
                raise ValidationError("User already exists")

            user = User(
                email=email,
                full_name=full_name,
                role=role,
                is_active=True,
                password_hash=get_password_hash(password) if password else None,
                created_at=datetime.utcnow(),
            )
            session.add(user)
            await session.flush()

            state = await load_rotation(session)
            await save_rotation(session, add_eligible(state, user.id))
            logger.info(f"[Users] Invited {email} as {role}")
            return serialize_user(user)

    async def delete_user(self, user_id: str):
        async with self.store.writer() as session:
            user = await self._get(session, user_id)
            await self._guard_last_superadmin(session, user)

            user.is_active = False
            user.deleted_at = datetime.utcnow()

            state = await load_rotation(session)
            await save_rotation(session, remove_eligible(state, user_id))
            logger.info(f"[Users] Deleted {user.email}")

    async def set_user_active(self, user_id: str, active: bool) -> dict:
        async with self.store.writer() as session:
            user = await self._get(session, user_id)
            if user.is_active == active:
                return serialize_user(user)
            if not active:
                await self._guard_last_superadmin(session, user)

            user.is_active = active
            state = await load_rotation(session)
            state = add_eligible(state, user_id) if active else remove_eligible(state, user_id)
            await save_rotation(session, state)
            logger.info(f"[Users] {'Activated' if active else 'Deactivated'} {user.email}")
            return serialize_user(user)

    async def toggle_user_status(self, user_id: str) -> dict:
        async with self.store.reader() as session:
            user = await session.get(User, user_id)
            if not user or user.deleted_at:
                raise NotFoundError("User not found")
            current = user.is_active
        return await self.set_user_active(user_id, not current)

    async def authenticate(self, email: str, password: str):
        async with self.store.writer() as session:
            result = await session.execute(select(User).where(User.email == (email or "").lower()))
            user = result.scalars().first()
            if not user or user.deleted_at or not user.password_hash:
                return None
            if not verify_password(password, user.password_hash):
                return None
            if not user.is_active:
                raise ValidationError("Account is inactive")
            user.last_login = datetime.utcnow()
            return serialize_user(user)

    async def get_user_name(self, user_id: str):
        if not user_id:
            return None
        async with self.store.reader() as session:
            user = await session.get(User, user_id)
            return user.full_name if user else None

    async def _get(self, session, user_id: str) -> User:
        user = await session.get(User, user_id)
        if not user or user.deleted_at:
            raise NotFoundError("User not found")
        return user

    async def _guard_last_superadmin(self, session, user: User):
        if user.role != Role.SUPERADMIN.value:
            return
        result = await session.execute(
            select(User).where(
                User.role == Role.SUPERADMIN.value,
                User.is_active.is_(True),
                User.deleted_at.is_(None),
                User.id != user.id,
            )
        )
        if not result.scalars().first():
            raise LastSuperAdminError("Cannot delete or deactivate the last SuperAdmin account.")
