import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import List, Optional, Tuple
from database.models.crm import AssignmentRotation

logger = logging.getLogger(__name__)

ROTATION_ID = 1


@dataclass(frozen=True)
class RotationState:
    last_assigned_user_id: Optional[str] = None
    eligible_user_ids: List[str] = field(default_factory=list)


def next_agent(state: RotationState) -> Tuple[Optional[str], RotationState]:
    """
    Round robin over the eligible agents.

    Returns (agent_id, new_state); agent_id is None when nobody is eligible.
    If the last assigned agent dropped out of eligibility the rotation
    restarts at the first eligible agent.
    """
    eligible = state.eligible_user_ids
    if not eligible:
        return None, state

    next_index = 0
    if state.last_assigned_user_id in eligible:
        next_index = (eligible.index(state.last_assigned_user_id) + 1) % len(eligible)

    agent_id = eligible[next_index]
    return agent_id, replace(state, last_assigned_user_id=agent_id)


def add_eligible(state: RotationState, user_id: str) -> RotationState:
    """Appends at the end of the current order (invite / reactivation)."""
    if user_id in state.eligible_user_ids:
        return state
    return replace(state, eligible_user_ids=[*state.eligible_user_ids, user_id])


def remove_eligible(state: RotationState, user_id: str) -> RotationState:
    last = None if state.last_assigned_user_id == user_id else state.last_assigned_user_id
    return RotationState(
        last_assigned_user_id=last,
        eligible_user_ids=[u for u in state.eligible_user_ids if u != user_id],
    )


# --- Persistence (inside a Store writer/reader session) ---

async def load_rotation(session) -> RotationState:
    row = await session.get(AssignmentRotation, ROTATION_ID)
    if not row:
        return RotationState()
    return RotationState(
        last_assigned_user_id=row.last_assigned_user_id,
        eligible_user_ids=list(row.eligible_user_ids or []),
    )


async def save_rotation(session, state: RotationState):
    row = await session.get(AssignmentRotation, ROTATION_ID)
    if not row:
        row = AssignmentRotation(id=ROTATION_ID)
        session.add(row)
    row.last_assigned_user_id = state.last_assigned_user_id
    row.eligible_user_ids = list(state.eligible_user_ids)
    row.updated_at = datetime.utcnow()


async def assign_next_agent(session) -> Optional[str]:
    state = await load_rotation(session)
    agent_id, new_state = next_agent(state)
    if agent_id:
        await save_rotation(session, new_state)
        logger.info(f"[Rotation] Next agent {agent_id} ({len(new_state.eligible_user_ids)} eligible)")
    else:
        logger.warning("[Rotation] No eligible agents; lead left unassigned")
    return agent_id
