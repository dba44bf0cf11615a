from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import (
    ActionStatus,
    DecisionLog,
    LeadScore,
    Memory,
    PendingAction,
    Thought,
    utcnow,
)


# ======================================================
# PENDING ACTIONS
# ======================================================

async def create_pending_action(
    session: AsyncSession,
    lead_id: int,
    action_type: str,
    action_data: dict[str, Any] | None = None,
    risk_score: int | None = None,
    priority: str | None = None,
    reasoning: str | None = None,
) -> PendingAction:
    action = PendingAction(
        lead_id=lead_id,
        action_type=action_type,
        action_data=action_data or {},
        risk_score=risk_score,
        priority=priority,
        reasoning=reasoning,
        status=ActionStatus.PENDING.value,
    )
    session.add(action)
    await session.flush()
    return action


async def get_pending_action(session: AsyncSession, action_id: int) -> Optional[PendingAction]:
    stmt = (
        select(PendingAction)
        .where(PendingAction.id == action_id)
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def transition_action(
    session: AsyncSession,
    action_id: int,
    to_status: ActionStatus,
    *,
    from_status: ActionStatus = ActionStatus.PENDING,
    **values: Any,
) -> bool:
    """
    Atomically move an unclaimed action from ``from_status`` to ``to_status``.

    Single UPDATE guarded on the current status; returns False when no row
    matched (missing id, the status already moved on, or an execution holds
    the claim).
    """
    stmt = (
        update(PendingAction)
        .where(
            PendingAction.id == action_id,
            PendingAction.status == from_status.value,
            PendingAction.claimed_at.is_(None),
        )
        .values(status=to_status.value, **values)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def claim_action(session: AsyncSession, action_id: int) -> bool:
    """Take the single execution slot of a pending action."""
    result = await session.execute(
        update(PendingAction)
        .where(
            PendingAction.id == action_id,
            PendingAction.status == ActionStatus.PENDING.value,
            PendingAction.claimed_at.is_(None),
        )
        .values(claimed_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def finish_claimed_action(session: AsyncSession, action_id: int, to_status: ActionStatus) -> bool:
    """Record the outcome of a claimed execution (``executed`` or ``failed``)."""
    result = await session.execute(
        update(PendingAction)
        .where(
            PendingAction.id == action_id,
            PendingAction.status == ActionStatus.PENDING.value,
            PendingAction.claimed_at.is_not(None),
        )
        .values(status=to_status.value)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def set_notification_ref(session: AsyncSession, action_id: int, ref: str) -> None:
    await session.execute(
        update(PendingAction)
        .where(PendingAction.id == action_id)
        .values(notification_ref=ref)
        .execution_options(synchronize_session=False)
    )


async def update_action_data(session: AsyncSession, action_id: int, action_data: dict[str, Any]) -> bool:
    """Replace the payload of a still-pending action."""
    result = await session.execute(
        update(PendingAction)
        .where(
            PendingAction.id == action_id,
            PendingAction.status == ActionStatus.PENDING.value,
            PendingAction.claimed_at.is_(None),
        )
        .values(action_data=action_data)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def due_snoozed_actions(session: AsyncSession, now: datetime | None = None) -> list[PendingAction]:
    now = now or utcnow()
    stmt = (
        select(PendingAction)
        .where(
            PendingAction.status == ActionStatus.SNOOZED.value,
            PendingAction.snoozed_until <= now,
        )
        .order_by(PendingAction.snoozed_until)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def count_actions(
    session: AsyncSession,
    status: ActionStatus,
    since: datetime | None = None,
) -> int:
    stmt = select(func.count()).select_from(PendingAction).where(PendingAction.status == status.value)
    if since is not None:
        stmt = stmt.where(PendingAction.created_at >= since)
    result = await session.execute(stmt)
    return result.scalar() or 0


async def list_actions_for_lead(session: AsyncSession, lead_id: int, limit: int = 10) -> list[PendingAction]:
    stmt = (
        select(PendingAction)
        .where(PendingAction.lead_id == lead_id)
        .order_by(PendingAction.created_at.desc(), PendingAction.id.desc())
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


# ======================================================
# DECISION LOG
# ======================================================

async def log_decision(
    session: AsyncSession,
    action_id: int,
    decision: str,
    modified_data: dict[str, Any] | None = None,
    outcome: str | None = None,
) -> DecisionLog:
    entry = DecisionLog(
        pending_action_id=action_id,
        decision=decision,
        modified_data=modified_data,
        outcome=outcome,
    )
    session.add(entry)
    await session.flush()
    return entry


async def list_decisions(session: AsyncSession, action_id: int) -> list[DecisionLog]:
    stmt = (
        select(DecisionLog)
        .where(DecisionLog.pending_action_id == action_id)
        .order_by(DecisionLog.decided_at, DecisionLog.id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


# ======================================================
# LEAD SCORES
# ======================================================

async def record_lead_score(
    session: AsyncSession,
    lead_id: int,
    score: int,
    risk_level: str,
    priority: str | None = None,
) -> LeadScore:
    row = LeadScore(lead_id=lead_id, score=score, risk_level=risk_level, priority=priority)
    session.add(row)
    await session.flush()
    return row


async def recent_lead_scores(session: AsyncSession, lead_id: int, limit: int = 5) -> list[LeadScore]:
    stmt = (
        select(LeadScore)
        .where(LeadScore.lead_id == lead_id)
        .order_by(LeadScore.calculated_at.desc(), LeadScore.id.desc())
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


# ======================================================
# MEMORY & THOUGHTS
# ======================================================

async def upsert_memory(session: AsyncSession, key: str, value: str) -> Memory:
    result = await session.execute(select(Memory).where(Memory.key == key))
    memory = result.scalar_one_or_none()
    if memory is None:
        memory = Memory(key=key, value=value)
        session.add(memory)
    else:
        memory.value = value
    await session.flush()
    return memory


async def memories_for_lead(session: AsyncSession, lead_id: int) -> list[Memory]:
    stmt = select(Memory).where(Memory.key.like(f"lead_{lead_id}_%")).order_by(Memory.key)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def record_thought(session: AsyncSession, lead_id: int, thought: str, action: str | None = None) -> Thought:
    row = Thought(lead_id=lead_id, thought=thought, action=action)
    session.add(row)
    await session.flush()
    return row


async def recent_thoughts(session: AsyncSession, lead_id: int, limit: int = 3) -> list[Thought]:
    stmt = (
        select(Thought)
        .where(Thought.lead_id == lead_id)
        .order_by(Thought.created_at.desc(), Thought.id.desc())
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())
