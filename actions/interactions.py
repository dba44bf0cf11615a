"""
Operator callbacks: approve, reject, details, snooze.

Each handler returns the short text shown back to the operator. When the
proposal message ref is known, a completed decision rewrites that message so
its buttons disappear, and a refusal (already decided, unknown action) is
posted to the same channel instead. Operator-facing text only ever carries
``TriageError.detail``.
"""

import os
from typing import Any, Dict, Iterable, Optional

from loguru import logger

from db.models import Decision
from errors import InvalidStateError, NotFoundError, TriageError
from pipeline.analysis import lead_history
from tools.slack import split_ref

RATE_LIMIT = 20
RATE_WINDOW = 60


class OperatorGuard:
    """Allowlist plus per-operator sliding-window rate limit."""

    def __init__(self, store, allowed_users: Optional[Iterable[str]] = None,
                 limit: int = RATE_LIMIT, window: int = RATE_WINDOW):
        if allowed_users is None:
            raw = os.getenv("SLACK_ALLOWED_USERS", "")
            allowed_users = [u.strip() for u in raw.split(",") if u.strip()]
        self.allowed = set(allowed_users)
        self.store = store
        self.limit = limit
        self.window = window

    def is_allowed(self, user_id: Optional[str]) -> bool:
        # empty allowlist admits everyone
        if not self.allowed:
            return True
        return user_id in self.allowed

    async def check(self, user_id: Optional[str]) -> Optional[str]:
        """Return a denial message, or None when the operator may proceed."""
        if not self.is_allowed(user_id):
            logger.warning(f"Unauthorized operator {user_id}")
            return "⛔ You are not allowed to use this bot"
        if not await self.store.allow(f"operator:{user_id}", self.limit, self.window):
            return "⏳ Too many requests, wait a minute"
        return None


async def _finish(notifier, ref: Optional[str], text: str) -> str:
    if ref:
        await notifier.update_message(ref, text)
    return text


async def _refuse(notifier, ref: Optional[str], text: str) -> str:
    """Tell the operator why nothing happened; the proposal message stays as it is."""
    if ref:
        channel, _ = split_ref(ref)
        await notifier.send_message(channel, text)
    return text


async def approve(executor, action_id: int, modified_data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Execute an action on the operator's behalf and record the decision.

    NotFoundError / InvalidStateError mean the action was never claimed and
    leave no decision behind. A failure after the claim (ActionFailedError,
    UnknownActionTypeError) is recorded with its outcome and re-raised.
    """
    decision = Decision.MODIFIED.value if modified_data else Decision.APPROVED.value
    if modified_data:
        await executor.modify(action_id, modified_data)

    try:
        result = await executor.execute(action_id)
    except (NotFoundError, InvalidStateError):
        raise
    except Exception as e:
        outcome = f"failed: {e.detail}" if isinstance(e, TriageError) else "failed"
        await executor.log_decision(action_id, decision, modified_data, outcome=outcome)
        raise

    await executor.log_decision(action_id, decision, modified_data, outcome="executed")
    return result


async def reject(executor, action_id: int) -> None:
    await executor.reject(action_id)
    await executor.log_decision(action_id, Decision.REJECTED.value)


async def handle_approve(executor, notifier, action_id: int, ref: Optional[str] = None,
                         modified_data: Optional[Dict[str, Any]] = None) -> str:
    try:
        await approve(executor, action_id, modified_data)

    except (NotFoundError, InvalidStateError) as e:
        logger.info(f"Approve of action {action_id} refused: {e.detail}")
        return await _refuse(notifier, ref, e.operator_message())

    except TriageError as e:
        return await _finish(notifier, ref, f"❌ Action #{action_id} failed: {e.operator_message()}")

    except Exception as e:
        logger.error(f"Action {action_id} failed unexpectedly: {e}")
        return await _finish(notifier, ref, f"❌ Action #{action_id} failed")

    return await _finish(notifier, ref, f"✅ Action #{action_id} executed in the CRM")


async def handle_reject(executor, notifier, action_id: int, ref: Optional[str] = None) -> str:
    try:
        await reject(executor, action_id)
    except (NotFoundError, InvalidStateError) as e:
        return await _refuse(notifier, ref, e.operator_message())

    return await _finish(notifier, ref, f"❌ Action #{action_id} rejected")


async def handle_snooze(executor, notifier, action_id: int, ref: Optional[str] = None, minutes: int = 60) -> str:
    try:
        await executor.snooze(action_id, minutes=minutes)
    except (NotFoundError, InvalidStateError) as e:
        return await _refuse(notifier, ref, e.operator_message())

    label = "1 hour" if minutes == 60 else f"{minutes} minutes"
    return await _finish(notifier, ref, f"⏰ Action #{action_id} snoozed for {label}")


def render_details(history: Dict[str, Any]) -> str:
    lines = [f"📋 *Lead #{history['lead_id']}*"]
    scores = history.get("scores") or []
    if scores:
        lines += ["", "*Recent scores:*"]
        for s in scores:
            lines.append(f"• {s['risk_level']} ({s['score']}), priority {s['priority'] or '-'}")
    thoughts = history.get("thoughts") or []
    if thoughts:
        lines += ["", "*Agent notes:*"]
        for t in thoughts:
            lines.append(f"• {t['thought']}")
    if not scores and not thoughts:
        lines.append("No history yet")
    return "\n".join(lines)


async def handle_details(session_factory, notifier, lead_id: int, channel: Optional[str] = None) -> str:
    text = render_details(await lead_history(session_factory, lead_id))
    if channel:
        await notifier.send_message(channel, text)
    return text
