"""
Executes operator-approved actions against the CRM.

Execution first takes a claim on the still-pending row with a single guarded
UPDATE, so two operators pressing Approve at once produce exactly one CRM
mutation; the loser gets InvalidStateError. The terminal status is written
only once the CRM has answered.

NotFoundError and InvalidStateError come only from the checks before the
claim. Anything that goes wrong after it surfaces as ActionFailedError (or
UnknownActionTypeError), with the action already marked ``failed``.
"""

from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

from loguru import logger

from db import repository
from db.models import ActionStatus, ActionType, PendingAction, utcnow
from errors import (
    ActionFailedError,
    InvalidStateError,
    NotFoundError,
    TriageError,
    UnknownActionTypeError,
)

AGENT_TAG = "🤖 AI agent"


class ActionExecutor:
    def __init__(self, crm, session_factory):
        self.crm = crm
        self.session_factory = session_factory
        self._handlers: Dict[ActionType, Callable[[PendingAction], Awaitable[None]]] = {
            ActionType.CREATE_TASK: self._create_task,
            ActionType.UPDATE_STATUS: self._update_status,
            ActionType.ADD_NOTE: self._add_note,
            ActionType.WAIT: self._wait,
        }

    async def get(self, action_id: int) -> PendingAction:
        async with self.session_factory() as session:
            action = await repository.get_pending_action(session, action_id)
        if action is None:
            raise NotFoundError(f"Action {action_id} not found")
        return action

    async def _raise_for_state(self, session, action_id: int) -> None:
        action = await repository.get_pending_action(session, action_id)
        if action is None:
            raise NotFoundError(f"Action {action_id} not found")
        raise InvalidStateError(self._state_message(action))

    @staticmethod
    def _state_message(action: PendingAction) -> str:
        if action.status == ActionStatus.PENDING.value and action.claimed_at is not None:
            return f"Action {action.id} is already being executed"
        return f"Action {action.id} has already been {action.status}"

    async def execute(self, action_id: int) -> Dict[str, Any]:
        """
        Claim a pending action and apply it to the CRM.

        Raises:
            NotFoundError: unknown id
            InvalidStateError: the action is no longer pending, or another
                execution holds the claim
            UnknownActionTypeError: stored type is not an ActionType
            ActionFailedError: the CRM call failed
        The last two are raised only after the action is marked failed.
        """
        async with self.session_factory() as session:
            action = await repository.get_pending_action(session, action_id)
            if action is None:
                raise NotFoundError(f"Action {action_id} not found")
            if action.status != ActionStatus.PENDING.value or action.claimed_at is not None:
                raise InvalidStateError(self._state_message(action))

            if not await repository.claim_action(session, action_id):
                await session.rollback()
                await self._raise_for_state(session, action_id)
            await session.commit()

        try:
            try:
                action_type = ActionType(action.action_type)
            except ValueError:
                raise UnknownActionTypeError(f"Unknown action type: {action.action_type}")
            await self._handlers[action_type](action)

        except Exception as e:
            logger.error(f"Failed to execute action {action_id}: {e}")
            await self._finish(action_id, ActionStatus.FAILED)
            if isinstance(e, UnknownActionTypeError):
                raise
            failure = ActionFailedError(e.detail) if isinstance(e, TriageError) else ActionFailedError()
            raise failure from e

        await self._finish(action_id, ActionStatus.EXECUTED)
        logger.info(f"Action {action_id} ({action.action_type}) executed for lead {action.lead_id}")
        return {"success": True, "action_id": action_id, "action_type": action.action_type}

    async def _finish(self, action_id: int, status: ActionStatus) -> None:
        async with self.session_factory() as session:
            if not await repository.finish_claimed_action(session, action_id, status):
                logger.warning(f"Action {action_id} was not claimed when recording {status.value}")
            await session.commit()

    async def reject(self, action_id: int) -> None:
        async with self.session_factory() as session:
            if not await repository.transition_action(session, action_id, ActionStatus.REJECTED):
                await self._raise_for_state(session, action_id)
            await session.commit()
        logger.info(f"Action {action_id} rejected")

    async def snooze(self, action_id: int, minutes: int = 60) -> datetime:
        """Park a pending action; the poller re-presents it once the window elapses."""
        until = utcnow() + timedelta(minutes=minutes)
        async with self.session_factory() as session:
            moved = await repository.transition_action(
                session, action_id, ActionStatus.SNOOZED, snoozed_until=until
            )
            if not moved:
                await self._raise_for_state(session, action_id)
            await session.commit()
        logger.info(f"Action {action_id} snoozed for {minutes} minutes")
        return until

    async def modify(self, action_id: int, action_data: Dict[str, Any]) -> None:
        async with self.session_factory() as session:
            if not await repository.update_action_data(session, action_id, action_data):
                await self._raise_for_state(session, action_id)
            await session.commit()
        logger.info(f"Action {action_id} payload modified")

    async def log_decision(
        self,
        action_id: int,
        decision: str,
        modified_data: Optional[Dict[str, Any]] = None,
        outcome: Optional[str] = None,
    ) -> None:
        async with self.session_factory() as session:
            await repository.log_decision(session, action_id, decision, modified_data, outcome)
            await session.commit()

    # Handlers

    async def _create_task(self, action: PendingAction) -> None:
        data = action.action_data or {}
        await self.crm.create_task(action.lead_id, data)
        await self.crm.add_note(
            action.lead_id,
            f"{AGENT_TAG} created a task: {data.get('text')}\n\nReasoning: {action.reasoning}",
        )

    async def _update_status(self, action: PendingAction) -> None:
        data = action.action_data or {}
        fields: Dict[str, Any] = {}
        if data.get("new_status_id"):
            fields["status_id"] = data["new_status_id"]
        elif data.get("status_name"):
            status = await self.crm.find_status_by_name(data["status_name"])
            if status is None:
                raise NotFoundError(f"Status '{data['status_name']}' not found")
            fields = {"status_id": status["id"], "pipeline_id": status["pipeline_id"]}
        else:
            raise NotFoundError("No target status in the action")

        await self.crm.update_lead(action.lead_id, fields)
        await self.crm.add_note(
            action.lead_id,
            f"{AGENT_TAG} updated the deal status\n\nReasoning: {action.reasoning}",
        )

    async def _add_note(self, action: PendingAction) -> None:
        await self.crm.add_note(action.lead_id, (action.action_data or {}).get("text", ""))

    async def _wait(self, action: PendingAction) -> None:
        await self.crm.add_note(action.lead_id, f"{AGENT_TAG}: no action required\n\n{action.reasoning}")
