"""
Critical lead workflow as an explicit state machine.

    analyze_risk -> check_tasks -> (create_task ->) notify_manager
                 ^                                        |
                 +------------- wait_and_retry <----------+  (score > 70, attempts < 3)

Each node is ``async (state, ctx) -> state``. The transition table maps a
node either to the next node or to a branch function of the state.
"""

import os
import time
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, Union

from loguru import logger

from db import repository
from graph.nodes.analyze import analyze_risk
from graph.nodes.notify import MAX_ATTEMPTS, notify_manager
from graph.nodes.retry import wait_and_retry
from graph.nodes.tasks import check_tasks, create_task
from graph.state import CriticalLeadState, initial_state

RETRY_SCORE_THRESHOLD = 70


class Node(str, Enum):
    ANALYZE_RISK = "analyze_risk"
    CHECK_TASKS = "check_tasks"
    CREATE_TASK = "create_task"
    NOTIFY_MANAGER = "notify_manager"
    WAIT_AND_RETRY = "wait_and_retry"
    END = "end"


class WorkflowContext:
    """Collaborators shared by every node of one run."""

    def __init__(self, crm, notifier, clock: Callable[[], float] = time.time, retry_delay: float = 0):
        self.crm = crm
        self.notifier = notifier
        self.clock = clock
        self.retry_delay = retry_delay


NodeFn = Callable[[CriticalLeadState, WorkflowContext], Awaitable[CriticalLeadState]]

NODES: Dict[Node, NodeFn] = {
    Node.ANALYZE_RISK: analyze_risk,
    Node.CHECK_TASKS: check_tasks,
    Node.CREATE_TASK: create_task,
    Node.NOTIFY_MANAGER: notify_manager,
    Node.WAIT_AND_RETRY: wait_and_retry,
}


def _after_check_tasks(state: CriticalLeadState) -> Node:
    return Node.NOTIFY_MANAGER if state.get("has_tasks") else Node.CREATE_TASK


def _after_notify(state: CriticalLeadState) -> Node:
    if state.get("risk_score", 0) > RETRY_SCORE_THRESHOLD and state.get("attempts", 0) < MAX_ATTEMPTS:
        return Node.WAIT_AND_RETRY
    return Node.END


TRANSITIONS: Dict[Node, Union[Node, Callable[[CriticalLeadState], Node]]] = {
    Node.ANALYZE_RISK: Node.CHECK_TASKS,
    Node.CHECK_TASKS: _after_check_tasks,
    Node.CREATE_TASK: Node.NOTIFY_MANAGER,
    Node.NOTIFY_MANAGER: _after_notify,
    Node.WAIT_AND_RETRY: Node.ANALYZE_RISK,
}


async def step(node: Node, state: CriticalLeadState, ctx: WorkflowContext) -> Node:
    """Run one node and return the node to run next."""
    state.setdefault("path", []).append(node.value)
    await NODES[node](state, ctx)

    nxt = TRANSITIONS[node]
    return nxt if isinstance(nxt, Node) else nxt(state)


def budget_priority(price: Optional[float]) -> str:
    price = price or 0
    if price >= 500000:
        return "HIGH"
    if price >= 100000:
        return "MEDIUM"
    return "LOW"


class CriticalLeadWorkflow:
    """Runs the state machine for one lead and records the final score."""

    def __init__(self, crm, notifier, session_factory, clock: Callable[[], float] = time.time, retry_delay: Optional[float] = None):
        if retry_delay is None:
            retry_delay = float(os.getenv("WORKFLOW_RETRY_DELAY_SECONDS", "0"))
        self.ctx = WorkflowContext(crm, notifier, clock=clock, retry_delay=retry_delay)
        self.session_factory = session_factory

    async def process(self, lead_id: int) -> CriticalLeadState:
        logger.info(f"Starting critical workflow for lead {lead_id}")
        state = initial_state(lead_id)

        node = Node.ANALYZE_RISK
        while node is not Node.END:
            node = await step(node, state, self.ctx)

        state["priority"] = budget_priority(state.get("price"))
        async with self.session_factory() as session:
            await repository.record_lead_score(
                session, lead_id, state["risk_score"], state["risk_level"], state["priority"]
            )
            await session.commit()

        logger.info(
            f"Workflow for lead {lead_id} finished: {state['risk_level']} ({state['risk_score']}), "
            f"attempts={state['attempts']}, notified={state['manager_notified']}"
        )
        return state
