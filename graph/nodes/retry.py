import asyncio

from graph.state import CriticalLeadState
from loguru import logger


async def wait_and_retry(state: CriticalLeadState, ctx) -> CriticalLeadState:
    state["attempts"] = state.get("attempts", 0) + 1
    logger.info(f"Retrying lead {state['lead_id']} (attempt {state['attempts']})")

    if ctx.retry_delay > 0:
        await asyncio.sleep(ctx.retry_delay)
    return state
