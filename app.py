import os
import json
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional
from urllib.parse import parse_qs

from dotenv import load_dotenv
from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel

# Load environment variables
load_dotenv()

from actions import interactions
from actions.executor import ActionExecutor
from db.session import build_engine, build_session_factory, init_db
from errors import InvalidStateError, NotFoundError, TriageError
from graph.workflow import CriticalLeadWorkflow
from pipeline.analysis import analyze_single_lead, lead_history
from pipeline.batch import BatchScorer
from pipeline.change_detection import ChangeDetector
from pipeline.digests import DigestService
from pipeline.poller import Poller
from pipeline.scheduler import Scheduler
from tools.amocrm import amocrm_client
from tools.llm import llm_client
from tools.redis_store import RedisStore
from tools.slack import slack_notifier

# Configure logging
logger.add("logs/app.log", rotation="1 day", retention="7 days", level="INFO")

POLL_JOB = "poll"


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine = build_engine()
    await init_db(engine)
    session_factory = build_session_factory(engine)

    store = RedisStore()
    await store.connect()

    crm, notifier, llm = amocrm_client, slack_notifier, llm_client
    scheduler = Scheduler()

    workflow = CriticalLeadWorkflow(crm, notifier, session_factory)
    poller = Poller(
        crm,
        workflow,
        BatchScorer(llm, notifier, session_factory),
        ChangeDetector(store),
        notifier,
        session_factory,
    )
    digests = DigestService(crm, notifier, session_factory, tz=scheduler.tz.key)

    app.state.session_factory = session_factory
    app.state.crm = crm
    app.state.llm = llm
    app.state.notifier = notifier
    app.state.store = store
    app.state.poller = poller
    app.state.executor = ActionExecutor(crm, session_factory)
    app.state.digests = digests
    app.state.guard = interactions.OperatorGuard(store)
    app.state.scheduler = scheduler

    interval_ms = int(os.getenv("POLLING_INTERVAL_MS", "900000"))
    scheduler.every(POLL_JOB, interval_ms / 1000, poller.poll_once, run_immediately=_env_flag("POLL_ON_STARTUP"))

    if notifier.has_manager_channel:
        scheduler.cron("morning_digest", digests.send_morning_digest, hour=9)
        scheduler.cron("evening_report", digests.send_evening_report, hour=18)
        scheduler.cron("weekly_overview", digests.send_weekly_overview, hour=10, weekday=0)
    else:
        logger.warning("SLACK_MANAGER_CHANNEL not set, skipping digests")

    scheduler.start()
    logger.info("Lead triage agent started")

    yield

    poller.stop()
    await scheduler.stop()
    await store.close()
    await llm.close()
    await notifier.close()
    await engine.dispose()
    logger.info("Lead triage agent stopped")


# Initialize FastAPI app
app = FastAPI(
    title="CRM Lead Triage Agent",
    description="Stale-lead detection and human-in-the-loop follow-up for amoCRM",
    version="1.0.0",
    lifespan=lifespan,
)


class ApproveRequest(BaseModel):
    action_data: Optional[Dict[str, Any]] = None


def _ephemeral(text: str) -> Dict[str, Any]:
    return {"response_type": "ephemeral", "text": text}


async def _read_slack_form(req: Request) -> Dict[str, str]:
    """Verify the Slack signature and decode the urlencoded body."""
    body = (await req.body()).decode("utf-8")
    if not req.app.state.notifier.verify_request(body, req.headers):
        raise PermissionError("Invalid Slack signature")
    return {key: values[0] for key, values in parse_qs(body).items()}


@app.post("/slack/interactions")
async def slack_interactions(req: Request, background_tasks: BackgroundTasks):
    """
    Button callbacks from proposal messages.

    Slack expects an answer within 3 seconds, so the work runs as a
    background task and the reply is an immediate 200.
    """
    try:
        form = await _read_slack_form(req)
    except PermissionError:
        logger.warning("Rejected Slack interaction with bad signature")
        return JSONResponse(status_code=401, content={"status": "error", "message": "Invalid signature"})

    payload = json.loads(form.get("payload", "{}"))
    user_id = payload.get("user", {}).get("id")
    actions = payload.get("actions") or []
    if not actions:
        return JSONResponse(status_code=200, content={})

    denial = await req.app.state.guard.check(user_id)
    if denial:
        return JSONResponse(status_code=200, content=_ephemeral(denial))

    clicked = actions[0]
    action_name = clicked.get("action_id")
    try:
        target_id = int(clicked.get("value", ""))
    except ValueError:
        logger.warning(f"Interaction {action_name} with invalid value {clicked.get('value')!r}")
        return JSONResponse(status_code=200, content={})

    container = payload.get("container", {})
    channel = container.get("channel_id") or payload.get("channel", {}).get("id")
    ref = f"{channel}:{container['message_ts']}" if channel and container.get("message_ts") else None

    state = req.app.state
    logger.info(f"Operator {user_id} pressed {action_name} for {target_id}")

    if action_name == "approve_action":
        background_tasks.add_task(interactions.handle_approve, state.executor, state.notifier, target_id, ref)
    elif action_name == "reject_action":
        background_tasks.add_task(interactions.handle_reject, state.executor, state.notifier, target_id, ref)
    elif action_name == "snooze_action":
        background_tasks.add_task(interactions.handle_snooze, state.executor, state.notifier, target_id, ref)
    elif action_name == "details_lead":
        background_tasks.add_task(interactions.handle_details, state.session_factory, state.notifier, target_id, channel)
    else:
        logger.warning(f"Unknown interaction {action_name}")

    return JSONResponse(status_code=200, content={})


@app.post("/slack/commands")
async def slack_commands(req: Request):
    """Slash command: today | hot | risk | week | stats | help."""
    try:
        form = await _read_slack_form(req)
    except PermissionError:
        logger.warning("Rejected Slack command with bad signature")
        return JSONResponse(status_code=401, content={"status": "error", "message": "Invalid signature"})

    denial = await req.app.state.guard.check(form.get("user_id"))
    if denial:
        return _ephemeral(denial)

    text = await req.app.state.digests.handle_command(form.get("text", ""))
    return _ephemeral(text)


@app.get("/health")
def health(req: Request):
    """Health check endpoint."""
    state = req.app.state
    return {
        "status": "healthy",
        "timestamp": time.time(),
        "version": "1.0.0",
        "services": {
            "redis": "connected" if state.store.r else "disconnected",
            "crm": "mock" if state.crm.mock_mode else "live",
            "notifier": "live" if state.notifier.token else "mock",
            "scorer": "live" if state.llm.api_key else "mock",
        },
        "last_poll": state.poller.last_report,
    }


@app.post("/admin/poll")
async def trigger_poll(req: Request):
    """Run a poll cycle now unless one is already running."""
    ran = await req.app.state.scheduler.trigger(POLL_JOB)
    if not ran:
        return {"status": "skipped", "message": "A poll cycle is already running"}
    return {"status": "completed", "report": req.app.state.poller.last_report}


@app.post("/admin/leads/{lead_id}/analyze")
async def analyze_lead(lead_id: int, req: Request):
    state = req.app.state
    return await analyze_single_lead(lead_id, state.crm, state.llm, state.notifier, state.session_factory)


@app.get("/admin/leads/{lead_id}")
async def get_lead_status(lead_id: int, req: Request):
    """Score history, recent thoughts and actions for a lead."""
    return await lead_history(req.app.state.session_factory, lead_id)


@app.get("/admin/actions/{action_id}")
async def get_action(action_id: int, req: Request):
    action = await req.app.state.executor.get(action_id)
    return {
        "id": action.id,
        "lead_id": action.lead_id,
        "action_type": action.action_type,
        "action_data": action.action_data,
        "risk_score": action.risk_score,
        "priority": action.priority,
        "reasoning": action.reasoning,
        "status": action.status,
        "created_at": action.created_at.isoformat() if action.created_at else None,
        "notification_ref": action.notification_ref,
        "snoozed_until": action.snoozed_until.isoformat() if action.snoozed_until else None,
    }


@app.post("/admin/actions/{action_id}/approve")
async def approve_action(action_id: int, req: Request, body: Optional[ApproveRequest] = None):
    modified = body.action_data if body else None
    result = await interactions.approve(req.app.state.executor, action_id, modified)
    return {"status": "executed", **result}


@app.post("/admin/actions/{action_id}/reject")
async def reject_action(action_id: int, req: Request):
    await interactions.reject(req.app.state.executor, action_id)
    return {"status": "rejected", "action_id": action_id}


# Error handlers
@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"status": "error", "message": exc.operator_message()})


@app.exception_handler(InvalidStateError)
async def invalid_state_handler(request: Request, exc: InvalidStateError):
    return JSONResponse(status_code=409, content={"status": "error", "message": exc.operator_message()})


@app.exception_handler(TriageError)
async def triage_error_handler(request: Request, exc: TriageError):
    logger.error(f"{exc.__class__.__name__} on {request.url.path}: {exc.detail}")
    return JSONResponse(status_code=502, content={"status": "error", "message": exc.operator_message()})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={"status": "error", "message": "Internal server error"}
    )

if __name__ == "__main__":
    import uvicorn

    # Create logs directory if it doesn't exist
    os.makedirs("logs", exist_ok=True)

    logger.info("Starting CRM Lead Triage Agent")

    uvicorn.run(
        "app:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
