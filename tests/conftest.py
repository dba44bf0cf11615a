import os
import sys

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from db.models import Base
from db.session import build_session_factory
from errors import ConfigurationMissingError

NOW = 1_700_000_000
DAY = 86400


def make_lead(lead_id, days_stale=0.0, price=0, tasks=None, status_id=101, now=NOW):
    return {
        "id": lead_id,
        "name": f"Lead {lead_id}",
        "price": price,
        "status_id": status_id,
        "pipeline_id": 1,
        "created_at": now - 30 * DAY,
        "updated_at": int(now - days_stale * DAY),
        "tasks": tasks or [],
        "notes": [],
    }


class FakeCRM:
    """In-memory stand-in for AmoCRMClient."""

    def __init__(self, leads=None):
        self.leads = {lead["id"]: lead for lead in (leads or [])}
        self.tasks = {}
        self.created_tasks = []
        self.notes = []
        self.updates = []
        self.fail_create_task = False
        self.fail_add_note = False
        self.subdomain = None
        self.mock_mode = True

    async def list_leads(self, with_tasks=True):
        return list(self.leads.values())

    async def get_lead_detail(self, lead_id):
        return self.leads[lead_id]

    async def list_tasks(self, lead_id):
        return list(self.leads.get(lead_id, {}).get("tasks", [])) + self.tasks.get(lead_id, [])

    async def create_task(self, lead_id, task):
        if self.fail_create_task:
            raise RuntimeError("CRM unavailable")
        self.created_tasks.append((lead_id, task))
        self.tasks.setdefault(lead_id, []).append({"text": task["text"], "is_completed": False})
        return {"id": len(self.created_tasks)}

    async def add_note(self, lead_id, text):
        if self.fail_add_note:
            raise RuntimeError("CRM unavailable")
        self.notes.append((lead_id, text))

    async def update_lead(self, lead_id, fields):
        self.updates.append((lead_id, fields))
        return {"id": lead_id, **fields}

    async def find_status_by_name(self, name):
        if name.lower() == "negotiation":
            return {"id": 102, "name": "Negotiation", "pipeline_id": 1, "pipeline_name": "Sales"}
        return None

    async def list_open_tasks(self):
        return [t for tasks in self.tasks.values() for t in tasks]

    async def overdue_tasks(self, now=None):
        return []

    async def tasks_for_today(self, now=None, tz="UTC"):
        return []


class FakeNotifier:
    """Records every message instead of talking to Slack."""

    def __init__(self, channel="C-OPS"):
        self.channel = channel
        self.messages = []
        self.proposals = []
        self.updates = []

    @property
    def manager_channel(self):
        if not self.channel:
            raise ConfigurationMissingError("Operator channel is not configured")
        return self.channel

    @property
    def has_manager_channel(self):
        return bool(self.channel)

    async def send_message(self, channel, text, blocks=None):
        self.messages.append((channel, text))
        return f"{channel}:{len(self.messages)}.000"

    async def send_proposal(self, channel, action, lead, now=None):
        self.proposals.append((channel, action.id, lead.get("id")))
        return f"{channel}:p{len(self.proposals)}.000"

    async def update_message(self, ref, text):
        self.updates.append((ref, text))
        return True


@pytest.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield build_session_factory(engine)

    await engine.dispose()


@pytest.fixture
def clock():
    return lambda: float(NOW)


@pytest.fixture
def crm():
    return FakeCRM()


@pytest.fixture
def notifier():
    return FakeNotifier()
