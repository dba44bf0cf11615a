import os
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

import httpx
from loguru import logger

from errors import NotFoundError, TransientUpstreamError

PAGE_LIMIT = 250


class AmoCRMClient:
    """amoCRM (REST v4) client: leads, tasks, notes and pipelines."""

    def __init__(self, subdomain: Optional[str] = None, access_token: Optional[str] = None, timeout: float = 20,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.subdomain = subdomain or os.getenv("AMOCRM_SUBDOMAIN")
        self.access_token = access_token or os.getenv("AMOCRM_ACCESS_TOKEN")
        self.base_url = f"https://{self.subdomain}.amocrm.ru" if self.subdomain else ""
        self.timeout = timeout
        self.transport = transport
        # base time for mock lead timestamps
        self._mock_now = int(time.time())

        if not (self.subdomain and self.access_token):
            logger.warning("No amoCRM credentials provided, using mock mode")

    @property
    def mock_mode(self) -> bool:
        return not (self.subdomain and self.access_token)

    def _get_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        """Send a request and map transport failures onto the triage error taxonomy."""
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self.transport
            ) as client:
                response = await client.request(method, path, headers=self._get_headers(), **kwargs)
        except httpx.HTTPError as e:
            raise TransientUpstreamError(f"amoCRM request failed: {e.__class__.__name__}") from e

        if response.status_code == 404:
            logger.warning(f"amoCRM returned 404 for {method} {path}")
            raise NotFoundError("amoCRM resource not found")
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientUpstreamError(f"amoCRM unavailable ({response.status_code})")
        response.raise_for_status()

        # amoCRM answers 204 with an empty body for empty collections
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    # Leads

    async def list_leads(self, with_tasks: bool = True) -> List[Dict[str, Any]]:
        """Fetch all leads; open tasks are attached so the attention filter can see them."""
        if self.mock_mode:
            logger.info("Using mock lead listing")
            return self._mock_leads()

        leads: List[Dict[str, Any]] = []
        page = 1
        while True:
            data = await self._request(
                "GET", "/api/v4/leads", params={"page": page, "limit": PAGE_LIMIT, "with": "contacts"}
            )
            batch = data.get("_embedded", {}).get("leads", [])
            leads.extend(self._normalize_lead(lead) for lead in batch)
            if not data.get("_links", {}).get("next"):
                break
            page += 1

        if with_tasks and leads:
            tasks_by_lead: Dict[int, List[Dict[str, Any]]] = {}
            for task in await self.list_open_tasks():
                if task.get("entity_type") == "leads":
                    tasks_by_lead.setdefault(task.get("entity_id"), []).append(task)
            for lead in leads:
                lead["tasks"] = tasks_by_lead.get(lead["id"], [])

        logger.info(f"Fetched {len(leads)} leads from amoCRM")
        return leads

    async def get_lead_detail(self, lead_id: int) -> Dict[str, Any]:
        """Lead with its tasks and notes."""
        if self.mock_mode:
            for lead in self._mock_leads():
                if lead["id"] == lead_id:
                    return lead
            raise NotFoundError(f"Lead {lead_id} not found")

        data = await self._request("GET", f"/api/v4/leads/{lead_id}", params={"with": "contacts"})
        lead = self._normalize_lead(data)
        lead["tasks"] = await self.list_tasks(lead_id)
        lead["notes"] = await self.list_notes(lead_id)
        lead["contacts"] = data.get("_embedded", {}).get("contacts", [])
        return lead

    async def update_lead(self, lead_id: int, fields: Dict[str, Any]) -> Dict[str, Any]:
        if self.mock_mode:
            logger.info(f"Mock mode: would update lead {lead_id} with {fields}")
            return {"id": lead_id, **fields}
        return await self._request("PATCH", f"/api/v4/leads/{lead_id}", json=fields)

    # Tasks

    async def list_tasks(self, lead_id: int) -> List[Dict[str, Any]]:
        if self.mock_mode:
            return []
        data = await self._request(
            "GET",
            "/api/v4/tasks",
            params={"filter[entity_id][]": lead_id, "filter[entity_type]": "leads"},
        )
        return data.get("_embedded", {}).get("tasks", [])

    async def list_open_tasks(self) -> List[Dict[str, Any]]:
        """Every incomplete lead task, ordered by deadline."""
        if self.mock_mode:
            return []

        tasks: List[Dict[str, Any]] = []
        page = 1
        while True:
            data = await self._request(
                "GET",
                "/api/v4/tasks",
                params={
                    "filter[is_completed]": 0,
                    "filter[entity_type]": "leads",
                    "order[complete_till]": "asc",
                    "page": page,
                    "limit": PAGE_LIMIT,
                },
            )
            tasks.extend(data.get("_embedded", {}).get("tasks", []))
            if not data.get("_links", {}).get("next"):
                break
            page += 1
        return tasks

    async def overdue_tasks(self, now: Optional[float] = None) -> List[Dict[str, Any]]:
        now = now if now is not None else time.time()
        return [t for t in await self.list_open_tasks() if (t.get("complete_till") or now) < now]

    async def tasks_for_today(self, now: Optional[float] = None, tz: str = "UTC") -> List[Dict[str, Any]]:
        """Open tasks due today or created today, in the given time zone."""
        now_dt = datetime.fromtimestamp(now if now is not None else time.time(), ZoneInfo(tz))
        start = now_dt.replace(hour=0, minute=0, second=0, microsecond=0)
        start_ts = start.timestamp()
        end_ts = (start + timedelta(days=1)).timestamp()

        def _today(ts: Optional[int]) -> bool:
            return ts is not None and start_ts <= ts < end_ts

        return [
            t for t in await self.list_open_tasks()
            if _today(t.get("complete_till")) or _today(t.get("created_at"))
        ]

    async def create_task(self, lead_id: int, task: Dict[str, Any]) -> Dict[str, Any]:
        """Create a task on a lead. ``task`` carries ``text`` and ``complete_till`` (unix seconds)."""
        if self.mock_mode:
            logger.info(f"Mock mode: would create task for lead {lead_id}: {task.get('text')}")
            return {"id": "mock_task_1", "entity_id": lead_id}

        payload = [{
            "entity_id": lead_id,
            "entity_type": "leads",
            "text": task["text"],
            "complete_till": int(task["complete_till"]),
            "task_type_id": task.get("task_type_id", 1),
        }]
        data = await self._request("POST", "/api/v4/tasks", json=payload)
        created = data.get("_embedded", {}).get("tasks", [])
        return created[0] if created else data

    # Notes

    async def list_notes(self, lead_id: int) -> List[Dict[str, Any]]:
        if self.mock_mode:
            return []
        data = await self._request("GET", f"/api/v4/leads/{lead_id}/notes")
        return data.get("_embedded", {}).get("notes", [])

    async def add_note(self, lead_id: int, text: str) -> None:
        if self.mock_mode:
            logger.info(f"Mock mode: would add note to lead {lead_id}")
            return
        await self._request(
            "POST",
            f"/api/v4/leads/{lead_id}/notes",
            json=[{"note_type": "common", "params": {"text": text}}],
        )

    # Pipelines

    async def list_pipelines(self) -> List[Dict[str, Any]]:
        if self.mock_mode:
            return [{"id": 1, "name": "Sales", "_embedded": {"statuses": [
                {"id": 101, "name": "New"},
                {"id": 102, "name": "Negotiation"},
                {"id": 142, "name": "Won"},
            ]}}]
        data = await self._request("GET", "/api/v4/leads/pipelines")
        return data.get("_embedded", {}).get("pipelines", [])

    async def find_status_by_name(self, status_name: str) -> Optional[Dict[str, Any]]:
        """Case-insensitive substring match across every pipeline's statuses."""
        query = status_name.lower()
        for pipeline in await self.list_pipelines():
            for status in pipeline.get("_embedded", {}).get("statuses", []):
                if query in (status.get("name") or "").lower():
                    return {
                        "id": status["id"],
                        "name": status["name"],
                        "pipeline_id": pipeline["id"],
                        "pipeline_name": pipeline.get("name"),
                    }
        return None

    @staticmethod
    def _normalize_lead(raw: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "id": raw.get("id"),
            "name": raw.get("name") or f"Lead #{raw.get('id')}",
            "price": raw.get("price") or 0,
            "status_id": raw.get("status_id"),
            "pipeline_id": raw.get("pipeline_id"),
            "created_at": raw.get("created_at"),
            "updated_at": raw.get("updated_at"),
            "responsible_user_id": raw.get("responsible_user_id"),
            "tasks": [],
            "notes": [],
        }

    def _mock_leads(self) -> List[Dict[str, Any]]:
        """Small fixed pipeline for running without credentials."""
        now = self._mock_now
        return [
            {"id": 1001, "name": "Mock VIP Account", "price": 750000, "status_id": 101, "pipeline_id": 1,
             "created_at": now - 20 * 86400, "updated_at": now - 2 * 86400, "tasks": [], "notes": []},
            {"id": 1002, "name": "Mock Stuck Deal", "price": 40000, "status_id": 102, "pipeline_id": 1,
             "created_at": now - 30 * 86400, "updated_at": now - 9 * 86400, "tasks": [], "notes": []},
            {"id": 1003, "name": "Mock Mid Deal", "price": 120000, "status_id": 101, "pipeline_id": 1,
             "created_at": now - 5 * 86400, "updated_at": now - 1 * 86400, "tasks": [], "notes": []},
        ]


# Global amoCRM client instance
amocrm_client = AmoCRMClient()
