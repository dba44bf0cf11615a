import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from loguru import logger

from db import repository
from db.models import ActionStatus
from pipeline.attention import IMPORTANT_BUDGET, STUCK_DAYS, VIP_BUDGET, staleness_days

HELP_TEXT = """*Commands:*
`today` - today's dashboard (tasks and critical leads)
`hot` - VIP (500K+) and important (100K+) leads
`risk` - leads stuck for more than 7 days
`week` - weekly overview
`stats` - agent statistics
`help` - this list"""


class DigestService:
    """Operator dashboards: scheduled digests and on-demand views."""

    def __init__(self, crm, notifier, session_factory, tz: str = "Europe/Moscow",
                 clock: Callable[[], float] = time.time):
        self.crm = crm
        self.notifier = notifier
        self.session_factory = session_factory
        self.tz = ZoneInfo(tz)
        self.clock = clock

    def _lead_url(self, lead_id: Any) -> Optional[str]:
        subdomain = getattr(self.crm, "subdomain", None)
        return f"https://{subdomain}.amocrm.ru/leads/detail/{lead_id}" if subdomain else None

    def _start_of_day(self) -> datetime:
        local = datetime.fromtimestamp(self.clock(), self.tz)
        return local.replace(hour=0, minute=0, second=0, microsecond=0).astimezone(timezone.utc)

    def _greeting(self) -> str:
        hour = datetime.fromtimestamp(self.clock(), self.tz).hour
        if hour < 12:
            return "☀️ Good morning!"
        if hour < 18:
            return "👋 Good afternoon!"
        return "🌙 Good evening!"

    def _stuck_leads(self, leads: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        now = self.clock()
        stuck = [lead for lead in leads if staleness_days(lead, now) > STUCK_DAYS]
        return sorted(stuck, key=lambda lead: lead.get("updated_at") or 0)

    # Views

    async def today_view(self) -> str:
        now = self.clock()
        leads = await self.crm.list_leads(with_tasks=False)
        tasks_today = await self.crm.tasks_for_today(now, self.tz.key)
        overdue = await self.crm.overdue_tasks(now)
        stuck = self._stuck_leads(leads)
        vip = [lead for lead in leads if (lead.get("price") or 0) >= VIP_BUDGET]

        lines = [self._greeting(), "", "*Today:*"]
        if overdue:
            lines.append(f"🔴 *{len(overdue)} overdue tasks*")
        lines.append(f"✅ *{len(tasks_today)} tasks for today*" if tasks_today else "✅ No tasks for today")
        if stuck:
            lines.append(f"⚠️ *{len(stuck)} deals stuck for more than {STUCK_DAYS} days*")
        if vip:
            lines.append(f"🔥 *{len(vip)} VIP leads need attention*")
        lines += ["", "Try `hot`, `risk` or `week`."]
        return "\n".join(lines)

    async def risk_view(self, limit: int = 10) -> str:
        leads = await self.crm.list_leads(with_tasks=False)
        stuck = self._stuck_leads(leads)
        if not stuck:
            return "✅ No stuck leads!"

        now = self.clock()
        lines = [f"⚠️ *Stuck leads ({len(stuck)}):*", ""]
        for index, lead in enumerate(stuck[:limit], start=1):
            lines.append(f"{index}. *{lead.get('name')}*: {int(staleness_days(lead, now))} days without movement")
            if lead.get("price"):
                lines.append(f"    💰 {lead['price']:,}")
            url = self._lead_url(lead.get("id"))
            if url:
                lines.append(f"    <{url}|Open in CRM>")
        if len(stuck) > limit:
            lines.append(f"_...and {len(stuck) - limit} more_")
        return "\n".join(lines)

    async def hot_view(self, limit: int = 5) -> str:
        leads = await self.crm.list_leads(with_tasks=False)
        vip = [lead for lead in leads if (lead.get("price") or 0) >= VIP_BUDGET]
        important = [lead for lead in leads if IMPORTANT_BUDGET <= (lead.get("price") or 0) < VIP_BUDGET]
        if not vip and not important:
            return "✅ No urgent leads"

        now = self.clock()
        lines = ["🔥 *Hot leads:*"]
        for title, group in (("🔴 VIP (500K+)", vip), ("🟠 Important (100K+)", important)):
            if not group:
                continue
            lines += ["", f"*{title}:*"]
            for lead in group[:limit]:
                lines.append(
                    f"• {lead.get('name')}: {lead.get('price') or 0:,}, last contact {int(staleness_days(lead, now))} days ago"
                )
        return "\n".join(lines)

    async def week_view(self) -> str:
        leads = await self.crm.list_leads(with_tasks=False)
        tasks = await self.crm.list_open_tasks()
        since = datetime.fromtimestamp(self.clock(), timezone.utc) - timedelta(days=7)
        async with self.session_factory() as session:
            executed = await repository.count_actions(session, ActionStatus.EXECUTED, since=since)
            rejected = await repository.count_actions(session, ActionStatus.REJECTED, since=since)

        return "\n".join([
            "📅 *Weekly overview:*",
            "",
            f"📊 Leads: {len(leads)} active",
            f"✅ Tasks: {len(tasks)} active",
            f"🎯 Actions executed: {executed}",
            f"❌ Rejected: {rejected}",
        ])

    async def evening_view(self) -> str:
        now = self.clock()
        tasks_today = await self.crm.tasks_for_today(now, self.tz.key)
        overdue = await self.crm.overdue_tasks(now)
        async with self.session_factory() as session:
            executed = await repository.count_actions(session, ActionStatus.EXECUTED, since=self._start_of_day())

        lines = ["🌆 *Evening report:*", "", f"✅ Actions executed: {executed}", f"📋 Tasks for today: {len(tasks_today)}"]
        if overdue:
            lines.append(f"🔴 Overdue tasks: {len(overdue)}")
        return "\n".join(lines)

    async def stats_view(self) -> str:
        async with self.session_factory() as session:
            pending = await repository.count_actions(session, ActionStatus.PENDING)
            executed = await repository.count_actions(session, ActionStatus.EXECUTED)
            rejected = await repository.count_actions(session, ActionStatus.REJECTED)
        return f"📊 *Agent statistics:*\n\nAwaiting approval: {pending}\nExecuted: {executed}\nRejected: {rejected}"

    async def handle_command(self, text: str) -> str:
        """Render the view named by a slash-command argument."""
        command = (text or "").strip().lower() or "help"
        views = {
            "today": self.today_view,
            "hot": self.hot_view,
            "risk": self.risk_view,
            "week": self.week_view,
            "stats": self.stats_view,
        }
        view = views.get(command)
        if view is None:
            return HELP_TEXT
        try:
            return await view()
        except Exception as e:
            logger.error(f"Command {command} failed: {e}")
            return "❌ Could not load data, try again later"

    # Scheduled deliveries

    async def _deliver(self, name: str, render) -> None:
        logger.info(f"Sending {name}")
        text = await render()
        await self.notifier.send_message(self.notifier.manager_channel, text)

    async def send_morning_digest(self) -> None:
        await self._deliver("morning digest", self.today_view)

    async def send_evening_report(self) -> None:
        await self._deliver("evening report", self.evening_view)

    async def send_weekly_overview(self) -> None:
        await self._deliver("weekly overview", self.week_view)
