from unittest.mock import AsyncMock

import pytest

from conftest import FakeCRM, FakeNotifier, make_lead

from db import repository
from db.models import ActionStatus
from errors import ConfigurationMissingError
from pipeline.digests import HELP_TEXT, DigestService


class TestDigestService:
    """Test slash command views and scheduled digests."""

    def setup_method(self):
        self.crm = FakeCRM([
            make_lead(1, days_stale=9, price=750000),
            make_lead(2, days_stale=12),
            make_lead(3, days_stale=1),
            make_lead(4, days_stale=2, price=150000),
        ])
        self.notifier = FakeNotifier()

    def _service(self, session_factory, clock):
        return DigestService(self.crm, self.notifier, session_factory, tz="UTC", clock=clock)

    async def test_unknown_or_empty_command_shows_help(self, session_factory, clock):
        service = self._service(session_factory, clock)
        assert await service.handle_command("dance") == HELP_TEXT
        assert await service.handle_command("") == HELP_TEXT
        assert await service.handle_command("help") == HELP_TEXT

    async def test_risk_lists_oldest_first(self, session_factory, clock):
        """Test stuck leads are listed longest-idle first with CRM links."""
        self.crm.subdomain = "acme"
        service = self._service(session_factory, clock)

        text = await service.handle_command("risk")

        assert "Stuck leads (2)" in text
        assert text.index("*Lead 2*: 12 days") < text.index("*Lead 1*: 9 days")
        assert "💰 750,000" in text
        assert "<https://acme.amocrm.ru/leads/detail/2|Open in CRM>" in text

    async def test_risk_without_stuck_leads(self, session_factory, clock):
        self.crm = FakeCRM([make_lead(3, days_stale=1)])
        assert await self._service(session_factory, clock).risk_view() == "✅ No stuck leads!"

    async def test_hot_groups_by_budget(self, session_factory, clock):
        text = await self._service(session_factory, clock).handle_command(" HOT ")

        assert "VIP (500K+)" in text
        assert "• Lead 1: 750,000, last contact 9 days ago" in text
        assert "• Lead 4: 150,000, last contact 2 days ago" in text
        assert "Lead 2" not in text

    async def test_stats_counts_actions(self, session_factory, clock):
        async with session_factory() as session:
            for _ in range(2):
                await repository.create_pending_action(session, 1, "wait")
            done = await repository.create_pending_action(session, 2, "wait")
            await repository.transition_action(session, done.id, ActionStatus.EXECUTED)
            await session.commit()

        text = await self._service(session_factory, clock).handle_command("stats")

        assert "Awaiting approval: 2" in text
        assert "Executed: 1" in text
        assert "Rejected: 0" in text

    async def test_week_view(self, session_factory, clock):
        text = await self._service(session_factory, clock).handle_command("week")

        assert "Leads: 4 active" in text
        assert "Actions executed: 0" in text

    async def test_view_failure_is_reported_softly(self, session_factory, clock):
        """Test a failing view answers with a short error and no internals."""
        self.crm.list_leads = AsyncMock(side_effect=RuntimeError("CRM down"))

        text = await self._service(session_factory, clock).handle_command("today")

        assert text.startswith("❌")
        assert "CRM down" not in text

    async def test_morning_digest_goes_to_operator_channel(self, session_factory, clock):
        """Test the morning digest greets by local hour and counts stuck leads."""
        await self._service(session_factory, clock).send_morning_digest()

        channel, text = self.notifier.messages[0]
        assert channel == "C-OPS"
        # 1_700_000_000 is 22:13 UTC
        assert text.startswith("🌙 Good evening!")
        assert "2 deals stuck for more than 7 days" in text
        assert "1 VIP leads need attention" in text

    async def test_evening_report(self, session_factory, clock):
        await self._service(session_factory, clock).send_evening_report()

        assert "Evening report" in self.notifier.messages[0][1]

    async def test_digest_without_channel(self, session_factory, clock):
        """Test scheduled digests need an operator channel."""
        self.notifier = FakeNotifier(channel=None)

        with pytest.raises(ConfigurationMissingError):
            await self._service(session_factory, clock).send_weekly_overview()
