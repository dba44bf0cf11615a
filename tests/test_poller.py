from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

from conftest import FakeCRM, FakeNotifier, make_lead

from db import repository
from db.models import ActionStatus, utcnow
from pipeline.change_detection import ChangeDetector
from pipeline.poller import Poller


class TestPoller:
    """Test one polling cycle end to end with stubbed stages."""

    def setup_method(self):
        self.crm = FakeCRM([
            make_lead(1, days_stale=9),                 # stuck -> critical
            make_lead(2, days_stale=0, price=600000),   # VIP -> critical
            make_lead(3, days_stale=4),                 # stale -> batch
            make_lead(4, days_stale=0, price=150000),   # important -> batch
            make_lead(5, days_stale=1, price=1000),     # ignored
        ])
        self.notifier = FakeNotifier()
        self.workflow = MagicMock()
        self.workflow.process = AsyncMock(return_value={})
        self.scorer = MagicMock()
        self.scorer.score_batch = AsyncMock(side_effect=lambda batch: {"scored": len(batch), "actions": 1})

    def _poller(self, session_factory, clock, **kwargs):
        return Poller(
            self.crm,
            self.workflow,
            self.scorer,
            ChangeDetector(),
            self.notifier,
            session_factory,
            clock=clock,
            **kwargs,
        )

    async def test_routes_critical_and_normal(self, session_factory, clock):
        """Test critical leads go to the workflow and the rest to batch scoring."""
        poller = self._poller(session_factory, clock)

        report = await poller.poll_once()

        assert report["fetched"] == 5
        assert report["needs_attention"] == 4
        assert report["critical"] == 2
        assert report["normal"] == 2
        assert [c.args[0] for c in self.workflow.process.await_args_list] == [1, 2]
        self.scorer.score_batch.assert_awaited_once()
        assert [lead["id"] for lead in self.scorer.score_batch.await_args.args[0]] == [3, 4]
        assert report["workflows_completed"] == 2
        assert report["scored"] == 2
        assert report["actions_created"] == 1
        assert poller.last_report is report

    async def test_unchanged_leads_are_not_reanalyzed(self, session_factory, clock):
        """Test a second poll with no CRM changes does no work."""
        poller = self._poller(session_factory, clock)
        await poller.poll_once()
        self.workflow.process.reset_mock()
        self.scorer.score_batch.reset_mock()

        report = await poller.poll_once()

        assert report["changed"] == 0
        self.workflow.process.assert_not_awaited()
        self.scorer.score_batch.assert_not_awaited()

    async def test_batches_respect_size(self, session_factory, clock):
        self.crm = FakeCRM([make_lead(i, days_stale=4) for i in range(1, 24)])
        poller = self._poller(session_factory, clock)

        report = await poller.poll_once()

        sizes = [len(c.args[0]) for c in self.scorer.score_batch.await_args_list]
        assert sizes == [10, 10, 3]
        assert report["batches"] == 3

    async def test_workflow_error_is_isolated(self, session_factory, clock):
        """Test one failing lead does not stop the rest of the cycle."""
        self.workflow.process = AsyncMock(side_effect=[RuntimeError("boom"), {}])
        poller = self._poller(session_factory, clock)

        report = await poller.poll_once()

        assert report["workflow_errors"] == 1
        assert report["workflows_completed"] == 1
        self.scorer.score_batch.assert_awaited_once()

    async def test_batch_error_is_isolated(self, session_factory, clock):
        self.crm = FakeCRM([make_lead(i, days_stale=4) for i in range(1, 13)])
        self.scorer.score_batch = AsyncMock(side_effect=[RuntimeError("boom"), {"scored": 2, "actions": 0}])
        poller = self._poller(session_factory, clock)

        report = await poller.poll_once()

        assert report["batches"] == 1
        assert report["scored"] == 2

    async def test_stop_before_routing(self, session_factory, clock):
        poller = self._poller(session_factory, clock)
        poller.stop()

        report = await poller.poll_once()

        assert report["stopped"] is True
        self.workflow.process.assert_not_awaited()
        self.scorer.score_batch.assert_not_awaited()

    async def test_due_snoozed_action_is_resurfaced(self, session_factory, clock):
        """Test a snoozed action is proposed again once its window has passed."""
        async with session_factory() as session:
            action = await repository.create_pending_action(session, 3, "add_note", {"text": "ping"})
            await repository.transition_action(
                session, action.id, ActionStatus.SNOOZED, snoozed_until=utcnow() - timedelta(minutes=1)
            )
            later = await repository.create_pending_action(session, 4, "add_note", {"text": "later"})
            await repository.transition_action(
                session, later.id, ActionStatus.SNOOZED, snoozed_until=utcnow() + timedelta(hours=1)
            )
            await session.commit()
        self.crm.leads[3] = make_lead(3, days_stale=4)
        poller = self._poller(session_factory, clock)

        assert await poller.resurface_snoozed() == 1

        async with session_factory() as session:
            resurfaced = await repository.get_pending_action(session, action.id)
            still_snoozed = await repository.get_pending_action(session, later.id)
        assert resurfaced.status == ActionStatus.PENDING.value
        assert resurfaced.snoozed_until is None
        assert resurfaced.notification_ref == "C-OPS:p1.000"
        assert still_snoozed.status == ActionStatus.SNOOZED.value
        assert self.notifier.proposals == [("C-OPS", action.id, 3)]
