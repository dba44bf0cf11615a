from unittest.mock import AsyncMock, MagicMock

from conftest import FakeNotifier, NOW, make_lead

from db import repository
from db.models import ActionStatus
from errors import MalformedResponseError
from pipeline.batch import BatchScorer, batch_recommendation


class TestBatchScorer:
    """Test batch scoring of non-critical leads."""

    def setup_method(self):
        self.llm = MagicMock()
        self.notifier = FakeNotifier()
        self.leads = [make_lead(1, days_stale=4), make_lead(2, price=150000)]

    async def test_scorer_failure_degrades_to_defaults(self, session_factory, clock):
        """Test a scorer outage records default scores instead of failing the batch."""
        self.llm.analyze_batch = AsyncMock(side_effect=MalformedResponseError())
        scorer = BatchScorer(self.llm, self.notifier, session_factory, clock=clock)

        outcome = await scorer.score_batch(self.leads)

        assert outcome == {"scored": 2, "actions": 0}
        async with session_factory() as session:
            for lead in self.leads:
                scores = await repository.recent_lead_scores(session, lead["id"])
                assert [(s.score, s.risk_level, s.priority) for s in scores] == [(0, "LOW", "LOW")]
            assert await repository.count_actions(session, ActionStatus.PENDING) == 0
        assert self.notifier.proposals == []

    async def test_invalid_items_are_skipped(self, session_factory, clock):
        self.llm.analyze_batch = AsyncMock(return_value=[
            "garbage",
            {"risk_score": 30, "risk_level": "MEDIUM", "priority": "MEDIUM", "action_needed": False},
        ])
        scorer = BatchScorer(self.llm, self.notifier, session_factory, clock=clock)

        outcome = await scorer.score_batch(self.leads)

        assert outcome["scored"] == 1
        async with session_factory() as session:
            assert await repository.recent_lead_scores(session, 1) == []
            assert len(await repository.recent_lead_scores(session, 2)) == 1

    async def test_short_reply_leaves_tail_unscored(self, session_factory, clock):
        """Test leads the scorer did not answer for are left for the next poll."""
        self.llm.analyze_batch = AsyncMock(return_value=[
            {"risk_score": 30, "risk_level": "MEDIUM", "priority": "LOW", "action_needed": False},
        ])
        scorer = BatchScorer(self.llm, self.notifier, session_factory, clock=clock)

        outcome = await scorer.score_batch(self.leads)

        assert outcome["scored"] == 1

    async def test_action_needed_creates_and_delivers_proposal(self, session_factory, clock):
        """Test a recommended action becomes a pending proposal in the operator channel."""
        self.llm.analyze_batch = AsyncMock(return_value=[
            {"risk_score": 65, "risk_level": "HIGH", "priority": "MEDIUM", "action_needed": True,
             "recommended_action": "create_task", "reasoning": "No tasks for 4 days"},
            {"risk_score": 10, "risk_level": "LOW", "priority": "MEDIUM", "action_needed": False},
        ])
        scorer = BatchScorer(self.llm, self.notifier, session_factory, clock=clock)

        outcome = await scorer.score_batch(self.leads)

        assert outcome == {"scored": 2, "actions": 1}
        assert len(self.notifier.proposals) == 1
        async with session_factory() as session:
            actions = await repository.list_actions_for_lead(session, 1)
        assert len(actions) == 1
        action = actions[0]
        assert action.status == ActionStatus.PENDING.value
        assert action.action_type == "create_task"
        assert action.action_data["complete_till"] == NOW + 86400
        assert action.action_data["lead_name"] == "Lead 1"
        assert action.notification_ref == "C-OPS:p1.000"

    async def test_status_change_without_target_is_not_proposed(self, session_factory, clock):
        self.llm.analyze_batch = AsyncMock(return_value=[
            {"risk_score": 65, "risk_level": "HIGH", "priority": "MEDIUM", "action_needed": True,
             "recommended_action": "update_status", "reasoning": "Move forward"},
        ])
        scorer = BatchScorer(self.llm, self.notifier, session_factory, clock=clock)

        outcome = await scorer.score_batch(self.leads[:1])

        assert outcome == {"scored": 1, "actions": 0}
        assert self.notifier.proposals == []

    async def test_no_operator_channel_keeps_action_pending(self, session_factory, clock):
        """Test the proposal stays pending when it cannot be delivered."""
        self.llm.analyze_batch = AsyncMock(return_value=[
            {"risk_score": 65, "risk_level": "HIGH", "priority": "MEDIUM", "action_needed": True,
             "recommended_action": "wait", "reasoning": "Client on vacation"},
        ])
        scorer = BatchScorer(self.llm, FakeNotifier(channel=None), session_factory, clock=clock)

        await scorer.score_batch(self.leads[:1])

        async with session_factory() as session:
            action = (await repository.list_actions_for_lead(session, 1))[0]
        assert action.status == ActionStatus.PENDING.value
        assert action.notification_ref is None


class TestBatchRecommendation:

    def test_note_uses_reasoning(self):
        rec = batch_recommendation({"recommended_action": "add_note", "reasoning": "Asked for a discount"}, NOW)
        assert rec["parameters"] == {"text": "Asked for a discount"}

    def test_dict_passes_through(self):
        given = {"action_type": "wait", "parameters": {}}
        assert batch_recommendation({"recommended_action": given}, NOW) is given

    def test_missing(self):
        assert batch_recommendation({"action_needed": True}, NOW) is None
