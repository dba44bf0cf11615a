from conftest import NOW, make_lead

from pipeline.attention import (
    chunk,
    has_active_task,
    is_critical,
    needs_attention,
    split_critical,
    staleness_days,
)


class TestAttentionFilter:
    """Rules are an ordered OR over staleness, budget and open tasks."""

    def test_stale_without_tasks(self):
        """Test a lead idle for three days with no open task needs attention."""
        lead = make_lead(1, days_stale=4)
        assert needs_attention(lead, NOW) is True

    def test_stale_with_open_task_is_fine(self):
        lead = make_lead(1, days_stale=4, tasks=[{"is_completed": False}])
        assert needs_attention(lead, NOW) is False

    def test_stuck_even_with_open_task(self):
        """Test a week without contact outweighs an open task."""
        lead = make_lead(1, days_stale=8, tasks=[{"is_completed": False}])
        assert needs_attention(lead, NOW) is True

    def test_vip_budget_always(self):
        lead = make_lead(1, days_stale=0, price=500000, tasks=[{"is_completed": False}])
        assert needs_attention(lead, NOW) is True

    def test_important_budget_always(self):
        lead = make_lead(1, days_stale=0, price=100000, tasks=[{"is_completed": False}])
        assert needs_attention(lead, NOW) is True

    def test_medium_budget_only_without_tasks(self):
        assert needs_attention(make_lead(1, price=50000), NOW) is True
        assert needs_attention(make_lead(2, price=50000, tasks=[{"is_completed": False}]), NOW) is False

    def test_completed_tasks_do_not_count(self):
        """Test completed tasks are not treated as follow-ups."""
        lead = make_lead(1, days_stale=4, tasks=[{"is_completed": True}])
        assert has_active_task(lead) is False
        assert needs_attention(lead, NOW) is True

    def test_fresh_cheap_lead_is_ignored(self):
        assert needs_attention(make_lead(1, days_stale=1, price=10000), NOW) is False

    def test_missing_updated_at_counts_as_fresh(self):
        lead = make_lead(1, price=1000)
        lead["updated_at"] = None
        assert staleness_days(lead, NOW) == 0
        assert needs_attention(lead, NOW) is False


class TestCriticalRouting:
    """Test which attention leads take the critical path."""

    def test_critical_by_budget_or_staleness(self):
        assert is_critical(make_lead(1, price=500000), NOW)
        assert is_critical(make_lead(2, days_stale=7.5), NOW)
        assert not is_critical(make_lead(3, days_stale=5, price=499999), NOW)

    def test_split_keeps_order(self):
        leads = [make_lead(1, days_stale=9), make_lead(2, price=100000), make_lead(3, price=600000)]
        critical, normal = split_critical(leads, NOW)
        assert [lead["id"] for lead in critical] == [1, 3]
        assert [lead["id"] for lead in normal] == [2]

    def test_chunk_into_batches_of_ten(self):
        """Test normal leads are scored in batches of at most ten."""
        batches = list(chunk(list(range(23))))
        assert [len(b) for b in batches] == [10, 10, 3]
        assert list(chunk([])) == []
