"""
Tests for cycle scheduling, sharding and shard runs.
"""

from datetime import date
from unittest.mock import patch

import pytest

from tenant_billing.core.errors import InvalidCycleWindow
from tenant_billing.core.orchestrator import CycleOutcome
from tenant_billing.core.scheduler import monthly_period
from tenant_billing.core.sharding import ShardPlan
from tenant_billing.storage.models import CycleStatus

from conftest import make_subscription, make_token


def onboard(repository, *tenant_ids):
    for tenant_id in tenant_ids:
        repository.save_subscription(make_subscription(tenant_id))
        repository.save_token(make_token(tenant_id))


class TestShardPlan:
    """Test deterministic tenant distribution."""

    def test_round_robin_over_sorted_ids(self):
        plan = ShardPlan(["d", "b", "a", "c", "e"], 2)
        assert plan.as_dict() == {0: ["a", "c", "e"], 1: ["b", "d"]}
        assert plan.shard_of("d") == 1

    def test_same_input_same_shards(self):
        assert ShardPlan(["x", "y", "z"], 2).as_dict() == ShardPlan(["z", "x", "y", "x"], 2).as_dict()

    def test_invalid_shard_count(self):
        with pytest.raises(ValueError):
            ShardPlan(["a"], 0)

    def test_unknown_shard(self):
        with pytest.raises(ValueError):
            ShardPlan(["a"], 1).tenants_for(3)

    def test_mark_processed_rejects_foreign_tenant(self):
        plan = ShardPlan(["a", "b"], 2)
        with pytest.raises(ValueError):
            plan.mark_processed(0, "b")

    def test_pending_excludes_processed(self):
        plan = ShardPlan(["a", "b", "c"], 1)
        plan.mark_processed(0, "b")
        assert plan.pending(0) == ["a", "c"]

    def test_progress_is_shared_through_repository(self, repository):
        first = ShardPlan(["a", "b"], 1, run_id="run-1", repository=repository)
        first.mark_processed(0, "a")

        resumed = ShardPlan(["a", "b"], 1, run_id="run-1", repository=repository)
        assert resumed.pending(0) == ["b"]
        other_run = ShardPlan(["a", "b"], 1, run_id="run-2", repository=repository)
        assert other_run.pending(0) == ["a", "b"]


class TestScheduleCycles:
    """Test cycle creation."""

    def test_monthly_period(self):
        assert monthly_period(date(2024, 2, 10)) == (date(2024, 2, 1), date(2024, 2, 29))

    def test_schedule_is_idempotent(self, engine, repository):
        first = engine.scheduler.schedule_cycles(["acme", "globex"], date(2024, 1, 1), date(2024, 1, 31))
        second = engine.scheduler.schedule_cycles(["globex", "acme"], date(2024, 1, 1), date(2024, 1, 31))

        assert [c.id for c in first] == [c.id for c in second]
        assert len(repository.list_cycles()) == 2
        assert all(c.status == CycleStatus.SCHEDULED for c in first)

    def test_inverted_period_rejected(self, engine):
        with pytest.raises(InvalidCycleWindow):
            engine.scheduler.schedule_cycles(["acme"], date(2024, 1, 31), date(2024, 1, 1))


class TestRunShard:
    """Test batch runs over one shard."""

    def test_run_tenant_bills_and_renews(self, engine, repository):
        onboard(repository, "acme")
        cycle = engine.scheduler.schedule_cycles(["acme"], date(2024, 1, 1), date(2024, 1, 31))[0]

        outcomes = engine.scheduler.run_tenant("acme")

        assert outcomes == [CycleOutcome.COMPLETED]
        assert repository.get_subscription("acme").last_renewed_cycle_id == cycle.id

    def test_shard_run_marks_tenants(self, engine, repository, gateway):
        onboard(repository, "a", "b", "c")
        gateway.decline("b")
        engine.scheduler.schedule_cycles(["a", "b", "c"], date(2024, 1, 1), date(2024, 1, 31))
        plan = ShardPlan(["a", "b", "c"], 1, run_id="jan", repository=repository)

        report = engine.scheduler.run_shard(plan, 0)

        assert report.completed == ["a", "c"]
        assert report.failed == {"b": "FAILED"}
        assert plan.pending(0) == []

    def test_rerun_skips_processed_tenants(self, engine, repository, gateway):
        onboard(repository, "a", "b")
        engine.scheduler.schedule_cycles(["a", "b"], date(2024, 1, 1), date(2024, 1, 31))
        plan = ShardPlan(["a", "b"], 1, run_id="jan", repository=repository)
        engine.scheduler.run_shard(plan, 0)

        report = engine.scheduler.run_shard(plan, 0)

        assert report.completed == [] and report.skipped == []
        assert gateway.charge_count() == 2

    def test_erroring_tenant_stays_pending(self, engine, repository):
        onboard(repository, "a", "b")
        engine.scheduler.schedule_cycles(["a", "b"], date(2024, 1, 1), date(2024, 1, 31))
        plan = ShardPlan(["a", "b"], 1)
        original = engine.scheduler.run_tenant

        def flaky(tenant_id):
            if tenant_id == "a":
                raise RuntimeError("database locked")
            return original(tenant_id)

        with patch.object(engine.scheduler, "run_tenant", side_effect=flaky):
            report = engine.scheduler.run_shard(plan, 0)

        assert "a" in report.errored
        assert report.completed == ["b"]
        assert plan.pending(0) == ["a"]
