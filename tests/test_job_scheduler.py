from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

import pytest

import job_scheduler
from job_scheduler import (
    CircularDependency,
    CronTrigger,
    DependencyNotFound,
    InvalidSchedule,
    JobResult,
    JobScheduler,
    SchedulerError,
)

UTC = timezone.utc
HOURLY = "0 * * * *"


@dataclass
class FakeJob:
    name: str
    dependencies: List[str] = field(default_factory=list)
    fail: bool = False
    calls: int = 0
    description: Optional[str] = None

    async def execute(self) -> None:
        self.calls += 1
        if self.fail:
            raise RuntimeError(f"{self.name} exploded")


@dataclass
class GatedJob:
    name: str
    gate: asyncio.Event
    entered: asyncio.Event
    calls: int = 0
    running: int = 0
    max_running: int = 0

    async def execute(self) -> None:
        self.calls += 1
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        self.entered.set()
        await self.gate.wait()
        self.running -= 1


def _by_name(results: List[JobResult]) -> dict:
    return {result.job_name: result for result in results}


@pytest.mark.parametrize(
    "expression",
    [
        "0 * * * *",
        "*/15 9-17 * * mon-fri",
        "0 2 * * 7",
        "0 0 1 jan *",
        "5,35 0-23/2 1-15 * *",
    ],
)
def test_valid_cron_expressions_accepted(expression: str) -> None:
    assert job_scheduler.validate_cron_expression(expression) == expression


@pytest.mark.parametrize(
    "expression",
    [
        "",
        "* * * *",
        "0 * * * * *",
        "60 * * * *",
        "* 24 * * *",
        "* * 0 * *",
        "* * * 13 *",
        "* * * * 8",
        "*/0 * * * *",
        "5-1 * * * *",
        "abc * * * *",
        "0 * * foo *",
    ],
)
def test_invalid_cron_expressions_rejected(expression: str) -> None:
    with pytest.raises(InvalidSchedule):
        job_scheduler.validate_cron_expression(expression)


def test_register_rejects_invalid_schedule_without_side_effects() -> None:
    scheduler = JobScheduler()
    with pytest.raises(InvalidSchedule):
        scheduler.register_job(FakeJob("parse"), "not a cron")
    assert scheduler.get_jobs() == []
    assert scheduler.triggers == {}


def test_missing_dependency_rejected() -> None:
    scheduler = JobScheduler()
    with pytest.raises(DependencyNotFound, match="ghost"):
        scheduler.register_job(FakeJob("x", dependencies=["ghost"]), HOURLY)
    assert not scheduler.has_job("x")
    assert scheduler.schedule_groups == {}


def test_cycle_rejected_and_previous_job_restored() -> None:
    scheduler = JobScheduler()
    original_a = FakeJob("a")
    scheduler.register_job(original_a, HOURLY)
    scheduler.register_job(FakeJob("b", dependencies=["a"]), HOURLY)

    with pytest.raises(CircularDependency):
        scheduler.register_job(FakeJob("a", dependencies=["b"]), HOURLY)

    assert scheduler.get_job("a") is original_a
    assert scheduler.resolve_order() == ["a", "b"]


def test_transitive_cycle_rejected() -> None:
    scheduler = JobScheduler()
    scheduler.register_job(FakeJob("a"), HOURLY)
    scheduler.register_job(FakeJob("b", dependencies=["a"]), HOURLY)
    scheduler.register_job(FakeJob("c", dependencies=["b"]), "0 2 * * *")

    with pytest.raises(CircularDependency):
        scheduler.register_job(FakeJob("a", dependencies=["c"]), HOURLY)
    assert scheduler.resolve_order() == ["a", "b", "c"]


def test_self_dependency_is_a_cycle() -> None:
    scheduler = JobScheduler()
    with pytest.raises(CircularDependency, match="loop"):
        scheduler.register_job(FakeJob("loop", dependencies=["loop"]), HOURLY)
    assert not scheduler.has_job("loop")
    assert scheduler.triggers == {}


def test_cycle_smuggled_in_without_validation_fails_ordering() -> None:
    scheduler = JobScheduler()
    scheduler.register_job(FakeJob("a", dependencies=["b"]), HOURLY, validate_dependencies=False)
    scheduler.register_job(FakeJob("b", dependencies=["a"]), HOURLY, validate_dependencies=False)
    with pytest.raises(CircularDependency):
        scheduler.resolve_order()
    with pytest.raises(CircularDependency):
        scheduler.validate_all_dependencies()


def test_topological_order_respects_dependencies() -> None:
    scheduler = JobScheduler()
    scheduler.register_job(FakeJob("parse"), HOURLY)
    scheduler.register_job(FakeJob("analyze", dependencies=["parse"]), HOURLY)
    scheduler.register_job(FakeJob("images", dependencies=["parse"]), HOURLY)
    scheduler.register_job(FakeJob("social", dependencies=["analyze", "images"]), HOURLY)
    scheduler.register_job(FakeJob("updates"), "0 2 * * *")

    order = scheduler.get_execution_order()
    assert sorted(order) == sorted(scheduler.get_jobs())
    for name in order:
        for dep in scheduler.get_job(name).dependencies:
            assert order.index(dep) < order.index(name)


def test_ready_jobs_keep_registration_order() -> None:
    scheduler = JobScheduler()
    for name in ["charlie", "alpha", "bravo"]:
        scheduler.register_job(FakeJob(name), HOURLY)
    assert scheduler.resolve_order() == ["charlie", "alpha", "bravo"]


def test_duplicate_dependencies_tolerated() -> None:
    scheduler = JobScheduler()
    scheduler.register_job(FakeJob("a"), HOURLY)
    job_b = FakeJob("b", dependencies=["a", "a"])
    scheduler.register_job(job_b, HOURLY)

    assert scheduler.resolve_order() == ["a", "b"]
    results = asyncio.run(scheduler.execute_round())
    assert [result.success for result in results] == [True, True]
    assert job_b.calls == 1


def test_cascading_skip_names_nearest_dependency() -> None:
    scheduler = JobScheduler()
    a = FakeJob("a", fail=True)
    b = FakeJob("b", dependencies=["a"])
    c = FakeJob("c", dependencies=["b"])
    for job in (a, b, c):
        scheduler.register_job(job, HOURLY)

    results = _by_name(asyncio.run(scheduler.execute_round()))

    assert results["a"].success is False
    assert results["a"].dependencies_met is True
    assert isinstance(results["a"].error, RuntimeError)
    for name in ("b", "c"):
        assert results[name].success is False
        assert results[name].dependencies_met is False
        assert results[name].execution_time == 0
        assert results[name].error is None
    assert results["b"].skipped_reason.endswith(": a")
    assert results["c"].skipped_reason.endswith(": b")
    assert b.calls == 0 and c.calls == 0


def test_independent_job_unaffected_by_failure() -> None:
    scheduler = JobScheduler()
    scheduler.register_job(FakeJob("a", fail=True), HOURLY)
    d = FakeJob("d")
    scheduler.register_job(d, HOURLY)

    results = _by_name(asyncio.run(scheduler.execute_round()))
    assert results["a"].success is False
    assert results["d"].success is True
    assert results["d"].message == "Job d completed successfully"
    assert d.calls == 1


def test_pipeline_scenario_analyze_failure() -> None:
    scheduler = JobScheduler()
    scheduler.register_job(FakeJob("parse"), HOURLY)
    scheduler.register_job(FakeJob("analyze", dependencies=["parse"], fail=True), HOURLY)
    scheduler.register_job(FakeJob("social", dependencies=["analyze"]), HOURLY)

    results = asyncio.run(scheduler.execute_round())
    assert [result.job_name for result in results] == ["parse", "analyze", "social"]
    parse, analyze, social = results
    assert parse.success is True
    assert analyze.success is False and analyze.error is not None
    assert social.success is False
    assert social.dependencies_met is False
    assert "analyze" in social.skipped_reason


def test_completion_does_not_carry_across_rounds() -> None:
    scheduler = JobScheduler()
    parse = FakeJob("parse")
    analyze = FakeJob("analyze", dependencies=["parse"])
    scheduler.register_job(parse, HOURLY)
    scheduler.register_job(analyze, HOURLY)

    first = asyncio.run(scheduler.execute_round())
    assert all(result.success for result in first)

    parse.fail = True
    second = _by_name(asyncio.run(scheduler.execute_round()))
    assert second["analyze"].dependencies_met is False
    assert analyze.calls == 1


def test_unregistered_dependency_skips_when_validation_disabled() -> None:
    scheduler = JobScheduler()
    orphan = FakeJob("orphan", dependencies=["ghost"])
    scheduler.register_job(orphan, HOURLY, validate_dependencies=False)

    assert scheduler.resolve_order() == ["orphan"]
    (result,) = asyncio.run(scheduler.execute_round())
    assert result.dependencies_met is False
    assert "ghost" in result.skipped_reason
    assert orphan.calls == 0


def test_execute_job_unknown_name_returns_failure() -> None:
    scheduler = JobScheduler()
    result = asyncio.run(scheduler.execute_job("nope"))
    assert result.success is False
    assert isinstance(result.error, SchedulerError)
    assert "Job not found: nope" in str(result.error)


def test_concurrent_round_is_dropped(caplog: pytest.LogCaptureFixture) -> None:
    async def scenario():
        gate = asyncio.Event()
        entered = asyncio.Event()
        job = GatedJob("slow", gate, entered)
        scheduler = JobScheduler()
        scheduler.register_job(job, HOURLY)

        first = asyncio.create_task(scheduler.execute_round())
        await entered.wait()
        assert scheduler.is_executing is True
        second = await scheduler.execute_round()
        gate.set()
        first_results = await first
        return job, first_results, second, scheduler.is_executing

    with caplog.at_level(logging.WARNING, logger="conductor.scheduler"):
        job, first_results, second, still_executing = asyncio.run(scenario())

    assert second == []
    assert job.calls == 1
    assert job.max_running == 1
    assert len(first_results) == 1 and first_results[0].success
    assert still_executing is False
    assert "already in progress" in caplog.text


def test_guard_released_when_round_finds_cycle() -> None:
    scheduler = JobScheduler()
    scheduler.register_job(FakeJob("a", dependencies=["b"]), HOURLY, validate_dependencies=False)
    scheduler.register_job(FakeJob("b", dependencies=["a"]), HOURLY, validate_dependencies=False)
    with pytest.raises(CircularDependency):
        asyncio.run(scheduler.execute_round())
    assert scheduler.is_executing is False


def test_shared_expression_creates_single_trigger() -> None:
    scheduler = JobScheduler()
    parse = FakeJob("parse")
    analyze = FakeJob("analyze", dependencies=["parse"])
    updates = FakeJob("updates")
    scheduler.register_job(parse, HOURLY)
    scheduler.register_job(analyze, HOURLY)
    scheduler.register_job(updates, "0 2 * * *")

    triggers = scheduler.triggers
    assert sorted(triggers) == ["0 * * * *", "0 2 * * *"]
    assert scheduler.schedule_groups[HOURLY] == {"parse", "analyze"}

    hourly = triggers[HOURLY]
    results = asyncio.run(hourly.fire())
    assert hourly.fire_count == 1
    assert [result.job_name for result in results] == ["parse", "analyze", "updates"]
    assert parse.calls == analyze.calls == updates.calls == 1


def test_tick_during_running_round_is_dropped() -> None:
    async def scenario():
        gate = asyncio.Event()
        entered = asyncio.Event()
        job = GatedJob("slow", gate, entered)
        scheduler = JobScheduler()
        scheduler.register_job(job, HOURLY)
        running = asyncio.create_task(scheduler.execute_round())
        await entered.wait()
        dropped = await scheduler.triggers[HOURLY].fire()
        gate.set()
        await running
        return job, dropped

    job, dropped = asyncio.run(scenario())
    assert dropped == []
    assert job.calls == 1


def test_start_and_stop_are_idempotent() -> None:
    async def scenario():
        scheduler = JobScheduler()
        scheduler.register_job(FakeJob("a"), HOURLY)
        scheduler.register_job(FakeJob("b"), "30 * * * *")
        scheduler.start()
        scheduler.start()
        armed = [trigger.armed for trigger in scheduler.triggers.values()]
        states = [trigger.state for trigger in scheduler.triggers.values()]
        scheduler.stop()
        scheduler.stop()
        disarmed = [trigger.armed for trigger in scheduler.triggers.values()]
        final_states = [trigger.state for trigger in scheduler.triggers.values()]
        scheduler.start()
        rearmed = all(trigger.armed for trigger in scheduler.triggers.values())
        scheduler.stop()
        return armed, states, disarmed, final_states, rearmed

    armed, states, disarmed, final_states, rearmed = asyncio.run(scenario())
    assert armed == [True, True]
    assert states == ["started", "started"]
    assert disarmed == [False, False]
    assert final_states == ["stopped", "stopped"]
    assert rearmed is True


def test_stop_before_start_is_harmless() -> None:
    scheduler = JobScheduler()
    scheduler.register_job(FakeJob("a"), HOURLY)
    scheduler.stop()
    assert scheduler.triggers[HOURLY].state == "created"
    assert scheduler.started is False


def test_trigger_fires_once_per_slot() -> None:
    frozen = datetime(2026, 1, 1, 0, 0, 59, 900000, tzinfo=UTC)
    fired: List[datetime] = []

    async def callback() -> None:
        fired.append(frozen)

    async def scenario() -> int:
        trigger = CronTrigger("* * * * *", callback, clock=lambda: frozen)
        trigger.start()
        await asyncio.sleep(0.4)
        await trigger.wait_idle()
        trigger.stop()
        return trigger.fire_count

    assert asyncio.run(scenario()) == 1
    assert len(fired) == 1


def test_armed_scheduler_runs_round_on_tick() -> None:
    frozen = datetime(2026, 1, 1, 0, 59, 59, 900000, tzinfo=UTC)

    async def scenario():
        scheduler = JobScheduler(clock=lambda: frozen)
        parse = FakeJob("parse")
        updates = FakeJob("updates")
        scheduler.register_job(parse, HOURLY)
        scheduler.register_job(updates, "0 2 * * *")
        scheduler.start()
        await asyncio.sleep(0.4)
        scheduler.stop()
        await scheduler.wait_idle()
        return parse, updates

    parse, updates = asyncio.run(scenario())
    # Only the hourly trigger was due, but its round covers every registered job.
    assert parse.calls == 1
    assert updates.calls == 1


def test_registering_while_started_arms_new_trigger() -> None:
    async def scenario():
        scheduler = JobScheduler()
        scheduler.register_job(FakeJob("a"), HOURLY)
        scheduler.start()
        scheduler.register_job(FakeJob("b"), "15 * * * *")
        armed = scheduler.triggers["15 * * * *"].armed
        scheduler.stop()
        return armed

    assert asyncio.run(scenario()) is True


def test_start_with_immediate_execution_runs_then_arms() -> None:
    async def scenario():
        scheduler = JobScheduler()
        job = FakeJob("a")
        scheduler.register_job(job, HOURLY)
        results = await scheduler.start_with_immediate_execution()
        armed = scheduler.triggers[HOURLY].armed
        scheduler.stop()
        return job, results, armed

    job, results, armed = asyncio.run(scenario())
    assert job.calls == 1
    assert results[0].success is True
    assert armed is True


def test_start_with_immediate_execution_arms_even_when_round_raises(
    caplog: pytest.LogCaptureFixture,
) -> None:
    async def scenario():
        scheduler = JobScheduler()
        scheduler.register_job(FakeJob("a", dependencies=["b"]), HOURLY, validate_dependencies=False)
        scheduler.register_job(FakeJob("b", dependencies=["a"]), HOURLY, validate_dependencies=False)
        results = await scheduler.start_with_immediate_execution()
        armed = scheduler.triggers[HOURLY].armed
        started = scheduler.started
        scheduler.stop()
        return scheduler, results, armed, started

    with caplog.at_level(logging.ERROR, logger="conductor.scheduler"):
        scheduler, results, armed, started = asyncio.run(scenario())
    assert results == []
    assert armed is True
    assert started is True
    assert scheduler.is_executing is False
    assert "Failed to execute jobs with dependencies on startup" in caplog.text


def test_wait_idle_drains_round_of_removed_trigger() -> None:
    frozen = datetime(2026, 1, 1, 0, 59, 59, 900000, tzinfo=UTC)

    async def scenario():
        gate = asyncio.Event()
        entered = asyncio.Event()
        job = GatedJob("slow", gate, entered)
        scheduler = JobScheduler(clock=lambda: frozen)
        scheduler.register_job(job, HOURLY)
        scheduler.start()
        await asyncio.wait_for(entered.wait(), timeout=2)

        # The trigger is popped and stopped while its round is still running.
        scheduler.remove_job("slow")
        removed = scheduler.triggers == {}
        draining = asyncio.create_task(scheduler.wait_idle())
        await asyncio.sleep(0.05)
        pending = not draining.done()
        gate.set()
        await asyncio.wait_for(draining, timeout=2)
        scheduler.stop()
        return job, removed, pending

    job, removed, pending = asyncio.run(scenario())
    assert removed is True
    assert pending is True
    assert job.calls == 1
    assert job.running == 0


def test_round_delay_is_awaited() -> None:
    scheduler = JobScheduler(round_delay=0.01)
    scheduler.register_job(FakeJob("a"), HOURLY)
    results = asyncio.run(scheduler.execute_round())
    assert results[0].success is True


def test_remove_job_tears_down_empty_group() -> None:
    async def scenario():
        scheduler = JobScheduler()
        scheduler.register_job(FakeJob("a"), HOURLY)
        scheduler.register_job(FakeJob("b"), HOURLY)
        scheduler.start()
        trigger = scheduler.triggers[HOURLY]

        assert scheduler.remove_job("a") is True
        still_there = HOURLY in scheduler.triggers and trigger.armed
        assert scheduler.remove_job("b") is True
        return scheduler, trigger, still_there

    scheduler, trigger, still_there = asyncio.run(scenario())
    assert still_there is True
    assert scheduler.triggers == {}
    assert scheduler.schedule_groups == {}
    assert trigger.armed is False
    assert scheduler.remove_job("b") is False
    assert scheduler.get_jobs() == []


def test_reregistering_moves_job_to_new_schedule() -> None:
    scheduler = JobScheduler()
    scheduler.register_job(FakeJob("a"), HOURLY)
    scheduler.register_job(FakeJob("a"), "0 2 * * *")
    assert scheduler.schedule_groups == {"0 2 * * *": {"a"}}
    assert list(scheduler.triggers) == ["0 2 * * *"]
    assert scheduler.schedule_for("a") == "0 2 * * *"


def test_validate_all_dependencies_after_unvalidated_registration() -> None:
    scheduler = JobScheduler()
    scheduler.register_job(FakeJob("analyze", dependencies=["parse"]), HOURLY, validate_dependencies=False)
    with pytest.raises(DependencyNotFound):
        scheduler.validate_all_dependencies()
    scheduler.register_job(FakeJob("parse"), HOURLY, validate_dependencies=False)
    scheduler.validate_all_dependencies()
    assert scheduler.get_execution_order() == ["parse", "analyze"]


def test_job_result_to_dict_and_summary() -> None:
    results = [
        JobResult(job_name="a", success=True, execution_time=12, message="ok"),
        JobResult(job_name="b", success=False, execution_time=3, error=RuntimeError("boom")),
        JobResult(job_name="c", success=False, dependencies_met=False, skipped_reason="Dependency failed or was skipped: b"),
    ]
    assert results[1].to_dict() == {
        "jobName": "b",
        "success": False,
        "executionTime": 3,
        "dependenciesMet": True,
        "error": "boom",
    }
    assert "skippedReason" in results[2].to_dict()
    assert job_scheduler.summarize_results(results) == {
        "total": 3,
        "succeeded": 1,
        "failed": 1,
        "skipped": 1,
    }


def test_next_fire_times_are_utc() -> None:
    runs = job_scheduler.next_fire_times(HOURLY, 3, now_utc=datetime(2026, 1, 1, 0, 30))
    assert [run.isoformat() for run in runs] == [
        "2026-01-01T01:00:00+00:00",
        "2026-01-01T02:00:00+00:00",
        "2026-01-01T03:00:00+00:00",
    ]


def test_next_fire_for_scheduler_picks_earliest_group() -> None:
    scheduler = JobScheduler()
    scheduler.register_job(FakeJob("a"), HOURLY)
    scheduler.register_job(FakeJob("b"), "30 0 * * *")
    nxt = job_scheduler.next_fire_for_scheduler(scheduler, now_utc=datetime(2026, 1, 1, 0, 10, tzinfo=UTC))
    assert nxt == datetime(2026, 1, 1, 0, 30, tzinfo=UTC)
    assert job_scheduler.next_fire_for_scheduler(JobScheduler()) is None
