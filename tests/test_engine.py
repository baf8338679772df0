"""Tests for the orchestration engine: start, waves, progress, cancel."""

from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from conductor.dispatch.engine import OrchestrationEngine, master_agent_id
from conductor.errors import DispatchDeferred, UpstreamApiError
from conductor.planning.schemas import Task, TaskPlan
from conductor.state.schemas import OrchestrationOptions, OrchestrationRequest
from conductor.utils import Degradable
from tests.conftest import make_prompt


class StubPlanner:
    """Returns a fixed plan regardless of the prompt."""

    def __init__(self, plan: TaskPlan) -> None:
        self._plan = plan
        self.calls = 0

    async def plan(self, prompt, repository, mode):
        self.calls += 1
        return Degradable(self._plan)


def _independent_plan(n=4) -> TaskPlan:
    return TaskPlan(
        project_description="independent modules",
        tasks=[
            Task(id=f"t{i}", title=f"Module {i}", description=f"Create src/module_{i}.py")
            for i in range(1, n + 1)
        ],
    )


async def _queue(store, mode="PIPELINE", model="gpt-5.2", **options):
    request = OrchestrationRequest(
        prompt=make_prompt(3),
        repository="acme/app",
        model=model,
        options=OrchestrationOptions(mode=mode, **options),
    )
    orchestration, _ = await store.orchestrations.create_with_outbox(request, model=model)
    return orchestration.id


async def _step_keys(store, orchestration_id):
    return [e.step_key for e in await store.events.list(orchestration_id)]


@pytest.fixture
def batch_engine(store, agent_client, validator, settings):
    return OrchestrationEngine(store, agent_client, StubPlanner(_independent_plan()), validator, settings)


class TestHandleJob:
    async def test_starts_first_task_of_pipeline(self, engine, store, fake_api):
        oid = await _queue(store)
        assert await engine.handle_job(oid) == "started"

        row = await store.orchestrations.get(oid)
        assert row.status == "running"
        assert (row.tasks_total, row.tasks_completed, row.active_agents) == (3, 0, 1)
        assert row.claimed_by is None
        assert row.master_agent_id == master_agent_id(oid)
        assert row.metadata_["effectiveMode"] == "PIPELINE"
        assert row.metadata_["planDegradedReason"]
        assert len(fake_api.launched) == 1

        keys = await _step_keys(store, oid)
        assert keys[0] == "worker_received"
        assert "plan_fallback" in keys
        assert keys[-2:] == ["task_started", "orchestration_started"]

    async def test_duplicate_delivery_is_noop(self, engine, store, fake_api):
        oid = await _queue(store)
        assert await engine.handle_job(oid, source="broker") == "started"
        assert await engine.handle_job(oid, source="outbox") == "duplicate"
        assert len(fake_api.launched) == 1
        assert await store.events.has_event(oid, "duplicate_delivery", source="outbox")

    async def test_claim_held_by_other_worker(self, engine, store, fake_api):
        oid = await _queue(store)
        await store.orchestrations.claim_dispatch(oid, "someone-else", lease_seconds=300)
        assert await engine.handle_job(oid) == "duplicate"
        assert fake_api.launched == []

    async def test_missing(self, engine):
        assert await engine.handle_job("no-such-id") == "missing"

    async def test_paused_is_deferred(self, engine, store, fake_api):
        oid = await _queue(store)
        await store.orchestrations.set_paused(oid, True)
        with pytest.raises(DispatchDeferred):
            await engine.handle_job(oid)
        assert fake_api.launched == []

    async def test_launch_failure_releases_claim(self, engine, store, fake_api):
        oid = await _queue(store)
        fake_api.launch_status = 503
        with pytest.raises(UpstreamApiError):
            await engine.handle_job(oid)

        row = await store.orchestrations.get(oid)
        assert row.status == "queued"
        assert row.claimed_by is None
        assert await store.events.has_event(oid, "worker_error")

    async def test_retry_after_partial_start_does_not_relaunch(self, engine, store, fake_api):
        oid = await _queue(store)
        save = store.agents.save

        async def flaky_save(state):
            if state.role == "task":
                raise OperationalError("INSERT", {}, Exception("connection reset"))
            return await save(state)

        with patch.object(store.agents, "save", side_effect=flaky_save):
            with pytest.raises(OperationalError):
                await engine.handle_job(oid)
        assert (await store.orchestrations.get(oid)).status == "queued"
        assert await store.agents.get("agent-1") is None

        assert await engine.handle_job(oid) == "started"
        assert len(fake_api.launched) == 1
        row = await store.orchestrations.get(oid)
        assert row.status == "running"
        assert row.active_agents == 1
        adopted = await store.agents.get("agent-1")
        assert (adopted.task_id, adopted.status) == ("task-1", "ACTIVE")

    async def test_batch_retry_keeps_plan_and_fills_free_slots(self, store, agent_client, validator, settings, fake_api):
        planner = StubPlanner(_independent_plan())
        engine = OrchestrationEngine(store, agent_client, planner, validator, settings)
        oid = await _queue(store, mode="BATCH", max_parallel_agents=3)
        save = store.agents.save

        async def flaky_save(state):
            if state.agent_id == "agent-2":
                raise OperationalError("INSERT", {}, Exception("connection reset"))
            return await save(state)

        with patch.object(store.agents, "save", side_effect=flaky_save):
            with pytest.raises(OperationalError):
                await engine.handle_job(oid)
        assert len(fake_api.launched) == 2

        await engine.handle_job(oid)
        # Only the third slot is launched on retry
        assert len(fake_api.launched) == 3
        assert planner.calls == 1
        assert (await store.agents.get("agent-2")).task_id == "t2"
        row = await store.orchestrations.get(oid)
        assert (row.status, row.active_agents) == ("running", 3)

    async def test_single_agent_sends_full_prompt(self, engine, store, fake_api):
        oid = await _queue(store, mode="SINGLE_AGENT")
        await engine.handle_job(oid)

        row = await store.orchestrations.get(oid)
        assert row.tasks_total == 1
        assert fake_api.launched[0]["prompt"]["text"].startswith(row.prompt)

    async def test_unknown_model_falls_back(self, engine, store, fake_api):
        oid = await _queue(store, model="not-a-real-model")
        await engine.handle_job(oid)
        assert fake_api.launched[0]["model"] == "claude-4.5-opus-high-thinking"
        assert await store.events.has_event(oid, "model_fallback")

    async def test_auto_model_omitted(self, engine, store, fake_api):
        oid = await _queue(store, model=None)
        await engine.handle_job(oid)
        assert "model" not in fake_api.launched[0]


class TestBatch:
    async def test_first_wave_respects_parallelism(self, batch_engine, store, fake_api):
        oid = await _queue(store, mode="BATCH", max_parallel_agents=2)
        await batch_engine.handle_job(oid)

        assert len(fake_api.launched) == 2
        row = await store.orchestrations.get(oid)
        assert (row.tasks_total, row.active_agents) == (4, 2)

    async def test_completion_frees_a_slot(self, batch_engine, store, fake_api):
        oid = await _queue(store, mode="BATCH", max_parallel_agents=2)
        await batch_engine.handle_job(oid)

        assert await batch_engine.handle_agent_report("agent-1", "FINISHED")
        assert len(fake_api.launched) == 3
        progress = await store.progress(oid)
        assert progress.completed == {"t1"}
        assert progress.running == {"t2", "t3"}

    async def test_auto_mode_picks_batch_for_large_plan(self, batch_engine, store):
        oid = await _queue(store, mode="AUTO")
        await batch_engine.handle_job(oid)
        row = await store.orchestrations.get(oid)
        assert row.metadata_["effectiveMode"] == "BATCH"

    async def test_runs_to_completion(self, batch_engine, store, fake_api):
        oid = await _queue(store, mode="BATCH", max_parallel_agents=5)
        await batch_engine.handle_job(oid)
        for agent_id in list(fake_api.agent_ids):
            await batch_engine.handle_agent_report(agent_id, "FINISHED")

        row = await store.orchestrations.get(oid)
        assert row.status == "completed"
        assert (row.tasks_completed, row.active_agents) == (4, 0)
        master = await store.agents.get(master_agent_id(oid))
        assert master.status == "COMPLETED"
        assert sorted(master.tasks_completed) == ["t1", "t2", "t3", "t4"]


class TestPipelineProgress:
    async def test_sequential_to_completion(self, engine, store, fake_api):
        oid = await _queue(store)
        await engine.handle_job(oid)
        for i in range(1, 4):
            assert len(fake_api.launched) == i
            await engine.handle_agent_report(f"agent-{i}", "FINISHED")

        row = await store.orchestrations.get(oid)
        assert row.status == "completed"
        assert row.tasks_completed == 3
        assert await store.events.has_event(oid, "orchestration_completed")

    async def test_failure_blocks_dependents(self, engine, store, fake_api):
        oid = await _queue(store)
        await engine.handle_job(oid)
        await engine.handle_agent_report("agent-1", "ERROR", "build broke")

        row = await store.orchestrations.get(oid)
        assert row.status == "error"
        assert row.error_summary == "1 task(s) failed, 2 blocked"
        assert len(fake_api.launched) == 1

    async def test_duplicate_report_ignored(self, engine, store, fake_api):
        oid = await _queue(store)
        await engine.handle_job(oid)
        assert await engine.handle_agent_report("agent-1", "FINISHED")
        assert not await engine.handle_agent_report("agent-1", "FINISHED")
        assert len(fake_api.launched) == 2

    async def test_master_reports_ignored(self, engine, store):
        oid = await _queue(store)
        await engine.handle_job(oid)
        assert not await engine.handle_agent_report(master_agent_id(oid), "FINISHED")

    async def test_max_iterations(self, engine, store):
        oid = await _queue(store, max_iterations=1)
        await engine.handle_job(oid)
        await engine.handle_agent_report("agent-1", "FINISHED")

        row = await store.orchestrations.get(oid)
        assert row.status == "error"
        assert "max iterations" in row.error_summary
        master = await store.agents.get(master_agent_id(oid))
        assert master.status == "MAX_ITERATIONS_REACHED"

    async def test_paused_does_not_dispatch(self, engine, store, fake_api):
        oid = await _queue(store)
        await engine.handle_job(oid)
        await store.orchestrations.set_paused(oid, True)
        await engine.handle_agent_report("agent-1", "FINISHED")

        assert len(fake_api.launched) == 1
        row = await store.orchestrations.get(oid)
        assert row.status == "running"
        assert row.tasks_completed == 1

        await store.orchestrations.set_paused(oid, False)
        await engine.advance(oid)
        assert len(fake_api.launched) == 2


class TestCancel:
    async def test_stops_agents_and_outbox(self, engine, store, fake_api):
        oid = await _queue(store)
        await engine.handle_job(oid)
        assert await engine.cancel(oid)

        row = await store.orchestrations.get(oid)
        assert row.status == "stopped"
        assert fake_api.stopped == ["agent-1"]
        assert (await store.agents.get("agent-1")).status == "ERROR"
        assert (await store.agents.get(master_agent_id(oid))).status == "ERROR"
        assert [j.status for j in await store.outbox.list_for(oid)] == ["failed"]
        assert not await engine.cancel(oid)

    async def test_failed_stop_leaves_agent_active(self, engine, store, fake_api):
        oid = await _queue(store)
        await engine.handle_job(oid)
        fake_api.stop_status = 500
        assert await engine.cancel(oid)
        assert (await store.agents.get("agent-1")).status == "ACTIVE"

        # A late report is recorded but launches nothing
        assert await engine.handle_agent_report("agent-1", "FINISHED")
        assert len(fake_api.launched) == 1
        assert (await store.orchestrations.get(oid)).status == "stopped"

    async def test_cancel_queued(self, engine, store, fake_api):
        oid = await _queue(store)
        assert await engine.cancel(oid)
        assert await engine.handle_job(oid) == "duplicate"
        assert fake_api.launched == []
