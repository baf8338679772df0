"""Tests for the state store: transitions, event projection, agent states."""

from datetime import timedelta

import pytest

from conductor.state.events import derive_task_statuses, task_agents
from conductor.state.schemas import AgentStateInput, EventInput, OrchestrationOptions, OrchestrationRequest
from conductor.storage.models import OrchestrationEvent
from conductor.utils import utc_now
from tests.conftest import make_prompt


def _event(step_key, **payload):
    return OrchestrationEvent(orchestration_id="o1", level="info", step_key=step_key, message="", payload=payload)


async def _create(store, mode="BATCH", caller_id="alice"):
    request = OrchestrationRequest(
        prompt=make_prompt(3),
        repository="acme/app",
        caller_id=caller_id,
        options=OrchestrationOptions(mode=mode),
    )
    return await store.orchestrations.create_with_outbox(
        request, model="gpt-5.2", events=[EventInput(step_key="input_validated")]
    )


class TestEventProjection:
    def test_lifecycle(self):
        statuses = derive_task_statuses(
            [
                _event("task_started", taskId="t1", agentId="a1"),
                _event("task_started", taskId="t2", agentId="a2"),
                _event("task_completed", taskId="t1"),
                _event("agent_timed_out", taskId="t2"),
            ]
        )
        assert statuses == {"t1": "completed", "t2": "failed"}

    def test_completion_is_sticky(self):
        statuses = derive_task_statuses(
            [
                _event("task_completed", taskId="t1"),
                _event("task_started", taskId="t1"),
                _event("task_failed", taskId="t1"),
            ]
        )
        assert statuses == {"t1": "completed"}

    def test_retry_after_failure_runs_again(self):
        statuses = derive_task_statuses(
            [_event("task_failed", taskId="t1"), _event("task_started", taskId="t1")]
        )
        assert statuses == {"t1": "running"}

    def test_events_without_task_ignored(self):
        assert derive_task_statuses([_event("orchestration_started")]) == {}

    def test_latest_agent_wins(self):
        agents = task_agents(
            [
                _event("task_started", taskId="t1", agentId="a1"),
                _event("task_started", taskId="t1", agentId="a2"),
            ]
        )
        assert agents == {"t1": "a2"}


class TestOrchestrations:
    async def test_create_writes_row_outbox_and_events(self, store):
        orchestration, job = await _create(store)
        assert orchestration.status == "queued"
        assert orchestration.prompt_length == len(orchestration.prompt)
        assert job.status == "pending"
        assert job.payload == {"orchestrationId": orchestration.id}

        events = await store.events.list(orchestration.id)
        assert [e.step_key for e in events] == ["input_validated"]

    async def test_forward_only(self, store):
        orchestration, _ = await _create(store)
        assert await store.orchestrations.transition(orchestration.id, "queued", "running")
        # Stale expectation: another worker already moved it
        assert not await store.orchestrations.transition(orchestration.id, "queued", "running")
        assert await store.orchestrations.transition(orchestration.id, "running", "completed")
        assert not await store.orchestrations.transition(orchestration.id, "completed", "running")

        row = await store.orchestrations.get(orchestration.id)
        assert row.status == "completed"
        assert row.started_at is not None
        assert row.completed_at is not None
        assert row.active_agents == 0

    async def test_finish_from_queued(self, store):
        orchestration, _ = await _create(store)
        assert await store.orchestrations.finish(orchestration.id, "stopped")
        assert not await store.orchestrations.finish(orchestration.id, "error", "late failure")
        assert (await store.orchestrations.get(orchestration.id)).status == "stopped"

    async def test_counters_clamped(self, store):
        orchestration, _ = await _create(store)
        await store.orchestrations.update_counters(
            orchestration.id, tasks_total=2, tasks_completed=5, active_agents=-1
        )
        row = await store.orchestrations.get(orchestration.id)
        assert (row.tasks_total, row.tasks_completed, row.active_agents) == (2, 2, 0)

    async def test_claim_is_exclusive(self, store):
        orchestration, _ = await _create(store)
        assert await store.orchestrations.claim_dispatch(orchestration.id, "w1", lease_seconds=300)
        assert not await store.orchestrations.claim_dispatch(orchestration.id, "w2", lease_seconds=300)
        assert not await store.orchestrations.claim_dispatch(orchestration.id, "w1", lease_seconds=300)

        await store.orchestrations.release_claim(orchestration.id, "w1")
        assert await store.orchestrations.claim_dispatch(orchestration.id, "w2", lease_seconds=300)

    async def test_expired_claim_can_be_taken(self, store):
        orchestration, _ = await _create(store)
        assert await store.orchestrations.claim_dispatch(orchestration.id, "w1", lease_seconds=300)
        assert await store.orchestrations.claim_dispatch(orchestration.id, "w2", lease_seconds=-1)

    async def test_pause_only_when_active(self, store):
        orchestration, _ = await _create(store)
        assert await store.orchestrations.set_paused(orchestration.id, True)
        assert (await store.orchestrations.get(orchestration.id)).paused_at is not None

        await store.orchestrations.finish(orchestration.id, "stopped")
        assert not await store.orchestrations.set_paused(orchestration.id, False)

    async def test_metadata_merge(self, store):
        orchestration, _ = await _create(store)
        await store.orchestrations.update_metadata(orchestration.id, effectiveMode="BATCH")
        await store.orchestrations.update_metadata(orchestration.id, resolvedModel="gpt-5.2")
        row = await store.orchestrations.get(orchestration.id)
        assert row.metadata_ == {"effectiveMode": "BATCH", "resolvedModel": "gpt-5.2"}

    async def test_count_since_per_caller(self, store):
        await _create(store, caller_id="alice")
        await _create(store, caller_id="alice")
        await _create(store, caller_id="bob")
        since = utc_now() - timedelta(days=1)
        assert await store.orchestrations.count_since("alice", since) == 2
        assert await store.orchestrations.count_since("carol", since) == 0


class TestReconcileCounters:
    async def test_fixes_drift(self, store):
        orchestration, _ = await _create(store)
        await store.orchestrations.transition(orchestration.id, "queued", "running", tasks_total=3)
        await store.events.append(orchestration.id, "task_started", payload={"taskId": "task-1", "agentId": "a1"})
        await store.events.append(orchestration.id, "task_completed", payload={"taskId": "task-1"})
        await store.events.append(orchestration.id, "task_started", payload={"taskId": "task-2", "agentId": "a2"})

        assert await store.reconcile_counters(orchestration.id)
        row = await store.orchestrations.get(orchestration.id)
        assert (row.tasks_completed, row.active_agents) == (1, 1)
        assert await store.events.has_event(orchestration.id, "counters_reconciled")

        assert not await store.reconcile_counters(orchestration.id)


class TestAgentStates:
    async def test_save_is_monotonic(self, store):
        await store.agents.save(
            AgentStateInput(
                agent_id="m1",
                role="master",
                iterations=3,
                tasks_completed=["t1", "t2"],
                tasks_remaining=["t3", "t4"],
                last_analysis={"a": 1},
            )
        )
        row = await store.agents.save(
            AgentStateInput(
                agent_id="m1",
                role="master",
                iterations=1,
                tasks_completed=["t3"],
                last_analysis={"b": 2},
            )
        )
        assert row.iterations == 3
        assert row.tasks_completed == ["t1", "t2", "t3"]
        assert row.tasks_remaining == ["t4"]
        assert row.last_analysis == {"a": 1, "b": 2}

    async def test_terminal_status_not_reopened(self, store):
        await store.agents.save(AgentStateInput(agent_id="a1", status="COMPLETED"))
        row = await store.agents.save(AgentStateInput(agent_id="a1", status="ACTIVE", iterations=2))
        assert row.status == "COMPLETED"
        assert row.iterations == 2

    async def test_conditional_status_update(self, store):
        await store.agents.save(AgentStateInput(agent_id="a1"))
        assert await store.agents.update_status("a1", "TIMEOUT")
        assert not await store.agents.update_status("a1", "COMPLETED")
        assert (await store.agents.get("a1")).status == "TIMEOUT"

    async def test_increment_iterations(self, store):
        await store.agents.save(AgentStateInput(agent_id="a1", iterations=4))
        assert await store.agents.increment_iterations("a1") == 5
        assert await store.agents.increment_iterations("missing") is None

    async def test_find_master_by_sub_agent(self, store):
        orchestration, _ = await _create(store)
        await store.agents.save(AgentStateInput(agent_id="m1", orchestration_id=orchestration.id, role="master"))
        await store.agents.save(AgentStateInput(agent_id="a1", orchestration_id=orchestration.id, task_id="t1"))
        master = await store.agents.find_master_by_sub_agent("a1")
        assert master.agent_id == "m1"
        assert await store.agents.find_master_by_sub_agent("nope") is None

    async def test_list_stale_only_active_tasks(self, store):
        await store.agents.save(AgentStateInput(agent_id="m1", role="master"))
        await store.agents.save(AgentStateInput(agent_id="a1"))
        await store.agents.save(AgentStateInput(agent_id="a2", status="COMPLETED"))
        stale = await store.agents.list_stale(utc_now() + timedelta(seconds=1))
        assert [s.agent_id for s in stale] == ["a1"]

    async def test_delete(self, store):
        await store.agents.save(AgentStateInput(agent_id="a1"))
        assert await store.agents.delete("a1")
        assert await store.agents.get("a1") is None


@pytest.mark.parametrize("attempts,expected", [(1, 60), (2, 120), (3, 240)])
def test_backoff_delay(attempts, expected):
    from conductor.state.outbox import backoff_delay

    assert backoff_delay(attempts, 60) == expected
