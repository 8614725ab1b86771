"""Tests for task group orchestration."""

import asyncio
import logging
import time
from collections.abc import Callable

import pytest

from opspilot.engine import ActionDispatcher, EntityLocks, GroupOrchestrator
from opspilot.engine.errors import (
    ExecutionInProgressError,
    GroupNotFoundError,
    TaskNotFoundError,
)
from opspilot.models import FAILED_TASK_BUSY, SKIPPED_DISABLED, SKIPPED_PREVIOUS_FAILURE
from opspilot.storage import (
    Database,
    ExecutionStatus,
    FailureMode,
    Task,
    TaskGroup,
    TaskGroupExecutionRepository,
    TaskGroupMember,
    TaskGroupRepository,
    TaskRepository,
    TaskRunStatus,
)
from tests.conftest import FakeController, SleepRecorder


class TestEntityLocks:
    """Tests for EntityLocks."""

    def test_hold_and_release(self) -> None:
        """Test a slot is busy only while held."""
        locks = EntityLocks()

        with locks.hold("g1"):
            assert locks.is_running("g1")
            assert not locks.is_running("g2")

        assert not locks.is_running("g1")

    def test_second_hold_rejected(self) -> None:
        """Test a busy slot rejects a second holder."""
        locks = EntityLocks()

        with locks.hold("g1"), pytest.raises(ExecutionInProgressError):
            with locks.hold("g1"):
                pass

        assert not locks.is_running("g1")

    def test_released_after_error(self) -> None:
        """Test the slot is released when the block raises."""
        locks = EntityLocks()

        with pytest.raises(RuntimeError), locks.hold("g1"):
            raise RuntimeError("boom")

        assert not locks.is_running("g1")


class TestExecuteGroup:
    """Tests for GroupOrchestrator.execute_group."""

    @pytest.mark.asyncio
    async def test_all_succeed(
        self,
        orchestrator: GroupOrchestrator,
        controller: FakeController,
        make_task: Callable[..., Task],
        make_group: Callable[..., TaskGroup],
    ) -> None:
        """Test a clean run is a success in member order."""
        group = make_group([make_task("stop"), make_task("backup"), make_task("start")])

        execution = await orchestrator.execute_group(group.id)

        assert execution.status == ExecutionStatus.SUCCESS
        assert execution.tasks_total == 3
        assert execution.tasks_completed == 3
        assert execution.tasks_failed == 0
        assert execution.tasks_skipped == 0
        assert execution.error_message is None
        assert execution.completed_at is not None
        assert execution.trigger_type == "manual"
        assert controller.commands == ["stop", "backup", "start"]

        outcomes = orchestrator.recorder.outcomes_of(execution)
        assert [o.task_name for o in outcomes] == ["stop", "backup", "start"]
        assert all(o.server_name == "Survival" for o in outcomes)

    @pytest.mark.asyncio
    async def test_continue_mode_runs_everything(
        self,
        orchestrator: GroupOrchestrator,
        controller: FakeController,
        make_task: Callable[..., Task],
        make_group: Callable[..., TaskGroup],
    ) -> None:
        """Test continue mode runs every member after a failure."""
        controller.failing_commands = {"two"}
        group = make_group(
            [make_task("one"), make_task("two"), make_task("three"), make_task("four")],
            failure_mode=FailureMode.CONTINUE,
        )

        execution = await orchestrator.execute_group(group.id)

        assert execution.status == ExecutionStatus.PARTIAL
        assert execution.tasks_completed == 3
        assert execution.tasks_failed == 1
        assert execution.tasks_skipped == 0
        assert execution.error_message == "1 task(s) failed"
        assert controller.commands == ["one", "two", "three", "four"]

        outcomes = orchestrator.recorder.outcomes_of(execution)
        assert [o.status for o in outcomes] == ["success", "failed", "success", "success"]
        assert outcomes[1].error == "command 'two' failed"

    @pytest.mark.asyncio
    async def test_stop_mode_skips_rest(
        self,
        orchestrator: GroupOrchestrator,
        controller: FakeController,
        make_task: Callable[..., Task],
        make_group: Callable[..., TaskGroup],
    ) -> None:
        """Test stop mode skips every member after the first failure."""
        controller.failing_commands = {"two"}
        group = make_group(
            [make_task("one"), make_task("two"), make_task("three"), make_task("four")],
            failure_mode=FailureMode.STOP,
        )

        execution = await orchestrator.execute_group(group.id)

        assert execution.status == ExecutionStatus.PARTIAL
        assert execution.tasks_completed == 1
        assert execution.tasks_failed == 1
        assert execution.tasks_skipped == 2
        assert controller.commands == ["one", "two"]

        outcomes = orchestrator.recorder.outcomes_of(execution)
        assert [o.status for o in outcomes] == ["success", "failed", "skipped", "skipped"]
        assert outcomes[2].error == SKIPPED_PREVIOUS_FAILURE
        assert outcomes[3].error == SKIPPED_PREVIOUS_FAILURE

    @pytest.mark.asyncio
    async def test_first_failure_in_stop_mode_fails_run(
        self,
        orchestrator: GroupOrchestrator,
        controller: FakeController,
        make_task: Callable[..., Task],
        make_group: Callable[..., TaskGroup],
    ) -> None:
        """Test a run where nothing succeeded is failed."""
        controller.failing_commands = {"one"}
        group = make_group([make_task("one"), make_task("two")])

        execution = await orchestrator.execute_group(group.id)

        assert execution.status == ExecutionStatus.FAILED
        assert execution.tasks_completed == 0
        assert execution.tasks_failed == 1
        assert execution.tasks_skipped == 1

    @pytest.mark.asyncio
    async def test_disabled_members_skipped(
        self,
        orchestrator: GroupOrchestrator,
        controller: FakeController,
        make_task: Callable[..., Task],
        make_group: Callable[..., TaskGroup],
    ) -> None:
        """Test disabled members are skipped and rule out success."""
        group = make_group([make_task("one"), make_task("off", enabled=False)])

        execution = await orchestrator.execute_group(group.id)

        assert execution.status == ExecutionStatus.PARTIAL
        assert execution.tasks_completed == 1
        assert execution.tasks_skipped == 1
        assert execution.error_message is None
        assert controller.commands == ["one"]

        outcomes = orchestrator.recorder.outcomes_of(execution)
        assert outcomes[1].status == "skipped"
        assert outcomes[1].error == SKIPPED_DISABLED

    @pytest.mark.asyncio
    async def test_all_disabled(
        self,
        orchestrator: GroupOrchestrator,
        controller: FakeController,
        make_task: Callable[..., Task],
        make_group: Callable[..., TaskGroup],
    ) -> None:
        """Test a run with nothing executed is failed."""
        group = make_group([make_task("a", enabled=False), make_task("b", enabled=False)])

        execution = await orchestrator.execute_group(group.id)

        assert execution.status == ExecutionStatus.FAILED
        assert execution.tasks_completed == 0
        assert execution.tasks_skipped == 2
        assert controller.calls == []

    @pytest.mark.asyncio
    async def test_empty_group(
        self,
        orchestrator: GroupOrchestrator,
        make_group: Callable[..., TaskGroup],
    ) -> None:
        """Test an empty group completes as a success."""
        group = make_group([])

        execution = await orchestrator.execute_group(group.id)

        assert execution.status == ExecutionStatus.SUCCESS
        assert execution.tasks_total == 0

    @pytest.mark.asyncio
    async def test_group_not_found(self, db: Database, orchestrator: GroupOrchestrator) -> None:
        """Test an unknown group raises and records nothing."""
        with pytest.raises(GroupNotFoundError):
            await orchestrator.execute_group("missing")

        with db.session_scope() as session:
            assert TaskGroupExecutionRepository(session).get_recent() == []
        assert not orchestrator.locks.is_running("missing")

    @pytest.mark.asyncio
    async def test_group_last_run_updated(
        self,
        db: Database,
        orchestrator: GroupOrchestrator,
        controller: FakeController,
        make_task: Callable[..., Task],
        make_group: Callable[..., TaskGroup],
    ) -> None:
        """Test the group's last-run fields mirror the execution."""
        controller.failing_commands = {"b"}
        group = make_group([make_task("a"), make_task("b")], failure_mode=FailureMode.CONTINUE)

        execution = await orchestrator.execute_group(group.id, trigger_type="scheduled")

        with db.session_scope() as session:
            stored = TaskGroupRepository(session).get_by_id(group.id)
        assert stored is not None
        assert stored.last_run == execution.completed_at
        assert stored.last_status == ExecutionStatus.PARTIAL
        assert stored.last_error == "1 task(s) failed"
        assert execution.trigger_type == "scheduled"

    @pytest.mark.asyncio
    async def test_task_last_run_updated(
        self,
        db: Database,
        orchestrator: GroupOrchestrator,
        controller: FakeController,
        make_task: Callable[..., Task],
        make_group: Callable[..., TaskGroup],
    ) -> None:
        """Test each executed member records its own last run."""
        controller.failing_commands = {"bad"}
        good = make_task("good")
        bad = make_task("bad")
        skipped = make_task("skipped")
        group = make_group([good, bad, skipped])

        await orchestrator.execute_group(group.id)

        with db.session_scope() as session:
            repo = TaskRepository(session)
            stored_good = repo.get_by_id(good.id)
            stored_bad = repo.get_by_id(bad.id)
            stored_skipped = repo.get_by_id(skipped.id)

        assert stored_good is not None and stored_good.last_status == TaskRunStatus.SUCCESS
        assert stored_bad is not None and stored_bad.last_status == TaskRunStatus.FAILED
        assert stored_bad.last_error == "command 'bad' failed"
        assert stored_skipped is not None and stored_skipped.last_run is None

    @pytest.mark.asyncio
    async def test_membership_read_fresh(
        self,
        db: Database,
        orchestrator: GroupOrchestrator,
        controller: FakeController,
        make_task: Callable[..., Task],
        make_group: Callable[..., TaskGroup],
    ) -> None:
        """Test membership changes apply to the next run."""
        first = make_task("first")
        group = make_group([first])
        await orchestrator.execute_group(group.id)

        added = make_task("added")
        with db.session_scope() as session:
            repo = TaskGroupRepository(session)
            repo.add_member(TaskGroupMember(group_id=group.id, task_id=added.id, sort_order=-1))

        execution = await orchestrator.execute_group(group.id)

        assert execution.tasks_total == 2
        assert controller.commands == ["first", "added", "first"]

    @pytest.mark.asyncio
    async def test_group_deleted_mid_run(
        self,
        db: Database,
        controller: FakeController,
        make_task: Callable[..., Task],
        make_group: Callable[..., TaskGroup],
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """Test a group deleted during its run still finishes with a warning."""
        group = make_group([make_task("a"), make_task("b")], delay=1.0)

        async def delete_group(seconds: float) -> None:
            with db.session_scope() as session:
                TaskGroupRepository(session).delete(group.id)

        orchestrator = GroupOrchestrator(
            db, ActionDispatcher(controller, timeout=5), sleep=delete_group
        )

        with caplog.at_level(logging.WARNING, logger="opspilot.engine.orchestrator"):
            execution = await orchestrator.execute_group(group.id)

        assert execution.status == ExecutionStatus.SUCCESS
        assert execution.tasks_completed == 2
        assert execution.completed_at is not None
        assert controller.commands == ["a", "b"]
        assert "was deleted during the run" in caplog.text
        assert not any(record.levelno >= logging.ERROR for record in caplog.records)
        with db.session_scope() as session:
            assert TaskGroupExecutionRepository(session).get_by_group(group.id) == []


class TestDelayBetweenTasks:
    """Tests for the delay between members."""

    @pytest.mark.asyncio
    async def test_delay_only_between_members(
        self,
        orchestrator: GroupOrchestrator,
        sleeper: SleepRecorder,
        make_task: Callable[..., Task],
        make_group: Callable[..., TaskGroup],
    ) -> None:
        """Test the delay follows every member but the last."""
        group = make_group([make_task("a"), make_task("b"), make_task("c")], delay=2.5)

        await orchestrator.execute_group(group.id)

        assert sleeper.delays == [2.5, 2.5]

    @pytest.mark.asyncio
    async def test_no_delay_after_skipped(
        self,
        orchestrator: GroupOrchestrator,
        controller: FakeController,
        sleeper: SleepRecorder,
        make_task: Callable[..., Task],
        make_group: Callable[..., TaskGroup],
    ) -> None:
        """Test skipped members do not wait."""
        controller.failing_commands = {"a"}
        group = make_group([make_task("a"), make_task("b"), make_task("c")], delay=1)

        await orchestrator.execute_group(group.id)

        # Only the failed first member was executed
        assert sleeper.delays == [1]

    @pytest.mark.asyncio
    async def test_zero_delay(
        self,
        orchestrator: GroupOrchestrator,
        sleeper: SleepRecorder,
        make_task: Callable[..., Task],
        make_group: Callable[..., TaskGroup],
    ) -> None:
        """Test no waiting when the delay is zero."""
        group = make_group([make_task("a"), make_task("b")])

        await orchestrator.execute_group(group.id)

        assert sleeper.delays == []

    @pytest.mark.asyncio
    async def test_real_delay_elapses(
        self,
        db: Database,
        controller: FakeController,
        make_task: Callable[..., Task],
        make_group: Callable[..., TaskGroup],
    ) -> None:
        """Test the real sleep spaces members out."""
        orchestrator = GroupOrchestrator(db, ActionDispatcher(controller))
        group = make_group([make_task("a"), make_task("b"), make_task("c")], delay=0.1)

        start = time.monotonic()
        await orchestrator.execute_group(group.id)
        elapsed = time.monotonic() - start

        assert elapsed >= 0.19


class TestConcurrentRuns:
    """Tests for runs of the same entity overlapping."""

    @pytest.mark.asyncio
    async def test_concurrent_group_run_rejected(
        self,
        db: Database,
        orchestrator: GroupOrchestrator,
        controller: FakeController,
        make_task: Callable[..., Task],
        make_group: Callable[..., TaskGroup],
    ) -> None:
        """Test only one run of a group proceeds at a time."""
        controller.delay = 0.05
        group = make_group([make_task("a"), make_task("b")])

        results = await asyncio.gather(
            orchestrator.execute_group(group.id),
            orchestrator.execute_group(group.id),
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], ExecutionInProgressError)
        assert controller.commands == ["a", "b"]

        with db.session_scope() as session:
            executions = TaskGroupExecutionRepository(session).get_by_group(group.id)
        assert len(executions) == 1

    @pytest.mark.asyncio
    async def test_different_groups_run_concurrently(
        self,
        orchestrator: GroupOrchestrator,
        controller: FakeController,
        make_task: Callable[..., Task],
        make_group: Callable[..., TaskGroup],
    ) -> None:
        """Test distinct groups do not block each other."""
        controller.delay = 0.01
        first = make_group([make_task("a")], name="first")
        second = make_group([make_task("b")], name="second")

        results = await asyncio.gather(
            orchestrator.execute_group(first.id),
            orchestrator.execute_group(second.id),
        )

        assert [r.status for r in results] == [ExecutionStatus.SUCCESS, ExecutionStatus.SUCCESS]

    @pytest.mark.asyncio
    async def test_group_runs_again_after_finish(
        self,
        orchestrator: GroupOrchestrator,
        make_task: Callable[..., Task],
        make_group: Callable[..., TaskGroup],
    ) -> None:
        """Test the group is free once a run finishes."""
        group = make_group([make_task("a")])

        await orchestrator.execute_group(group.id)
        await orchestrator.execute_group(group.id)

        assert not orchestrator.locks.is_running(group.id)

    @pytest.mark.asyncio
    async def test_member_busy_elsewhere_fails_step(
        self,
        db: Database,
        orchestrator: GroupOrchestrator,
        controller: FakeController,
        make_task: Callable[..., Task],
        make_group: Callable[..., TaskGroup],
    ) -> None:
        """Test a member whose task is already running is failed, not run twice."""
        busy, other = make_task("busy"), make_task("other")
        group = make_group([busy, other], failure_mode=FailureMode.STOP)

        with orchestrator.locks.hold(busy.id):
            execution = await orchestrator.execute_group(group.id)

        assert controller.calls == []
        assert execution.status == ExecutionStatus.FAILED
        assert execution.tasks_completed == 0
        assert execution.tasks_failed == 1
        assert execution.tasks_skipped == 1
        outcomes = orchestrator.recorder.outcomes_of(execution)
        assert outcomes[0].status == "failed"
        assert outcomes[0].error == FAILED_TASK_BUSY
        with db.session_scope() as session:
            stored = TaskRepository(session).get_by_id(busy.id)
        assert stored is not None
        assert stored.last_run is None

    @pytest.mark.asyncio
    async def test_task_and_group_member_serialized(
        self,
        orchestrator: GroupOrchestrator,
        controller: FakeController,
        make_task: Callable[..., Task],
        make_group: Callable[..., TaskGroup],
    ) -> None:
        """Test a task cannot run on its own while it runs as a group member."""
        controller.delay = 0.05
        task = make_task("backup")
        group = make_group([task])

        group_result, task_result = await asyncio.gather(
            orchestrator.execute_group(group.id),
            orchestrator.execute_task(task.id),
            return_exceptions=True,
        )

        assert not isinstance(group_result, BaseException)
        assert group_result.status == ExecutionStatus.SUCCESS
        assert isinstance(task_result, ExecutionInProgressError)
        assert controller.commands == ["backup"]
        assert not orchestrator.locks.is_running(task.id)


class TestExecuteTask:
    """Tests for GroupOrchestrator.execute_task."""

    @pytest.mark.asyncio
    async def test_execute_task(
        self,
        db: Database,
        orchestrator: GroupOrchestrator,
        controller: FakeController,
        make_task: Callable[..., Task],
    ) -> None:
        """Test a single task runs and records its last run."""
        task = make_task("say", command="say hi")

        outcome = await orchestrator.execute_task(task.id)

        assert outcome.ok
        assert controller.commands == ["say hi"]
        with db.session_scope() as session:
            stored = TaskRepository(session).get_by_id(task.id)
        assert stored is not None
        assert stored.last_status == TaskRunStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_execute_task_failure(
        self,
        orchestrator: GroupOrchestrator,
        controller: FakeController,
        make_task: Callable[..., Task],
    ) -> None:
        """Test a failed action is reported, not raised."""
        controller.failing_servers = {"srv-1"}
        task = make_task("say")

        outcome = await orchestrator.execute_task(task.id)

        assert not outcome.ok
        assert outcome.error == "command failed on srv-1"

    @pytest.mark.asyncio
    async def test_execute_task_not_found(self, orchestrator: GroupOrchestrator) -> None:
        """Test an unknown task raises."""
        with pytest.raises(TaskNotFoundError):
            await orchestrator.execute_task("missing")
