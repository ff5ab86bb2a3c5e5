import asyncio
from unittest.mock import MagicMock

import pytest

from orchestration.cancellation import CancellationRegistry
from orchestration.events import (
    CheckpointEvent,
    EventStream,
    JobDoneEvent,
    JobStatusEvent,
    PostStatusEvent,
    ProcessingDoneEvent,
)
from orchestration.jobs import (
    BranchStrategy,
    JobError,
    JobResult,
    JobSkipped,
    JobStatus,
    NoChangesError,
    Project,
    RunConfig,
    RunConfigError,
    Workflow,
)
from orchestration.orchestrator import JobOrchestrator, validate_run
from permissions.server import PermissionBody, PermissionServer
from permissions.session import ApprovalSession
from permissions.types import PermissionRequestEvent


class FakeWorkflow:
    """Succeeds for every repo unless a behaviour is registered for it."""

    def __init__(self, behaviours=None):
        self.behaviours = behaviours or {}
        self.started: list[str] = []
        self.running = 0
        self.max_running = 0
        self.post_processed = False
        self.post_process_error: Exception | None = None

    async def run(self, ctx):
        self.started.append(ctx.repo)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            await ctx.status("working")
            behaviour = self.behaviours.get(ctx.repo)
            if behaviour is not None:
                return await behaviour(ctx)
            await asyncio.sleep(0)
            return JobResult.succeeded(ctx.repo, "done")
        finally:
            self.running -= 1

    async def post_process(self, projects, results, run, sender):
        self.post_processed = True
        if self.post_process_error is not None:
            raise self.post_process_error
        await sender.post_status("post-processing")


def _projects(*repos: str) -> list[Project]:
    return [Project(repo) for repo in repos]


async def _drain(stream: EventStream, on_event=None) -> list:
    events = []
    while True:
        event = await asyncio.wait_for(stream.next(), 5)
        events.append(event)
        if on_event is not None:
            on_event(event)
        if isinstance(event, ProcessingDoneEvent):
            return events


async def _run(orchestrator, stream, projects, config, on_event=None):
    results, events = await asyncio.gather(
        orchestrator.run(projects, config),
        _drain(stream, on_event),
    )
    return results, events


def _done_events(events) -> list[JobDoneEvent]:
    return [e for e in events if isinstance(e, JobDoneEvent)]


async def _wait_until(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.001)


# ── validation ────────────────────────────────────────────────────


def test_validate_rejects_empty_project_set():
    with pytest.raises(RunConfigError):
        validate_run([], RunConfig(prompt="x"))


def test_validate_rejects_duplicates():
    with pytest.raises(RunConfigError):
        validate_run(_projects("a", "a"), RunConfig(prompt="x"))


def test_validate_rejects_blank_prompt():
    with pytest.raises(RunConfigError):
        validate_run(_projects("a"), RunConfig(prompt="   "))


def test_validate_requires_branch_name_for_reuse():
    with pytest.raises(RunConfigError):
        validate_run(_projects("a"), RunConfig(prompt="x", branch_strategy=BranchStrategy.REUSE))


def test_validate_rejects_zero_parallelism():
    with pytest.raises(RunConfigError):
        validate_run(_projects("a"), RunConfig(prompt="x", parallelism=0))


@pytest.mark.asyncio
async def test_invalid_run_publishes_nothing():
    stream = EventStream()
    orchestrator = JobOrchestrator(stream, FakeWorkflow())

    with pytest.raises(RunConfigError):
        await orchestrator.run([], RunConfig(prompt="x"))

    assert stream.qsize() == 0


# ── happy path and ordering ───────────────────────────────────────


@pytest.mark.asyncio
async def test_every_job_gets_exactly_one_terminal_event():
    stream = EventStream()
    workflow = FakeWorkflow()
    orchestrator = JobOrchestrator(stream, workflow)

    results, events = await _run(orchestrator, stream, _projects("a", "b", "c"), RunConfig(prompt="x", parallelism=3))

    done = _done_events(events)
    assert sorted(e.repo for e in done) == ["a", "b", "c"]
    assert all(r.status == JobStatus.SUCCEEDED for r in results.values())
    assert isinstance(events[-1], ProcessingDoneEvent)
    assert sum(isinstance(e, ProcessingDoneEvent) for e in events) == 1
    assert workflow.post_processed


@pytest.mark.asyncio
async def test_status_events_precede_completion_per_repo():
    stream = EventStream()
    orchestrator = JobOrchestrator(stream, FakeWorkflow())

    _, events = await _run(orchestrator, stream, _projects("a", "b"), RunConfig(prompt="x", parallelism=2))

    for repo in ("a", "b"):
        positions = [i for i, e in enumerate(events) if getattr(e, "repo", None) == repo]
        kinds = [type(events[i]) for i in positions]
        assert kinds[-1] is JobDoneEvent
        assert all(k is JobStatusEvent for k in kinds[:-1])
        assert len(kinds) >= 2


# ── failure isolation ─────────────────────────────────────────────


@pytest.mark.asyncio
async def test_failures_and_skips_do_not_stop_the_batch():
    async def fail(ctx):
        raise JobError("git push rejected")

    async def skip(ctx):
        raise JobSkipped("branch already exists: flotilla-x")

    async def crash(ctx):
        raise RuntimeError("boom")

    stream = EventStream()
    orchestrator = JobOrchestrator(stream, FakeWorkflow({"b": fail, "c": skip, "d": crash}))

    results, _ = await _run(orchestrator, stream, _projects("a", "b", "c", "d", "e"), RunConfig(prompt="x", parallelism=2))

    assert results["a"].status == JobStatus.SUCCEEDED
    assert results["b"].status == JobStatus.FAILED
    assert results["b"].message == "Failed: git push rejected"
    assert results["c"].status == JobStatus.SKIPPED
    assert results["d"].status == JobStatus.FAILED
    assert "boom" in results["d"].message
    assert results["e"].status == JobStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_failed_job_keeps_agent_output():
    async def fail_after_agent(ctx):
        ctx.output = "agent transcript"
        raise NoChangesError("agent made no changes")

    stream = EventStream()
    session_logger = MagicMock()
    orchestrator = JobOrchestrator(stream, FakeWorkflow({"a": fail_after_agent}), session_logger=session_logger)

    results, _ = await _run(orchestrator, stream, _projects("a"), RunConfig(prompt="x"))

    assert results["a"].output == "agent transcript"
    output, metadata, label = session_logger.save.call_args[0]
    assert output == "agent transcript"
    assert metadata["status"] == "failed"
    assert label == "a"


# ── concurrency ───────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_parallelism_bounds_running_jobs():
    async def slow(ctx):
        await asyncio.sleep(0.01)
        return JobResult.succeeded(ctx.repo, "done")

    repos = [f"r{i}" for i in range(6)]
    workflow = FakeWorkflow({r: slow for r in repos})
    stream = EventStream()

    await _run(JobOrchestrator(stream, workflow), stream, _projects(*repos), RunConfig(prompt="x", parallelism=2))

    assert workflow.max_running == 2


@pytest.mark.asyncio
async def test_unset_parallelism_runs_one_at_a_time():
    async def slow(ctx):
        await asyncio.sleep(0.005)
        return JobResult.succeeded(ctx.repo, "done")

    workflow = FakeWorkflow({r: slow for r in ("a", "b", "c")})
    stream = EventStream()

    await _run(JobOrchestrator(stream, workflow), stream, _projects("a", "b", "c"), RunConfig(prompt="x"))

    assert workflow.max_running == 1
    assert workflow.started == ["a", "b", "c"]


# ── cancellation ──────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_cancel_running_job():
    async def hang(ctx):
        ctx.output = "partial"
        await asyncio.sleep(3600)

    stream = EventStream()
    registry = CancellationRegistry()
    orchestrator = JobOrchestrator(stream, FakeWorkflow({"b": hang}), registry)

    run = asyncio.create_task(_run(orchestrator, stream, _projects("a", "b", "c"), RunConfig(prompt="x", parallelism=3)))
    await _wait_until(lambda: "b" in registry)
    assert orchestrator.cancel("b") is True
    results, events = await asyncio.wait_for(run, 5)

    assert results["b"].status == JobStatus.CANCELLED
    assert results["b"].output == "partial"
    assert results["a"].status == JobStatus.SUCCEEDED
    assert results["c"].status == JobStatus.SUCCEEDED
    assert len(_done_events(events)) == 3
    assert "b" not in registry


@pytest.mark.asyncio
async def test_cancel_waiting_job_before_it_starts():
    release = asyncio.Event()

    async def block(ctx):
        await release.wait()
        return JobResult.succeeded(ctx.repo, "done")

    stream = EventStream()
    registry = CancellationRegistry()
    workflow = FakeWorkflow({"a": block})
    orchestrator = JobOrchestrator(stream, workflow, registry)

    run = asyncio.create_task(_run(orchestrator, stream, _projects("a", "b"), RunConfig(prompt="x", parallelism=1)))
    await _wait_until(lambda: "a" in registry)
    assert orchestrator.cancel("b") is True
    assert orchestrator.cancel("b") is False
    release.set()
    results, _ = await asyncio.wait_for(run, 5)

    assert results["a"].status == JobStatus.SUCCEEDED
    assert results["b"].status == JobStatus.CANCELLED
    assert workflow.started == ["a"]


@pytest.mark.asyncio
async def test_cancel_finished_job_is_a_no_op():
    stream = EventStream()
    orchestrator = JobOrchestrator(stream, FakeWorkflow())
    results, _ = await _run(orchestrator, stream, _projects("a"), RunConfig(prompt="x"))

    assert orchestrator.cancel("a") is False
    assert results["a"].status == JobStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_abort_cancels_everything_and_skips_post_processing():
    async def hang(ctx):
        await asyncio.sleep(3600)

    stream = EventStream()
    registry = CancellationRegistry()
    workflow = FakeWorkflow({"a": hang, "b": hang})
    orchestrator = JobOrchestrator(stream, workflow, registry)

    run = asyncio.create_task(_run(orchestrator, stream, _projects("a", "b", "c"), RunConfig(prompt="x", parallelism=2)))
    await _wait_until(lambda: len(registry) == 2)
    assert sorted(orchestrator.abort()) == ["a", "b", "c"]
    results, events = await asyncio.wait_for(run, 5)

    assert all(r.status == JobStatus.CANCELLED for r in results.values())
    assert not workflow.post_processed
    assert isinstance(events[-1], ProcessingDoneEvent)


@pytest.mark.asyncio
async def test_cancel_while_first_status_is_blocked():
    stream = EventStream(maxsize=1)
    await stream.publish(PostStatusEvent("earlier"))
    registry = CancellationRegistry()
    workflow = FakeWorkflow()
    orchestrator = JobOrchestrator(stream, workflow, registry)

    run = asyncio.create_task(orchestrator.run(_projects("a"), RunConfig(prompt="x")))
    await _wait_until(lambda: "a" in registry)
    assert orchestrator.cancel("a") is True

    events = await _drain(stream)
    results = await asyncio.wait_for(run, 5)

    assert results["a"].status == JobStatus.CANCELLED
    assert workflow.started == []
    assert len(_done_events(events)) == 1


# ── checkpoints ───────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_checkpoints_pause_after_each_full_batch():
    repos = [f"r{i:02d}" for i in range(12)]
    stream = EventStream()
    workflow = FakeWorkflow()
    orchestrator = JobOrchestrator(stream, workflow)
    checkpoints = []

    def on_event(event):
        if isinstance(event, CheckpointEvent):
            checkpoints.append((event.completed, event.total, len(workflow.started)))
            assert orchestrator.paused
            orchestrator.resume()

    results, events = await _run(
        orchestrator, stream, _projects(*repos),
        RunConfig(prompt="x", parallelism=3, checkpoint_interval=5),
        on_event,
    )

    assert checkpoints == [(5, 12, 5), (10, 12, 10)]
    assert len(results) == 12
    assert len(_done_events(events)) == 12


@pytest.mark.asyncio
async def test_small_interval_is_raised_to_minimum():
    repos = [f"r{i}" for i in range(7)]
    stream = EventStream()
    orchestrator = JobOrchestrator(stream, FakeWorkflow())
    checkpoints = []

    def on_event(event):
        if isinstance(event, CheckpointEvent):
            checkpoints.append(event.completed)
            orchestrator.resume()

    await _run(orchestrator, stream, _projects(*repos), RunConfig(prompt="x", checkpoint_interval=2), on_event)

    assert checkpoints == [5]


@pytest.mark.asyncio
async def test_abort_mid_batch_does_not_pause_again():
    async def hang(ctx):
        await asyncio.sleep(3600)

    repos = [f"r{i:02d}" for i in range(12)]
    stream = EventStream()
    registry = CancellationRegistry()
    orchestrator = JobOrchestrator(stream, FakeWorkflow({r: hang for r in repos}), registry)

    run = asyncio.create_task(_run(
        orchestrator, stream, _projects(*repos),
        RunConfig(prompt="x", parallelism=5, checkpoint_interval=5),
    ))
    await _wait_until(lambda: len(registry) == 5)
    orchestrator.abort()
    results, events = await asyncio.wait_for(run, 5)

    assert len(results) == 12
    assert all(r.status == JobStatus.CANCELLED for r in results.values())
    assert not any(isinstance(e, CheckpointEvent) for e in events)


@pytest.mark.asyncio
async def test_issue_workflow_never_checkpoints():
    repos = [f"r{i}" for i in range(6)]
    stream = EventStream()
    orchestrator = JobOrchestrator(stream, FakeWorkflow())

    _, events = await _run(
        orchestrator, stream, _projects(*repos),
        RunConfig(prompt="x", workflow=Workflow.ISSUE, checkpoint_interval=5),
    )

    assert not any(isinstance(e, CheckpointEvent) for e in events)


# ── post-processing ───────────────────────────────────────────────


@pytest.mark.asyncio
async def test_post_processing_failure_still_finishes():
    stream = EventStream()
    workflow = FakeWorkflow()
    workflow.post_process_error = RuntimeError("slack down")
    orchestrator = JobOrchestrator(stream, workflow)

    _, events = await _run(orchestrator, stream, _projects("a"), RunConfig(prompt="x"))

    assert any(isinstance(e, PostStatusEvent) and "slack down" in e.line for e in events)
    assert isinstance(events[-1], ProcessingDoneEvent)


# ── permission denial scenario ────────────────────────────────────


@pytest.mark.asyncio
async def test_denied_command_fails_only_its_job():
    stream = EventStream()
    session = ApprovalSession()
    server = PermissionServer(stream)

    async def agent_asks(ctx):
        verdict = await server.request_permission(PermissionBody(tool_name="Bash", command="rm -rf build", repo=ctx.repo))
        if not verdict.approved:
            raise NoChangesError("agent made no changes")
        return JobResult.succeeded(ctx.repo, "done")

    orchestrator = JobOrchestrator(stream, FakeWorkflow({"b": agent_asks}))
    server.on_verdict = orchestrator.record_verdict

    def on_event(event):
        if isinstance(event, PermissionRequestEvent):
            session.arrive(event.request)
            session.deny()

    results, _ = await _run(orchestrator, stream, _projects("a", "b", "c"), RunConfig(prompt="x", parallelism=3), on_event)

    assert results["a"].status == JobStatus.SUCCEEDED
    assert results["c"].status == JobStatus.SUCCEEDED
    assert results["b"].status == JobStatus.FAILED
    assert results["b"].message == "Failed: agent made no changes (denied: rm -rf build)"
