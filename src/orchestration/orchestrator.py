"""Runs one workflow across a set of repositories.

Jobs are launched in checkpoint batches and bounded by a semaphore. Each job
runs in its own task whose cancel() is registered in the CancellationRegistry,
so cancelling a repo kills whatever subprocess that job is awaiting. Every
project gets exactly one JobDoneEvent and every run ends with exactly one
ProcessingDoneEvent, whatever happened in between.
"""

import asyncio
import logging
from collections.abc import Sequence
from functools import partial

from orchestration.cancellation import CancellationRegistry
from orchestration.checkpoint import Checkpoint
from orchestration.events import EventStream, StatusSender
from orchestration.jobs import (
    BranchStrategy,
    JobError,
    JobResult,
    JobSkipped,
    Project,
    RunConfig,
    RunConfigError,
    Workflow,
)
from orchestration.workflows import JobContext, JobWorkflow
from permissions.types import PermissionRequest, PermissionResponse
from session_loggers.interface import SessionLogger

logger = logging.getLogger("flotilla.orchestrator")

DEFAULT_PARALLELISM = 1


def validate_run(projects: Sequence[Project], config: RunConfig) -> None:
    if not projects:
        raise RunConfigError("No projects selected")
    seen = set()
    for project in projects:
        if project.repo in seen:
            raise RunConfigError(f"Duplicate project: {project.repo}")
        seen.add(project.repo)
    if not config.prompt.strip():
        raise RunConfigError(f"A prompt is required for the {config.workflow} workflow")
    if config.workflow == Workflow.LOCAL and config.branch_strategy in (BranchStrategy.REUSE, BranchStrategy.SKIP):
        if not config.branch_name.strip():
            raise RunConfigError(f"Branch strategy '{config.branch_strategy}' requires a branch name")
    if config.parallelism is not None and config.parallelism < 1:
        raise RunConfigError(f"Parallelism must be at least 1, got {config.parallelism}")


class JobOrchestrator:
    def __init__(
        self,
        stream: EventStream,
        workflow: JobWorkflow,
        registry: CancellationRegistry | None = None,
        session_logger: SessionLogger | None = None,
    ):
        self._sender = StatusSender(stream)
        self._workflow = workflow
        self._registry = registry or CancellationRegistry()
        self._session_logger = session_logger

        self._results: dict[str, JobResult] = {}
        self._waiting: set[str] = set()
        self._precancelled: set[str] = set()
        self._denials: dict[str, list[str]] = {}
        self._checkpoint = Checkpoint(interval=0, total=0)
        self._resumed = asyncio.Event()
        self._aborted = False

    @property
    def paused(self) -> bool:
        return self._checkpoint.paused

    @property
    def results(self) -> dict[str, JobResult]:
        return dict(self._results)

    async def run(self, projects: Sequence[Project], config: RunConfig) -> dict[str, JobResult]:
        """Run every project to a terminal result. Raises RunConfigError before starting anything."""
        validate_run(projects, config)
        projects = list(projects)

        self._results = {}
        self._waiting = {p.repo for p in projects}
        self._precancelled = set()
        self._denials = {}
        self._aborted = False
        # issue runs never pause
        interval = 0 if config.workflow == Workflow.ISSUE else config.checkpoint_interval
        self._checkpoint = Checkpoint(interval=interval, total=len(projects))
        semaphore = asyncio.Semaphore(config.parallelism or DEFAULT_PARALLELISM)

        logger.info(
            f"Starting {config.workflow} run on {len(projects)} repo(s) | "
            f"parallelism={config.parallelism or DEFAULT_PARALLELISM} | checkpoint={self._checkpoint.interval}"
        )
        try:
            for batch in self._checkpoint.batches(projects):
                await asyncio.gather(*(self._run_job(p, config, semaphore) for p in batch))
                if self._checkpoint.paused and not self._aborted:
                    self._resumed.clear()
                    await self._sender.checkpoint(self._checkpoint.completed, self._checkpoint.total)
                    await self._resumed.wait()

            if self._aborted:
                await self._sender.post_status("Run aborted, skipping post-processing")
            else:
                await self._post_process(projects, config)
        finally:
            await self._sender.finish()
        return dict(self._results)

    def cancel(self, repo: str) -> bool:
        """Cancel a running or waiting job. Returns False when the repo has nothing left to cancel."""
        if self._registry.cancel(repo):
            return True
        if repo in self._waiting and repo not in self._precancelled:
            logger.info(f"[{repo}] Cancelled before start")
            self._precancelled.add(repo)
            return True
        return False

    def abort(self) -> list[str]:
        """Cancel every running and waiting job, and release a pending checkpoint."""
        self._aborted = True
        cancelled = self._registry.cancel_all()
        for repo in self._waiting - self._precancelled:
            self._precancelled.add(repo)
            cancelled.append(repo)
        self.resume()
        return cancelled

    def resume(self) -> None:
        if not self._checkpoint.paused:
            return
        logger.info("Resuming after checkpoint")
        self._checkpoint.resume()
        self._resumed.set()

    def record_verdict(self, request: PermissionRequest, response: PermissionResponse) -> None:
        """Remember denied commands so a later failure can say what was refused."""
        if response.approved or request.is_question:
            return
        self._denials.setdefault(request.repo, []).append(request.display())

    async def _run_job(self, project: Project, config: RunConfig, semaphore: asyncio.Semaphore) -> None:
        repo = project.repo
        async with semaphore:
            self._waiting.discard(repo)
            if repo in self._precancelled:
                result = JobResult.cancelled(repo)
            else:
                result = await self._execute(project, config)
        self._results[repo] = result
        self._checkpoint.record_completion()
        await self._sender.done(result)

    async def _execute(self, project: Project, config: RunConfig) -> JobResult:
        repo = project.repo
        ctx = JobContext(project=project, run=config, status=partial(self._sender.update_status, repo))
        # no await between leaving the waiting set and registering the trigger
        task = asyncio.create_task(self._pipeline(ctx), name=f"job:{repo}")
        self._registry.register(repo, task.cancel)
        try:
            await asyncio.wait({task})
        finally:
            self._registry.unregister(repo, task.cancel)
            if not task.done():
                task.cancel()

        result = self._outcome(repo, task, ctx)
        self._save_session(ctx, result)
        return result

    async def _pipeline(self, ctx: JobContext) -> JobResult:
        await ctx.status("Starting...")
        return await self._workflow.run(ctx)

    def _outcome(self, repo: str, task: asyncio.Task, ctx: JobContext) -> JobResult:
        if task.cancelled():
            return JobResult.cancelled(repo, output=ctx.output)
        exc = task.exception()
        if exc is None:
            return task.result()
        if isinstance(exc, JobSkipped):
            return JobResult.skipped(repo, str(exc))
        if isinstance(exc, JobError):
            return JobResult.failed(repo, self._with_denials(repo, str(exc)), output=ctx.output)
        logger.error(f"[{repo}] Unexpected error: {exc}", exc_info=exc)
        return JobResult.failed(repo, self._with_denials(repo, f"unexpected error: {exc}"), output=ctx.output)

    def _with_denials(self, repo: str, error: str) -> str:
        denied = self._denials.get(repo)
        if not denied:
            return error
        return f"{error} (denied: {', '.join(denied)})"

    def _save_session(self, ctx: JobContext, result: JobResult) -> None:
        if self._session_logger is None or not ctx.output:
            return
        metadata = {
            "repo": ctx.repo,
            "workflow": str(ctx.run.workflow),
            "status": str(result.status),
            "message": result.message,
            "prompt": ctx.run.prompt,
        }
        self._session_logger.save(ctx.output, metadata, ctx.repo)

    async def _post_process(self, projects: list[Project], config: RunConfig) -> None:
        try:
            await self._workflow.post_process(projects, self._results, config, self._sender)
        except Exception as e:
            logger.error(f"Post-processing failed: {e}", exc_info=True)
            await self._sender.post_status(f"Post-processing failed: {e}")
