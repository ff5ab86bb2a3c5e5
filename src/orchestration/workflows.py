"""Per-repository pipelines.

A workflow turns one Project into one JobResult. Steps report progress
through JobContext.status; expected failures are raised as JobError (or
JobSkipped) and turned into terminal results by the orchestrator. Each workflow
also gets a post-processing hook that runs once after every job has finished.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Protocol

from agents.runner import AgentError, assess, generate_pr_description, run_agent, summarize_findings
from agents.tools import AITool
from notifications.slack import SlackNotifier
from orchestration.events import StatusSender
from orchestration.jobs import JobResult, JobStatus, NoChangesError, Project, RunConfig, Workflow
from vcs import git
from vcs.github import GitHubClient

logger = logging.getLogger("flotilla.workflows")


@dataclass
class JobContext:
    project: Project
    run: RunConfig
    status: Callable[[str], Awaitable[None]]
    output: str = ""

    @property
    def repo(self) -> str:
        return self.project.repo


class JobWorkflow(Protocol):
    async def run(self, ctx: JobContext) -> JobResult: ...

    async def post_process(
        self,
        projects: Sequence[Project],
        results: Mapping[str, JobResult],
        run: RunConfig,
        sender: StatusSender,
    ) -> None: ...


def _succeeded(projects: Sequence[Project], results: Mapping[str, JobResult]) -> list[Project]:
    return [p for p in projects if p.repo in results and results[p.repo].status == JobStatus.SUCCEEDED]


class LocalChangeWorkflow:
    """Clone, branch, run the agent, and open a pull request with whatever it changed."""

    def __init__(
        self,
        github: GitHubClient,
        tool: AITool,
        notifier: SlackNotifier | None = None,
        mcp_config_path: str | None = None,
    ):
        self._github = github
        self._tool = tool
        self._notifier = notifier
        self.mcp_config_path = mcp_config_path

    async def run(self, ctx: JobContext) -> JobResult:
        run = ctx.run
        await ctx.status("Preparing repository...")
        path = await self._github.ensure_clone(ctx.repo)
        await git.ensure_clean(path)

        await ctx.status("Selecting branch...")
        branch = await git.select_or_create_branch(path, run.branch_strategy, run.branch_name, run.title)

        await ctx.status(f"Running {self._tool.name} on {branch}...")
        try:
            ctx.output = await run_agent(self._tool, run.prompt, path, ctx.repo, self.mcp_config_path)
        except AgentError as e:
            ctx.output = e.output
            raise

        await ctx.status("Checking for changes...")
        if not await git.has_changes(path):
            raise NoChangesError("agent made no changes")

        await ctx.status("Generating PR description...")
        try:
            description = await generate_pr_description(self._tool, ctx.output, path)
        except AgentError as e:
            logger.warning(f"[{ctx.repo}] {e}; using the prompt as PR body")
            description = ""
        body = description or run.prompt

        await ctx.status("Pushing changes...")
        await git.commit_and_push(path, branch, run.title)

        await ctx.status("Creating pull request...")
        url = await self._github.create_pull_request(path, branch, run.title, body)
        return JobResult.succeeded(ctx.repo, f"PR created: {url}", output=ctx.output, pr_url=url)

    async def post_process(self, projects, results, run, sender) -> None:
        if not run.notify or self._notifier is None:
            return
        successful = _succeeded(projects, results)
        if not successful:
            return
        await sender.post_status("Sending Slack notifications...")
        pr_urls = {p.repo: results[p.repo].pr_url or "" for p in successful}
        lines = await asyncio.to_thread(self._notifier.notify_pull_requests, successful, run.title, pr_urls)
        for line in lines:
            await sender.post_status(line)


class IssueWorkflow:
    """Open one GitHub issue per repository instead of running an agent locally."""

    def __init__(self, github: GitHubClient):
        self._github = github

    async def run(self, ctx: JobContext) -> JobResult:
        await ctx.status("Creating issue...")
        url = await self._github.create_issue(ctx.repo, ctx.run.title, ctx.run.prompt, ctx.run.issue_assignee)
        return JobResult.succeeded(ctx.repo, f"Issue created: {url}", pr_url=url)

    async def post_process(self, projects, results, run, sender) -> None:
        return None


class AssessmentWorkflow:
    """Ask the agent a read-only question in every repository, then summarize."""

    def __init__(self, github: GitHubClient, tool: AITool, notifier: SlackNotifier | None = None):
        self._github = github
        self._tool = tool
        self._notifier = notifier

    async def run(self, ctx: JobContext) -> JobResult:
        await ctx.status("Preparing repository...")
        path = await self._github.ensure_clone(ctx.repo)
        await ctx.status(f"Assessing with {self._tool.name}...")
        try:
            ctx.output = await assess(self._tool, ctx.run.prompt, path, ctx.repo)
        except AgentError as e:
            ctx.output = e.output
            raise
        return JobResult.succeeded(ctx.repo, "Assessment complete", output=ctx.output)

    async def post_process(self, projects, results, run, sender) -> None:
        assessed = _succeeded(projects, results)
        findings = {p.repo: results[p.repo].output for p in assessed}
        if not findings:
            return

        await sender.post_status(f"Summarizing findings from {len(findings)} repo(s)...")
        try:
            summary = await summarize_findings(self._tool, findings)
        except AgentError as e:
            logger.error(f"Summary failed: {e}")
            await sender.post_status(f"Failed to summarize findings: {e}")
            summary = ""
        await sender.assessment(summary, findings)

        if run.notify and self._notifier is not None:
            lines = await asyncio.to_thread(self._notifier.notify_findings, assessed, run.prompt, findings)
            for line in lines:
                await sender.post_status(line)


def build_workflow(
    workflow: Workflow,
    github: GitHubClient,
    tool: AITool,
    notifier: SlackNotifier | None = None,
    mcp_config_path: str | None = None,
) -> JobWorkflow:
    if workflow == Workflow.LOCAL:
        return LocalChangeWorkflow(github, tool, notifier, mcp_config_path)
    if workflow == Workflow.ISSUE:
        return IssueWorkflow(github)
    if workflow == Workflow.ASSESSMENT:
        return AssessmentWorkflow(github, tool, notifier)
    raise ValueError(f"Unknown workflow: {workflow}")
