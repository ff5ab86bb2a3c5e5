"""flotilla: run an AI coding agent across many repositories and open pull requests.

    flotilla run api-service web-app:#team-web --prompt "Bump the base image to 3.12"
"""

import asyncio
import contextlib
import logging
import os
import sys
from pathlib import Path
from typing import Optional

import typer
from slack_sdk import WebClient

from agents.tools import DEFAULT_TOOLS, AITool, tool_by_name
from log_config import setup_logging
from notifications.slack import SlackNotifier
from orchestration.cancellation import CancellationRegistry
from orchestration.events import EventStream, InputClosedEvent, UserInputEvent
from orchestration.jobs import (
    BranchStrategy,
    JobResult,
    JobStatus,
    Project,
    RetryMode,
    RunConfig,
    RunConfigError,
    Workflow,
    select_retry,
    tally,
)
from orchestration.orchestrator import JobOrchestrator, validate_run
from orchestration.workflows import build_workflow
from permissions.handler import MediationUnavailable, run_from_env
from permissions.mcp_config import generate_mcp_config
from permissions.server import PermissionServer
from session_loggers.file_logger import FileSessionLogger
from settings import MAX_PARALLELISM, Settings, load_settings
from supervisor.board import JobBoard
from supervisor.console import HELP, ConsoleFrontend, start_input_reader, summarize
from supervisor.loop import SupervisorLoop
from vcs.github import GitHubClient

logger = logging.getLogger("flotilla.cli")

DEFAULT_CHECKPOINT_INTERVAL = 5

RETRY_CHOICES = {"r": RetryMode.FAILED, "a": RetryMode.ALL}

app = typer.Typer(no_args_is_help=True)


def _needs_permission_server(config: RunConfig, tool: AITool) -> bool:
    return config.workflow == Workflow.LOCAL and tool.supports_permission_prompt


async def _run_once(
    stream: EventStream,
    github: GitHubClient,
    tool: AITool,
    notifier: SlackNotifier | None,
    projects: list[Project],
    config: RunConfig,
    interactive: bool = True,
) -> dict[str, JobResult]:
    server = None
    cleanup = None
    mcp_config_path = None
    if _needs_permission_server(config, tool):
        server = PermissionServer(stream)
        port = await server.start()
        mcp_config_path, cleanup = generate_mcp_config(port)

    workflow = build_workflow(config.workflow, github, tool, notifier, mcp_config_path)
    orchestrator = JobOrchestrator(stream, workflow, CancellationRegistry(), FileSessionLogger())
    if server is not None:
        server.on_verdict = orchestrator.record_verdict

    supervisor = SupervisorLoop(stream, orchestrator, JobBoard(projects), ConsoleFrontend(), interactive=interactive)
    supervisor_task = asyncio.create_task(supervisor.run(), name="supervisor")
    try:
        await orchestrator.run(projects, config)
        return await supervisor_task
    finally:
        if not supervisor_task.done():
            supervisor_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await supervisor_task
        if server is not None:
            await server.shutdown()
        if cleanup is not None:
            cleanup()


async def _ask(stream: EventStream, question: str) -> str:
    typer.echo(question)
    while True:
        event = await stream.next()
        if isinstance(event, UserInputEvent):
            return event.line.strip().lower()
        if isinstance(event, InputClosedEvent):
            return ""


async def _supervise(settings: Settings, tool: AITool, projects: list[Project], config: RunConfig) -> dict[str, JobResult]:
    stream = EventStream()
    stream.bind(asyncio.get_running_loop())
    interactive = sys.stdin.isatty()
    reader = start_input_reader(stream, sys.stdin)

    github = GitHubClient(settings.github_org, settings.workspace_dir)
    notifier = None
    if config.notify and config.workflow != Workflow.ISSUE:
        if settings.slack_bot_token:
            notifier = SlackNotifier(WebClient(token=settings.slack_bot_token))
        else:
            typer.echo("SLACK_BOT_TOKEN not set, Slack notifications disabled")

    typer.echo(HELP)
    results: dict[str, JobResult] = {}
    while True:
        batch = await _run_once(stream, github, tool, notifier, projects, config, interactive and reader.is_alive())
        results.update(batch)

        typer.echo(typer.style("\n=== Results ===", bold=True))
        summarize(batch.values())
        typer.echo(str(tally(batch.values())))

        if not interactive or not reader.is_alive() or all(r.status == JobStatus.SUCCEEDED for r in batch.values()):
            return results
        choice = await _ask(stream, "Retry? [r] failed only  [a] everything unfinished  [q] quit")
        mode = RETRY_CHOICES.get(choice)
        if mode is None:
            return results
        projects = select_retry(projects, batch, mode)
        if not projects:
            typer.echo("Nothing to retry")
            return results
        logger.info(f"Retrying {len(projects)} repo(s) ({mode})")


def _read_prompt(prompt: Optional[str], prompt_file: Optional[Path]) -> str:
    if prompt and prompt_file:
        raise typer.BadParameter("Use either --prompt or --prompt-file, not both")
    if prompt_file:
        try:
            return prompt_file.read_text()
        except OSError as e:
            raise typer.BadParameter(f"Cannot read {prompt_file}: {e}") from e
    return prompt or ""


@app.command()
def run(
    repos: list[str] = typer.Argument(..., help="Repositories, as `repo` or `repo:#slack-channel`"),
    prompt: Optional[str] = typer.Option(None, help="Instructions for the agent (issue body for --workflow issue)"),
    prompt_file: Optional[Path] = typer.Option(None, help="Read the prompt from a file"),
    pr_title: str = typer.Option("", help="PR or issue title (defaults to the first prompt line)"),
    workflow: Workflow = typer.Option(Workflow.LOCAL),
    branch_strategy: BranchStrategy = typer.Option(BranchStrategy.NEW),
    branch_name: str = typer.Option("", help="Branch for the reuse and skip strategies"),
    ai_tool: Optional[str] = typer.Option(None, help="AI tool to run (see `flotilla tools`)"),
    parallelism: Optional[int] = typer.Option(None, help=f"Concurrent jobs, 1-{MAX_PARALLELISM}"),
    checkpoint: bool = typer.Option(False, help="Pause after every batch of repos"),
    checkpoint_interval: int = typer.Option(DEFAULT_CHECKPOINT_INTERVAL, help="Repos per checkpoint batch (min 5)"),
    notify: bool = typer.Option(True, help="Post results to the projects' Slack channels"),
    assignee: Optional[str] = typer.Option(None, help="Issue assignee for --workflow issue"),
):
    """Run one workflow across the given repositories."""
    setup_logging("flotilla", console_level=logging.WARNING)
    settings = load_settings()

    try:
        tool = tool_by_name(ai_tool or settings.ai_tool)
    except ValueError as e:
        raise typer.BadParameter(str(e), param_hint="--ai-tool") from e

    try:
        projects = [Project.parse(spec) for spec in repos]
        config = RunConfig(
            prompt=_read_prompt(prompt, prompt_file),
            workflow=workflow,
            pr_title=pr_title,
            branch_strategy=branch_strategy,
            branch_name=branch_name,
            parallelism=min(parallelism or settings.parallelism, MAX_PARALLELISM),
            checkpoint_interval=checkpoint_interval if checkpoint else 0,
            notify=notify,
            issue_assignee=assignee or settings.issue_assignee,
        )
        validate_run(projects, config)
    except RunConfigError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(2)

    if not settings.github_org and any("/" not in p.repo for p in projects):
        typer.echo("Error: FLOTILLA_GITHUB_ORG is not set; pass repos as owner/name", err=True)
        raise typer.Exit(2)

    logger.info(f"Run started: {config.workflow} on {len(projects)} repo(s) with {tool.name}")
    results = asyncio.run(_supervise(settings, tool, projects, config))
    if any(r.status == JobStatus.FAILED for r in results.values()):
        raise typer.Exit(1)


@app.command("permission-handler")
def permission_handler():
    """MCP permission server spawned by the AI agent. Not meant to be run by hand."""
    setup_logging("flotilla", stream=sys.stderr, filename="permission_handler")
    try:
        run_from_env(os.environ)
    except MediationUnavailable as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


@app.command()
def tools():
    """List the AI tools flotilla knows how to drive."""
    for tool in DEFAULT_TOOLS:
        extra = " (permission prompts)" if tool.supports_permission_prompt else ""
        typer.echo(f"{tool.name}: {tool.command} {' '.join(tool.code_args)}{extra}")


if __name__ == "__main__":
    app()
