"""Line-oriented terminal frontend for the supervisor loop."""

import logging
import threading
from collections.abc import Iterable, Mapping
from typing import Protocol

import typer

from orchestration.events import EventStream, InputClosedEvent, UserInputEvent
from orchestration.jobs import JobResult, JobStatus
from permissions.session import ApprovalSession
from supervisor.board import JobBoard, RepoJob

logger = logging.getLogger("flotilla.console")

STATUS_COLORS = {
    JobStatus.WAITING: typer.colors.WHITE,
    JobStatus.RUNNING: typer.colors.CYAN,
    JobStatus.SUCCEEDED: typer.colors.GREEN,
    JobStatus.FAILED: typer.colors.RED,
    JobStatus.SKIPPED: typer.colors.YELLOW,
    JobStatus.CANCELLED: typer.colors.MAGENTA,
}

HELP = (
    "Commands: y approve | n deny | a approve all | <number> pick option | "
    "j/k move, Enter confirm | Enter resume after checkpoint | "
    "x <repo> cancel | s status | q abort"
)


class Frontend(Protocol):
    def job_status(self, job: RepoJob) -> None: ...

    def job_done(self, job: RepoJob) -> None: ...

    def post_status(self, line: str) -> None: ...

    def checkpoint(self, completed: int, total: int) -> None: ...

    def assessment(self, summary: str, findings: Mapping[str, str]) -> None: ...

    def permission_prompt(self, session: ApprovalSession) -> None: ...

    def board(self, board: JobBoard) -> None: ...

    def notice(self, line: str) -> None: ...


def _status_tag(status: JobStatus) -> str:
    return typer.style(f"[{status}]", fg=STATUS_COLORS.get(status), bold=status.terminal)


class ConsoleFrontend:
    def job_status(self, job: RepoJob) -> None:
        typer.echo(f"{_status_tag(job.status)} {job.repo}: {job.line}")

    def job_done(self, job: RepoJob) -> None:
        typer.echo(f"{_status_tag(job.status)} {job.repo}: {job.line}")

    def post_status(self, line: str) -> None:
        typer.echo(typer.style("»", fg=typer.colors.BLUE) + f" {line}")

    def checkpoint(self, completed: int, total: int) -> None:
        typer.echo(typer.style(
            f"Checkpoint: {completed}/{total} repos processed. Press Enter to continue, q to abort.",
            fg=typer.colors.YELLOW,
            bold=True,
        ))

    def assessment(self, summary: str, findings: Mapping[str, str]) -> None:
        typer.echo(typer.style("\n=== Assessment ===", bold=True))
        for repo, finding in findings.items():
            typer.echo(typer.style(f"\n## {repo}", bold=True))
            typer.echo(finding.strip())
        if summary:
            typer.echo(typer.style("\n=== Summary ===", bold=True))
            typer.echo(summary)

    def permission_prompt(self, session: ApprovalSession) -> None:
        request = session.current
        if request is None:
            return
        header = f"\n[{request.repo}] {request.tool_name}"
        if session.pending:
            header += f" ({len(session.pending)} more queued)"
        typer.echo(typer.style(header, fg=typer.colors.YELLOW, bold=True))

        question = session.current_question
        if question is not None:
            if question.header:
                typer.echo(typer.style(question.header, bold=True))
            typer.echo(question.text)
            for i, option in enumerate(question.options):
                marker = ">" if i == session.cursor else " "
                detail = f" - {option.description}" if option.description else ""
                typer.echo(f" {marker} {i + 1}. {option.label}{detail}")
            return

        typer.echo(f"  $ {request.display()}")
        choices = []
        for i, choice in enumerate(session.choices()):
            choices.append(typer.style(choice, underline=True) if i == session.cursor else choice)
        typer.echo(f"  {' / '.join(choices)}   (y / n / a {request.pattern!r})")

    def board(self, board: JobBoard) -> None:
        for job in board.jobs:
            typer.echo(f"{_status_tag(job.status)} {job.repo}: {job.line}")
        typer.echo(str(board.tally()))

    def notice(self, line: str) -> None:
        typer.echo(line)


def summarize(results: Iterable[JobResult]) -> None:
    for result in results:
        typer.echo(f"{_status_tag(result.status)} {result.repo}: {result.message}")


def start_input_reader(stream: EventStream, lines: Iterable[str]) -> threading.Thread:
    """Forward each input line onto the event stream from a daemon thread.

    At end of input an InputClosedEvent is published, so nothing keeps waiting
    for a keypress that cannot come.
    """

    def read() -> None:
        try:
            for line in lines:
                stream.publish_threadsafe(UserInputEvent(line=line.rstrip("\r\n")))
            stream.publish_threadsafe(InputClosedEvent())
        except RuntimeError as e:
            # event loop gone; the run is over
            logger.debug(f"Input reader stopped: {e}")

    thread = threading.Thread(target=read, name="stdin-reader", daemon=True)
    thread.start()
    return thread
