"""The supervisor: single consumer of the run's event stream.

Handles one event at a time and never awaits a job. Permission requests go
through the ApprovalSession; user input lines arrive as UserInputEvents from
the console reader thread. The loop ends on ProcessingDoneEvent and closes the
session on the way out, so nothing it accepted is left without a reply.
"""

import logging

from orchestration.events import (
    AssessmentEvent,
    CheckpointEvent,
    Event,
    EventStream,
    InputClosedEvent,
    JobDoneEvent,
    JobStatusEvent,
    PostStatusEvent,
    ProcessingDoneEvent,
    UserInputEvent,
)
from orchestration.jobs import JobResult
from orchestration.orchestrator import JobOrchestrator
from permissions.session import ApprovalSession, SessionError
from permissions.types import PermissionExpiredEvent, PermissionRequest, PermissionRequestEvent, PermissionResponse
from supervisor.board import JobBoard
from supervisor.console import HELP, Frontend

logger = logging.getLogger("flotilla.supervisor")


class SupervisorLoop:
    def __init__(
        self,
        stream: EventStream,
        orchestrator: JobOrchestrator,
        board: JobBoard,
        frontend: Frontend,
        session: ApprovalSession | None = None,
        interactive: bool = True,
    ):
        self._stream = stream
        self._orchestrator = orchestrator
        self._board = board
        self._frontend = frontend
        self.session = session or ApprovalSession()
        self._cancelled: set[str] = set()
        self._input_closed = not interactive
        self.done = False

    async def run(self) -> dict[str, JobResult]:
        try:
            while not self.done:
                self.dispatch(await self._stream.next())
        finally:
            self.session.close()
        return self._board.results()

    def dispatch(self, event: Event) -> None:
        if isinstance(event, JobStatusEvent):
            job = self._board.apply_status(event)
            if job is not None:
                self._frontend.job_status(job)
        elif isinstance(event, JobDoneEvent):
            self._job_done(event.result)
        elif isinstance(event, PermissionRequestEvent):
            self._permission_requested(event.request)
        elif isinstance(event, PermissionExpiredEvent):
            self._permission_expired(event.request)
        elif isinstance(event, UserInputEvent):
            self.handle_input(event.line)
        elif isinstance(event, InputClosedEvent):
            self._input_ended()
        elif isinstance(event, CheckpointEvent):
            self._checkpoint(event)
        elif isinstance(event, PostStatusEvent):
            self._frontend.post_status(event.line)
        elif isinstance(event, AssessmentEvent):
            self._frontend.assessment(event.summary, event.findings)
        elif isinstance(event, ProcessingDoneEvent):
            logger.info(f"Processing done: {self._board.tally()}")
            self.done = True
        else:
            logger.warning(f"Unhandled event: {event!r}")

    # ── input ─────────────────────────────────────────────────────

    def handle_input(self, line: str) -> None:
        text = line.strip()
        command, _, arg = text.partition(" ")

        if command == "x" and arg.strip():
            self.cancel(arg.strip())
        elif text == "s":
            self._frontend.board(self._board)
        elif text == "q":
            self.abort()
        elif text in ("?", "h", "help"):
            self._frontend.notice(HELP)
        elif self.session.current is not None:
            self._answer(text)
        elif text == "" and self._orchestrator.paused:
            self._frontend.notice("Resuming...")
            self._orchestrator.resume()
        elif text:
            self._frontend.notice(f"Unknown command {text!r}. {HELP}")

    def _answer(self, text: str) -> None:
        session = self.session
        shown = session.current
        if session.prune() and session.current is not shown:
            self._frontend.notice("That permission request already timed out and was denied")
            self._frontend.permission_prompt(session)
            return
        try:
            if text == "":
                session.confirm()
            elif text in ("j", "k"):
                session.move_cursor(1 if text == "j" else -1)
            elif text.isdigit():
                session.select_option(int(text) - 1)
            elif text == "y":
                session.approve()
            elif text == "n":
                session.deny()
            elif text == "a":
                session.approve_all()
            else:
                self._frontend.notice(f"Unknown answer {text!r}. {HELP}")
                return
        except SessionError as e:
            self._frontend.notice(str(e))
            return
        self._frontend.permission_prompt(session)

    # ── actions ───────────────────────────────────────────────────

    def cancel(self, repo: str) -> bool:
        if repo not in self._board:
            self._frontend.notice(f"Unknown repo {repo!r}")
            return False
        if self._board.is_terminal(repo):
            self._frontend.notice(f"{repo} already finished")
            return False

        fired = self._orchestrator.cancel(repo)
        self._cancelled.add(repo)
        shown = self.session.current
        withdrawn = self.session.withdraw(repo)
        message = f"Cancelling {repo}" if fired else f"Nothing running for {repo}"
        if withdrawn:
            message += f", denied {withdrawn} pending permission request(s)"
        self._frontend.notice(message)
        if shown is not None and self.session.current is not shown:
            self._frontend.permission_prompt(self.session)
        return fired

    def abort(self) -> None:
        cancelled = self._orchestrator.abort()
        self._cancelled.update(cancelled)
        denied = self.session.close()
        self._frontend.notice(f"Aborting: cancelled {len(cancelled)} job(s), denied {denied} permission request(s)")

    # ── events ────────────────────────────────────────────────────

    def _job_done(self, result: JobResult) -> None:
        job = self._board.apply_done(result)
        if job is None:
            return
        self._frontend.job_done(job)
        shown = self.session.current
        self.session.withdraw(result.repo)
        if shown is not None and self.session.current is not shown:
            self._frontend.permission_prompt(self.session)

    def _permission_requested(self, request: PermissionRequest) -> None:
        if self.session.closed or request.repo in self._cancelled or self._board.is_terminal(request.repo):
            logger.info(f"[{request.repo}] Denying request from a cancelled or finished job")
            request.reply.send(PermissionResponse.deny())
            return
        if request.reply.sent:
            logger.info(f"[{request.repo}] Request {request.id} already settled, not displaying")
            return
        if not self.session.arrive(request):
            self._frontend.notice(f"[{request.repo}] Auto-approved: {request.display()}")
            return
        if self.session.current is request:
            self._frontend.permission_prompt(self.session)
        else:
            self._frontend.notice(f"[{request.repo}] Permission request queued ({len(self.session.pending)} pending)")

    def _permission_expired(self, request: PermissionRequest) -> None:
        if self.session.expire(request):
            self._frontend.notice(f"[{request.repo}] Permission request timed out and was denied")
            self._frontend.permission_prompt(self.session)

    def _checkpoint(self, event: CheckpointEvent) -> None:
        self._frontend.checkpoint(event.completed, event.total)
        if self._input_closed:
            self._frontend.notice("No input available, continuing")
            self._orchestrator.resume()

    def _input_ended(self) -> None:
        logger.info("Input closed")
        self._input_closed = True
        if self._orchestrator.paused:
            self._frontend.notice("Input closed, continuing")
            self._orchestrator.resume()
