"""Approval session: which permission prompt is on screen and what waits behind it.

The session is a pure state machine. It owns the FIFO of pending requests and
the set of auto-approved command patterns for one processing run, and it is the
only place that sends replies for requests it has accepted.

States
- idle: nothing displayed, queue empty.
- displaying: one request displayed, zero or more queued.

Transitions
- arrive(): command requests whose pattern was approved-all resolve at once
  (approved) and never become visible. Otherwise the request is displayed when
  idle, or appended to the queue.
- approve() / deny() / approve_all(): resolve the displayed command request.
  approve_all() also records its pattern and drains every queued request with
  the same pattern.
- select_option(): answer the current question of a displayed question request.
  A request with several questions stays displayed until each has an answer.
- advance (internal): the next queued request is displayed, skipping any that
  now match an approved pattern.
- expire() / prune(): drop requests whose reply slot was already settled
  elsewhere (server timeout or shutdown). Such requests are never displayed.

Patterns are the command's first token plus " *" (see extract_pattern). That is
a coarse convenience for the supervisor, not a security boundary.
"""

import logging
from collections import deque
from enum import StrEnum

from permissions.types import CommandPrompt, PermissionRequest, PermissionResponse, Question, QuestionPrompt

logger = logging.getLogger("flotilla.approval_session")

COMMAND_CHOICES = ("Approve", "Deny", "Approve all")


class SessionState(StrEnum):
    IDLE = "idle"
    DISPLAYING = "displaying"


class SessionError(Exception):
    pass


class ApprovalSession:
    def __init__(self):
        self._current: PermissionRequest | None = None
        self._queue: deque[PermissionRequest] = deque()
        self._approved_patterns: set[str] = set()
        self._answers: list[str] = []
        self._cursor = 0
        self._closed = False

    # ── inspection ────────────────────────────────────────────────

    @property
    def state(self) -> SessionState:
        return SessionState.DISPLAYING if self._current is not None else SessionState.IDLE

    @property
    def current(self) -> PermissionRequest | None:
        return self._current

    @property
    def pending(self) -> tuple[PermissionRequest, ...]:
        return tuple(self._queue)

    @property
    def approved_patterns(self) -> frozenset[str]:
        return frozenset(self._approved_patterns)

    @property
    def cursor(self) -> int:
        return self._cursor

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def current_question(self) -> Question | None:
        if self._current is None or not isinstance(self._current.prompt, QuestionPrompt):
            return None
        return self._current.prompt.questions[len(self._answers)]

    def choices(self) -> tuple[str, ...]:
        """Labels the cursor moves over for the displayed request."""
        if self._current is None:
            return ()
        question = self.current_question
        if question is not None:
            return tuple(o.label for o in question.options)
        return COMMAND_CHOICES

    # ── arrival ───────────────────────────────────────────────────

    def arrive(self, request: PermissionRequest) -> bool:
        """Accept a new request. Returns False when it was auto-resolved."""
        if self._closed:
            logger.warning(f"Request {request.id} arrived after session close, denying")
            self._reply(request, PermissionResponse.deny())
            return False

        if request.reply.sent:
            logger.debug(f"[{request.repo}] Request {request.id} already settled, not displaying")
            return False

        if self._is_auto_approved(request):
            logger.info(f"[{request.repo}] Auto-approved {request.display()!r} ({request.pattern})")
            self._reply(request, PermissionResponse.approve())
            return False

        if self._current is None:
            self._show(request)
        else:
            self._queue.append(request)
            logger.debug(f"Queued request {request.id} ({len(self._queue)} pending)")
        return True

    # ── resolution ────────────────────────────────────────────────

    def approve(self) -> PermissionRequest:
        request = self._require_command()
        self._reply(request, PermissionResponse.approve())
        self._advance()
        return request

    def deny(self) -> PermissionRequest:
        request = self._require_command()
        self._reply(request, PermissionResponse.deny())
        self._advance()
        return request

    def approve_all(self) -> PermissionRequest:
        request = self._require_command()
        pattern = request.pattern
        self._approved_patterns.add(pattern)
        logger.info(f"Pattern {pattern!r} approved for the rest of the session")
        self._reply(request, PermissionResponse.approve())
        self._drain_auto_approved()
        self._advance()
        return request

    def select_option(self, index: int) -> PermissionRequest | None:
        """Answer the displayed question with option `index` (0-based).

        Returns the request once every question has been answered, None while
        more questions remain.
        """
        question = self.current_question
        if question is None:
            raise SessionError("No question is displayed")
        if not 0 <= index < len(question.options):
            raise SessionError(f"Option {index + 1} is out of range (1-{len(question.options)})")

        self._answers.append(question.options[index].label)
        self._cursor = 0
        request = self._current
        if len(self._answers) < len(request.prompt.questions):
            return None

        answer = "; ".join(self._answers)
        self._reply(request, PermissionResponse.answered(answer))
        self._advance()
        return request

    def move_cursor(self, delta: int) -> int:
        choices = self.choices()
        if not choices:
            return 0
        self._cursor = max(0, min(len(choices) - 1, self._cursor + delta))
        return self._cursor

    def confirm(self) -> PermissionRequest | None:
        """Apply whatever the cursor points at."""
        if self._current is None:
            raise SessionError("No prompt is displayed")
        if self._current.is_question:
            return self.select_option(self._cursor)
        action = (self.approve, self.deny, self.approve_all)[self._cursor]
        return action()

    # ── teardown ──────────────────────────────────────────────────

    def withdraw(self, repo: str) -> int:
        """Deny and drop every displayed or queued request owned by `repo`."""
        withdrawn = 0
        remaining: deque[PermissionRequest] = deque()
        for request in self._queue:
            if request.repo == repo:
                self._reply(request, PermissionResponse.deny())
                withdrawn += 1
            else:
                remaining.append(request)
        self._queue = remaining

        if self._current is not None and self._current.repo == repo:
            self._reply(self._current, PermissionResponse.deny())
            withdrawn += 1
            self._advance()

        if withdrawn:
            logger.info(f"[{repo}] Withdrew {withdrawn} pending permission request(s)")
        return withdrawn

    def expire(self, request: PermissionRequest) -> bool:
        """Forget a request the server gave up on. Returns True if it was on screen."""
        if self._current is request:
            logger.info(f"[{request.repo}] Displayed request {request.id} expired")
            self._advance()
            return True
        self._queue = deque(r for r in self._queue if r is not request)
        return False

    def prune(self) -> int:
        """Drop every displayed or queued request that already has a reply."""
        before = len(self._queue)
        self._queue = deque(r for r in self._queue if not r.reply.sent)
        dropped = before - len(self._queue)
        if self._current is not None and self._current.reply.sent:
            self._advance()
            dropped += 1
        return dropped

    def close(self) -> int:
        """End the session; everything still waiting is denied."""
        denied = 0
        if self._current is not None:
            self._reply(self._current, PermissionResponse.deny())
            denied += 1
        while self._queue:
            self._reply(self._queue.popleft(), PermissionResponse.deny())
            denied += 1
        self._current = None
        self._answers = []
        self._closed = True
        if denied:
            logger.info(f"Session closed, denied {denied} pending request(s)")
        return denied

    # ── internals ─────────────────────────────────────────────────

    def _is_auto_approved(self, request: PermissionRequest) -> bool:
        return isinstance(request.prompt, CommandPrompt) and request.pattern in self._approved_patterns

    def _require_command(self) -> PermissionRequest:
        if self._current is None:
            raise SessionError("No prompt is displayed")
        if self._current.is_question:
            raise SessionError("Question prompts are answered by selecting an option")
        return self._current

    def _show(self, request: PermissionRequest) -> None:
        self._current = request
        self._answers = []
        self._cursor = 0

    def _advance(self) -> None:
        self._current = None
        self._answers = []
        self._cursor = 0
        while self._queue:
            nxt = self._queue.popleft()
            if nxt.reply.sent:
                continue
            if self._is_auto_approved(nxt):
                self._reply(nxt, PermissionResponse.approve())
                continue
            self._show(nxt)
            return

    def _drain_auto_approved(self) -> None:
        remaining: deque[PermissionRequest] = deque()
        for request in self._queue:
            if self._is_auto_approved(request):
                self._reply(request, PermissionResponse.approve())
            else:
                remaining.append(request)
        self._queue = remaining

    @staticmethod
    def _reply(request: PermissionRequest, response: PermissionResponse) -> None:
        if not request.reply.send(response):
            logger.debug(f"Request {request.id} already answered (timed out or shut down)")
