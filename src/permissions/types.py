import asyncio
import concurrent.futures
import uuid
from dataclasses import dataclass, field
from typing import Union

ASK_USER_QUESTION = "AskUserQuestion"

# Seconds a permission request may wait for a human before it is denied
PERMISSION_TIMEOUT = 300.0


@dataclass(frozen=True)
class QuestionOption:
    label: str
    description: str = ""


@dataclass(frozen=True)
class Question:
    text: str
    options: tuple[QuestionOption, ...]
    header: str = ""

    def __post_init__(self):
        if not self.options:
            raise ValueError(f"Question {self.text!r} has no options")


@dataclass(frozen=True)
class CommandPrompt:
    command: str

    @property
    def pattern(self) -> str:
        return extract_pattern(self.command)

    def display(self) -> str:
        return self.command


@dataclass(frozen=True)
class QuestionPrompt:
    questions: tuple[Question, ...]

    def __post_init__(self):
        if not self.questions:
            raise ValueError("QuestionPrompt needs at least one question")

    def display(self) -> str:
        return "; ".join(q.text for q in self.questions)


Prompt = Union[CommandPrompt, QuestionPrompt]


@dataclass(frozen=True)
class PermissionResponse:
    approved: bool
    answer: str | None = None

    @classmethod
    def approve(cls) -> "PermissionResponse":
        return cls(approved=True)

    @classmethod
    def deny(cls) -> "PermissionResponse":
        return cls(approved=False)

    @classmethod
    def answered(cls, answer: str) -> "PermissionResponse":
        # Questions never approve; the answer travels inside a denial.
        return cls(approved=False, answer=answer)


class ReplySlot:
    """Single-use delivery channel for one PermissionResponse.

    Backed by a concurrent.futures.Future so it can be resolved from any
    thread and awaited from the event loop. Only the first send() wins.
    """

    def __init__(self):
        self._future: concurrent.futures.Future[PermissionResponse] = concurrent.futures.Future()

    def send(self, response: PermissionResponse) -> bool:
        try:
            self._future.set_result(response)
        except concurrent.futures.InvalidStateError:
            return False
        return True

    @property
    def sent(self) -> bool:
        return self._future.done()

    @property
    def response(self) -> PermissionResponse | None:
        if not self._future.done() or self._future.cancelled():
            return None
        return self._future.result()

    def close(self) -> None:
        """Make every later send() a no-op (used after a timeout)."""
        self._future.cancel()

    async def wait(self) -> PermissionResponse:
        """Wait for the reply. A waiter that gives up closes the slot."""
        try:
            return await asyncio.wrap_future(self._future)
        except asyncio.CancelledError:
            self.close()
            raise


@dataclass
class PermissionRequest:
    repo: str
    tool_name: str
    prompt: Prompt
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    reply: ReplySlot = field(default_factory=ReplySlot, repr=False, compare=False)

    @property
    def is_question(self) -> bool:
        return isinstance(self.prompt, QuestionPrompt)

    @property
    def pattern(self) -> str | None:
        if isinstance(self.prompt, CommandPrompt):
            return self.prompt.pattern
        return None

    def display(self) -> str:
        return self.prompt.display()


@dataclass(frozen=True)
class PermissionRequestEvent:
    request: PermissionRequest


def extract_pattern(command: str) -> str:
    """Return the auto-approval pattern for a command: first token plus " *"."""
    parts = command.split()
    if not parts:
        return "*"
    return parts[0] + " *"


@dataclass(frozen=True)
class PermissionExpiredEvent:
    """The server stopped waiting for `request`; its prompt is dead."""

    request: PermissionRequest
