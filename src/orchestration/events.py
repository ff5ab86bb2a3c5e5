import asyncio
import logging
from dataclasses import dataclass, field
from typing import Union

from orchestration.jobs import JobResult, JobStatus
from permissions.types import PermissionExpiredEvent, PermissionRequestEvent

logger = logging.getLogger("flotilla.events")

DEFAULT_QUEUE_SIZE = 1024


@dataclass(frozen=True)
class JobStatusEvent:
    repo: str
    line: str
    status: JobStatus = JobStatus.RUNNING


@dataclass(frozen=True)
class JobDoneEvent:
    result: JobResult

    @property
    def repo(self) -> str:
        return self.result.repo


@dataclass(frozen=True)
class PostStatusEvent:
    line: str


@dataclass(frozen=True)
class CheckpointEvent:
    completed: int
    total: int


@dataclass(frozen=True)
class AssessmentEvent:
    summary: str
    findings: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class UserInputEvent:
    line: str


@dataclass(frozen=True)
class InputClosedEvent:
    """stdin reached EOF; no more UserInputEvents will arrive."""


@dataclass(frozen=True)
class ProcessingDoneEvent:
    pass


Event = Union[
    JobStatusEvent,
    JobDoneEvent,
    PostStatusEvent,
    CheckpointEvent,
    AssessmentEvent,
    PermissionRequestEvent,
    PermissionExpiredEvent,
    UserInputEvent,
    InputClosedEvent,
    ProcessingDoneEvent,
]


class EventStream:
    """Bounded multi-producer, single-consumer queue of events.

    Producers only publish; the supervisor loop is the only caller of next().
    """

    def __init__(self, maxsize: int = DEFAULT_QUEUE_SIZE):
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=maxsize)
        self._loop: asyncio.AbstractEventLoop | None = None

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    async def publish(self, event: Event) -> None:
        await self._queue.put(event)

    def publish_threadsafe(self, event: Event) -> None:
        """Publish from a thread that is not running the event loop."""
        if self._loop is None:
            raise RuntimeError("EventStream is not bound to an event loop")
        future = asyncio.run_coroutine_threadsafe(self._queue.put(event), self._loop)
        future.result()

    async def next(self) -> Event:
        return await self._queue.get()

    def qsize(self) -> int:
        return self._queue.qsize()


class StatusSender:
    """Per-run facade jobs use to publish onto the event stream."""

    def __init__(self, stream: EventStream):
        self._stream = stream

    async def update_status(self, repo: str, line: str) -> None:
        logger.debug(f"[{repo}] {line}")
        await self._stream.publish(JobStatusEvent(repo=repo, line=line))

    async def done(self, result: JobResult) -> None:
        logger.info(f"[{result.repo}] {result.status}: {result.message}")
        await self._stream.publish(JobDoneEvent(result=result))

    async def post_status(self, line: str) -> None:
        logger.info(line)
        await self._stream.publish(PostStatusEvent(line=line))

    async def checkpoint(self, completed: int, total: int) -> None:
        logger.info(f"Checkpoint reached: {completed}/{total} repos processed")
        await self._stream.publish(CheckpointEvent(completed=completed, total=total))

    async def assessment(self, summary: str, findings: dict[str, str]) -> None:
        await self._stream.publish(AssessmentEvent(summary=summary, findings=dict(findings)))

    async def finish(self) -> None:
        await self._stream.publish(ProcessingDoneEvent())
