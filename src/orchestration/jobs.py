from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import StrEnum

CANCELLED_TAG = "cancelled"


class JobStatus(StrEnum):
    WAITING = "waiting"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self not in (JobStatus.WAITING, JobStatus.RUNNING)


class Workflow(StrEnum):
    LOCAL = "local"
    ISSUE = "issue"
    ASSESSMENT = "assessment"


class BranchStrategy(StrEnum):
    NEW = "new"
    REUSE = "reuse"
    SKIP = "skip"


class RetryMode(StrEnum):
    FAILED = "failed"
    ALL = "all"


class JobError(Exception):
    """A step of a job failed; the job is marked failed and the batch continues."""


class JobSkipped(JobError):
    """A precondition was not met; the job is marked skipped."""


class NoChangesError(JobError):
    pass


class RunConfigError(Exception):
    """Invalid run configuration, raised before any job starts."""


@dataclass(frozen=True)
class Project:
    repo: str
    slack_room: str | None = None

    @classmethod
    def parse(cls, spec: str) -> "Project":
        """Parse `repo` or `repo:#channel`."""
        repo, _, room = spec.partition(":")
        repo = repo.strip()
        if not repo:
            raise RunConfigError(f"Invalid project spec: {spec!r}")
        room = room.strip()
        if room and not room.startswith("#"):
            room = "#" + room
        return cls(repo=repo, slack_room=room or None)


@dataclass(frozen=True)
class RunConfig:
    prompt: str
    workflow: Workflow = Workflow.LOCAL
    pr_title: str = ""
    branch_strategy: BranchStrategy = BranchStrategy.NEW
    branch_name: str = ""
    parallelism: int | None = None
    checkpoint_interval: int = 0
    notify: bool = False
    issue_assignee: str | None = None

    @property
    def title(self) -> str:
        if self.pr_title:
            return self.pr_title
        lines = self.prompt.strip().splitlines()
        return lines[0][:72] if lines else ""


@dataclass(frozen=True)
class JobResult:
    repo: str
    status: JobStatus
    message: str
    output: str = ""
    pr_url: str | None = None
    error: str | None = None

    @classmethod
    def succeeded(cls, repo: str, message: str, output: str = "", pr_url: str | None = None) -> "JobResult":
        return cls(repo, JobStatus.SUCCEEDED, message, output=output, pr_url=pr_url)

    @classmethod
    def failed(cls, repo: str, error: str, output: str = "") -> "JobResult":
        return cls(repo, JobStatus.FAILED, f"Failed: {error}", output=output, error=error)

    @classmethod
    def skipped(cls, repo: str, reason: str) -> "JobResult":
        return cls(repo, JobStatus.SKIPPED, f"Skipped: {reason}", error=reason)

    @classmethod
    def cancelled(cls, repo: str, output: str = "") -> "JobResult":
        return cls(repo, JobStatus.CANCELLED, "Cancelled", output=output, error=CANCELLED_TAG)


@dataclass(frozen=True)
class Tally:
    succeeded: int = 0
    skipped: int = 0
    cancelled: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.succeeded + self.skipped + self.cancelled + self.failed

    def __str__(self) -> str:
        return (
            f"{self.succeeded} succeeded, {self.skipped} skipped, "
            f"{self.cancelled} cancelled, {self.failed} failed"
        )


def tally(results: Iterable[JobResult]) -> Tally:
    counts = {status: 0 for status in JobStatus}
    for result in results:
        counts[result.status] += 1
    return Tally(
        succeeded=counts[JobStatus.SUCCEEDED],
        skipped=counts[JobStatus.SKIPPED],
        cancelled=counts[JobStatus.CANCELLED],
        failed=counts[JobStatus.FAILED],
    )


def select_retry(projects: Iterable[Project], results: Mapping[str, JobResult], mode: RetryMode) -> list[Project]:
    """Pick the projects to resubmit.

    FAILED resubmits only ordinary failures. ALL resubmits everything that did
    not succeed: failures, skips and cancellations.
    """
    selected = []
    for project in projects:
        result = results.get(project.repo)
        if result is None:
            continue
        if mode == RetryMode.FAILED and result.status == JobStatus.FAILED:
            selected.append(project)
        elif mode == RetryMode.ALL and result.status != JobStatus.SUCCEEDED:
            selected.append(project)
    return selected
