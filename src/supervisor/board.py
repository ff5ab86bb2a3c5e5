import logging
from collections.abc import Iterable
from dataclasses import dataclass

from orchestration.events import JobStatusEvent
from orchestration.jobs import JobResult, JobStatus, Project, Tally, tally

logger = logging.getLogger("flotilla.board")


@dataclass
class RepoJob:
    repo: str
    status: JobStatus = JobStatus.WAITING
    line: str = ""
    result: JobResult | None = None


class JobBoard:
    """Latest known state of every job in the run, in submission order.

    Once a job is terminal it stays that way: late status lines and duplicate
    completions are ignored.
    """

    def __init__(self, projects: Iterable[Project]):
        self._jobs = {p.repo: RepoJob(repo=p.repo) for p in projects}

    def __contains__(self, repo: str) -> bool:
        return repo in self._jobs

    def get(self, repo: str) -> RepoJob | None:
        return self._jobs.get(repo)

    @property
    def jobs(self) -> list[RepoJob]:
        return list(self._jobs.values())

    def apply_status(self, event: JobStatusEvent) -> RepoJob | None:
        job = self._jobs.get(event.repo)
        if job is None or job.status.terminal:
            logger.debug(f"[{event.repo}] Ignoring status for unknown or finished job: {event.line}")
            return None
        job.status = event.status
        job.line = event.line
        return job

    def apply_done(self, result: JobResult) -> RepoJob | None:
        job = self._jobs.get(result.repo)
        if job is None or job.status.terminal:
            logger.warning(f"[{result.repo}] Ignoring completion for unknown or finished job: {result.message}")
            return None
        job.status = result.status
        job.line = result.message
        job.result = result
        return job

    def is_terminal(self, repo: str) -> bool:
        job = self._jobs.get(repo)
        return job is not None and job.status.terminal

    @property
    def finished(self) -> bool:
        return all(job.status.terminal for job in self._jobs.values())

    def results(self) -> dict[str, JobResult]:
        return {job.repo: job.result for job in self._jobs.values() if job.result is not None}

    def tally(self) -> Tally:
        return tally(self.results().values())
