import logging
from datetime import datetime

from commands import CommandResult, run_command
from orchestration.jobs import BranchStrategy, JobError, JobSkipped, NoChangesError
from vcs.slug import slug_from_title

logger = logging.getLogger("flotilla.git")

BRANCH_PREFIX = "flotilla"


class BranchExistsError(JobSkipped):
    def __init__(self, branch: str):
        self.branch = branch
        super().__init__(f"branch already exists: {branch}")


async def git(repo_path: str, *args: str) -> CommandResult:
    return await run_command(["git", *args], cwd=repo_path)


async def status_porcelain(repo_path: str) -> list[str]:
    result = (await git(repo_path, "status", "--porcelain")).check()
    return [line for line in result.stdout.splitlines() if line.strip()]


async def has_changes(repo_path: str) -> bool:
    return bool(await status_porcelain(repo_path))


async def ensure_clean(repo_path: str) -> None:
    """Refuse to start on top of someone's uncommitted work (untracked files are tolerated)."""
    tracked = [line for line in await status_porcelain(repo_path) if not line.startswith("??")]
    if tracked:
        raise JobError(f"uncommitted changes in working tree ({len(tracked)} file(s)); stash or revert them first")


async def default_branch(repo_path: str) -> str:
    result = await git(repo_path, "symbolic-ref", "refs/remotes/origin/HEAD", "--short")
    ref = result.stdout.strip() if result.ok else ""
    return ref.removeprefix("origin/") or "main"


async def select_or_create_branch(
    repo_path: str,
    strategy: BranchStrategy,
    branch_name: str = "",
    pr_title: str = "",
) -> str:
    """Resolve the working branch for a job according to `strategy`.

    - NEW: always create a fresh timestamped branch named after the PR title.
    - REUSE: check out `branch_name` (local, then remote) or create it.
    - SKIP: create `branch_name`; raise BranchExistsError if it exists anywhere.
    """
    fetch = await git(repo_path, "fetch", "origin")
    if not fetch.ok:
        logger.warning(f"git fetch failed in {repo_path}: {fetch.output.strip()}")

    if strategy == BranchStrategy.REUSE:
        return await _checkout_or_create(repo_path, branch_name)
    if strategy == BranchStrategy.SKIP:
        return await _create_or_skip(repo_path, branch_name)
    return await _create_new(repo_path, pr_title)


async def _checkout_or_create(repo_path: str, branch: str) -> str:
    if (await git(repo_path, "checkout", branch)).ok:
        pull = await git(repo_path, "pull", "origin", branch)
        if not pull.ok:
            logger.warning(f"git pull of {branch} failed: {pull.output.strip()}")
        return branch

    if (await git(repo_path, "checkout", "-b", branch, f"origin/{branch}")).ok:
        return branch

    (await git(repo_path, "checkout", "-b", branch)).check()
    return branch


async def _create_or_skip(repo_path: str, branch: str) -> str:
    if await _branch_exists(repo_path, branch) or await _branch_exists(repo_path, f"origin/{branch}"):
        raise BranchExistsError(branch)
    (await git(repo_path, "checkout", "-b", branch)).check()
    return branch


async def _create_new(repo_path: str, pr_title: str) -> str:
    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    slug = slug_from_title(pr_title)
    branch = f"{BRANCH_PREFIX}-{timestamp}-{slug}" if slug else f"{BRANCH_PREFIX}-{timestamp}"
    (await git(repo_path, "checkout", "-b", branch)).check()
    return branch


async def _branch_exists(repo_path: str, ref: str) -> bool:
    return (await git(repo_path, "rev-parse", "--verify", "--quiet", ref)).ok


async def commit_and_push(repo_path: str, branch: str, message: str) -> None:
    if not await has_changes(repo_path):
        raise NoChangesError("no changes to commit")
    (await git(repo_path, "add", "-A")).check()
    (await git(repo_path, "commit", "-m", message)).check()
    (await git(repo_path, "push", "-u", "origin", branch)).check()
