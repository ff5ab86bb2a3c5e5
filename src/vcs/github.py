import asyncio
import logging
import os

from commands import CommandResult, run_command
from vcs import git

logger = logging.getLogger("flotilla.github")

LABEL = "flotilla"
LABEL_COLOR = "6f42c1"


class GitHubClient:
    """Thin async wrapper over the `gh` CLI.

    All gh calls of one client are serialized to stay clear of GitHub API
    rate limits; git calls are not.
    """

    def __init__(self, organization: str | None, workspace_dir: str):
        self.organization = organization
        self.workspace_dir = workspace_dir
        self._lock = asyncio.Lock()

    def full_name(self, repo: str) -> str:
        if "/" in repo or not self.organization:
            return repo
        return f"{self.organization}/{repo}"

    def repo_path(self, repo: str) -> str:
        return os.path.join(self.workspace_dir, repo.replace("/", "__"))

    async def gh(self, *args: str, cwd: str | None = None) -> CommandResult:
        async with self._lock:
            return await run_command(["gh", *args], cwd=cwd)

    async def ensure_clone(self, repo: str) -> str:
        """Clone `repo` into the workspace, or bring an existing clone up to date."""
        path = self.repo_path(repo)
        if os.path.isdir(os.path.join(path, ".git")):
            base = await git.default_branch(path)
            logger.info(f"[{repo}] Reusing clone at {path}, updating {base}")
            (await git.git(path, "checkout", base)).check()
            pull = await git.git(path, "pull")
            if not pull.ok:
                logger.warning(f"[{repo}] git pull failed: {pull.output.strip()}")
            return path

        os.makedirs(self.workspace_dir, exist_ok=True)
        logger.info(f"[{repo}] Cloning {self.full_name(repo)} into {path}")
        (await self.gh("repo", "clone", self.full_name(repo), path)).check()
        return path

    async def ensure_label(self, repo_path: str) -> None:
        result = await self.gh(
            "label", "create", LABEL,
            "--description", "Created by flotilla",
            "--color", LABEL_COLOR,
            "--force",
            cwd=repo_path,
        )
        if not result.ok:
            logger.debug(f"Could not ensure label in {repo_path}: {result.output.strip()}")

    async def create_pull_request(self, repo_path: str, branch: str, title: str, body: str) -> str:
        await self.ensure_label(repo_path)
        base = await git.default_branch(repo_path)
        result = (await self.gh(
            "pr", "create",
            "--title", title,
            "--body", body,
            "--base", base,
            "--head", branch,
            "--label", LABEL,
            cwd=repo_path,
        )).check()
        return _last_url(result.stdout)

    async def create_issue(self, repo: str, title: str, body: str, assignee: str | None = None) -> str:
        args = ["issue", "create", "--repo", self.full_name(repo), "--title", title, "--body", body]
        if assignee:
            args += ["--assignee", assignee]
        result = (await self.gh(*args)).check()
        return _last_url(result.stdout)


def _last_url(output: str) -> str:
    """gh prints the created URL as its last line."""
    for line in reversed(output.strip().splitlines()):
        line = line.strip()
        if line.startswith("http"):
            return line
    return output.strip()
