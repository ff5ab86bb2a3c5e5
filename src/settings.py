import os
from dataclasses import dataclass

from dotenv import load_dotenv

DEFAULT_WORKSPACE_DIR = "repos"
DEFAULT_PARALLELISM = 3
MAX_PARALLELISM = 10
DEFAULT_AI_TOOL = "claude"


@dataclass(frozen=True)
class Settings:
    github_org: str | None
    workspace_dir: str
    parallelism: int
    ai_tool: str
    slack_bot_token: str | None
    issue_assignee: str | None


def _clamp_parallelism(raw: str | None) -> int:
    try:
        value = int(raw) if raw else DEFAULT_PARALLELISM
    except ValueError:
        value = DEFAULT_PARALLELISM
    if value <= 0:
        return DEFAULT_PARALLELISM
    return min(value, MAX_PARALLELISM)


def load_settings(env: dict[str, str] | None = None) -> Settings:
    """Read settings from the environment (after loading .env if present)."""
    if env is None:
        load_dotenv()
        env = dict(os.environ)

    return Settings(
        github_org=env.get("FLOTILLA_GITHUB_ORG") or None,
        workspace_dir=env.get("FLOTILLA_WORKSPACE_DIR") or DEFAULT_WORKSPACE_DIR,
        parallelism=_clamp_parallelism(env.get("FLOTILLA_PARALLELISM")),
        ai_tool=env.get("FLOTILLA_AI_TOOL") or DEFAULT_AI_TOOL,
        slack_bot_token=env.get("SLACK_BOT_TOKEN") or None,
        issue_assignee=env.get("FLOTILLA_ISSUE_ASSIGNEE") or None,
    )
