import logging
from collections.abc import Iterable, Mapping

from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError

from orchestration.jobs import Project

logger = logging.getLogger("flotilla.slack")

MAX_FINDING_CHARS = 500


def group_by_room(projects: Iterable[Project]) -> dict[str, list[str]]:
    rooms: dict[str, list[str]] = {}
    for project in projects:
        room = (project.slack_room or "").strip()
        if not room:
            continue
        rooms.setdefault(room, []).append(project.repo)
    return rooms


def format_pr_message(pr_title: str, repos: list[str], pr_urls: Mapping[str, str]) -> str:
    links = ", ".join(f"<{pr_urls[r]}|{r}>" if pr_urls.get(r) else r for r in repos)
    return f":cat: *flotilla* created PRs for: {links}\n>{pr_title}"


def format_findings_message(question: str, repos: list[str], findings: Mapping[str, str]) -> str:
    parts = [f":mag: *flotilla* assessment\n>{question}"]
    for repo in repos:
        finding = findings.get(repo, "").strip()
        if len(finding) > MAX_FINDING_CHARS:
            finding = finding[:MAX_FINDING_CHARS - 3] + "..."
        parts.append(f"*{repo}*\n{finding}")
    return "\n\n".join(parts)


class SlackNotifier:
    """Best-effort delivery: every failure becomes a status line, nothing raises."""

    def __init__(self, client: WebClient):
        self._slack = client

    def notify_pull_requests(self, projects: Iterable[Project], pr_title: str, pr_urls: Mapping[str, str]) -> list[str]:
        rooms = group_by_room(projects)
        if not rooms:
            return ["No Slack rooms configured for successful projects, skipping notifications"]
        return [
            self._send(room, format_pr_message(pr_title, repos, pr_urls), repos)
            for room, repos in rooms.items()
        ]

    def notify_findings(self, projects: Iterable[Project], question: str, findings: Mapping[str, str]) -> list[str]:
        rooms = group_by_room(projects)
        if not rooms:
            return ["No Slack rooms configured for assessed projects, skipping notifications"]
        return [
            self._send(room, format_findings_message(question, repos, findings), repos)
            for room, repos in rooms.items()
        ]

    def _send(self, room: str, text: str, repos: list[str]) -> str:
        try:
            self._slack.chat_postMessage(channel=room, text=text)
        except SlackApiError as e:
            logger.error(f"Failed to notify {room}: {e.response.get('error', e)}")
            return f"Failed to send notification to {room}: {e.response.get('error', e)}"
        except Exception as e:
            logger.error(f"Failed to notify {room}: {e}", exc_info=True)
            return f"Failed to send notification to {room}: {e}"
        logger.info(f"Notification posted to {room} for {', '.join(repos)}")
        return f"Notification sent to {room} for: {', '.join(repos)}"
