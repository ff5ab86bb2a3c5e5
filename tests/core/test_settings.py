from unittest.mock import patch

import pytest

from settings import DEFAULT_AI_TOOL, DEFAULT_PARALLELISM, DEFAULT_WORKSPACE_DIR, MAX_PARALLELISM, load_settings


def test_defaults_from_empty_env():
    settings = load_settings({})

    assert settings.github_org is None
    assert settings.workspace_dir == DEFAULT_WORKSPACE_DIR
    assert settings.parallelism == DEFAULT_PARALLELISM
    assert settings.ai_tool == DEFAULT_AI_TOOL
    assert settings.slack_bot_token is None
    assert settings.issue_assignee is None


def test_values_from_env():
    settings = load_settings({
        "FLOTILLA_GITHUB_ORG": "acme",
        "FLOTILLA_WORKSPACE_DIR": "/tmp/ws",
        "FLOTILLA_PARALLELISM": "4",
        "FLOTILLA_AI_TOOL": "codex",
        "SLACK_BOT_TOKEN": "xoxb-1",
        "FLOTILLA_ISSUE_ASSIGNEE": "octocat",
    })

    assert settings.github_org == "acme"
    assert settings.workspace_dir == "/tmp/ws"
    assert settings.parallelism == 4
    assert settings.ai_tool == "codex"
    assert settings.slack_bot_token == "xoxb-1"
    assert settings.issue_assignee == "octocat"


@pytest.mark.parametrize("raw, expected", [
    ("50", MAX_PARALLELISM),
    ("0", DEFAULT_PARALLELISM),
    ("-2", DEFAULT_PARALLELISM),
    ("many", DEFAULT_PARALLELISM),
    ("", DEFAULT_PARALLELISM),
])
def test_parallelism_is_clamped(raw, expected):
    assert load_settings({"FLOTILLA_PARALLELISM": raw}).parallelism == expected


@patch("settings.load_dotenv")
def test_process_env_loads_dotenv(mock_load, monkeypatch):
    monkeypatch.setenv("FLOTILLA_GITHUB_ORG", "from-env")

    settings = load_settings()

    mock_load.assert_called_once()
    assert settings.github_org == "from-env"
