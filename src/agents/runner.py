"""Invocations of the external AI CLI.

Every call goes through commands.run_command, so cancelling the awaiting job
kills the agent process. Prompts are passed as a single argv element; the
tool's own arguments come from its AITool definition.
"""

import logging
import time
from collections.abc import Mapping

from agents.tools import AITool
from commands import CommandError, run_command

logger = logging.getLogger("flotilla.agents")

REPO_ENV = "FLOTILLA_REPO_NAME"

MAX_PR_DESCRIPTION = 2000
MAX_FINDINGS_INPUT = 50000
MAX_SUMMARY = 5000

PR_DESCRIPTION_PROMPT = (
    "Write a concise PR description (2-3 sentences) for the following changes. "
    "Output ONLY the description text, no preamble:\n\n{output}"
)

ASSESSMENT_PROMPT = (
    "You are assessing a single repository. Do NOT modify any files. "
    "Answer the following question about this repository concisely:\n\n{question}"
)

SUMMARY_PROMPT = (
    "You are summarizing the results of an assessment across multiple repositories. "
    "Provide an executive summary of the findings, highlighting common patterns, outliers, "
    "and actionable insights. Output ONLY the summary.\n\n{findings}"
)


class AgentError(CommandError):
    pass


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


async def run_agent(
    tool: AITool,
    prompt: str,
    repo_path: str,
    repo: str,
    mcp_config_path: str | None = None,
) -> str:
    """Run the agent in `repo_path` and return its combined output."""
    argv = tool.code_command(prompt, mcp_config_path)
    logger.info(f"[{repo}] Running {tool.name} in {repo_path}")
    start = time.time()

    result = await run_command(argv, cwd=repo_path, env={REPO_ENV: repo})

    elapsed = time.time() - start
    logger.info(f"[{repo}] {tool.name} finished | exit_code={result.exit_code} | took {elapsed:.2f}s")
    if not result.ok:
        raise AgentError(argv, result.exit_code, result.output, f"{tool.name} exited with code {result.exit_code}")
    return result.output


async def generate_pr_description(tool: AITool, agent_output: str, repo_path: str) -> str:
    argv = tool.summary_command(PR_DESCRIPTION_PROMPT.format(output=agent_output))
    result = await run_command(argv, cwd=repo_path)
    if not result.ok:
        # stdout only: stderr of summary runs is mostly progress noise
        raise AgentError(argv, result.exit_code, result.stdout, "Failed to generate PR description")
    return _truncate(result.stdout.strip(), MAX_PR_DESCRIPTION)


async def assess(tool: AITool, question: str, repo_path: str, repo: str) -> str:
    return await run_agent(tool, ASSESSMENT_PROMPT.format(question=question), repo_path, repo)


async def summarize_findings(tool: AITool, findings: Mapping[str, str]) -> str:
    body = "".join(f"## {repo}\n{finding}\n\n" for repo, finding in findings.items())
    if len(body) > MAX_FINDINGS_INPUT:
        body = body[:MAX_FINDINGS_INPUT] + "\n...(truncated)"

    argv = tool.summary_command(SUMMARY_PROMPT.format(findings=body))
    result = await run_command(argv)
    if not result.ok:
        raise AgentError(argv, result.exit_code, result.stdout, "Failed to summarize findings")
    return _truncate(result.stdout.strip(), MAX_SUMMARY)
