"""Stdio half of the permission bridge.

The agent launches this as an MCP server (`flotilla permission-handler`) and
calls its single tool whenever it wants permission to run something. Each
call is relayed to the orchestrator's PermissionServer over HTTP and the
verdict is returned as an MCP tool result. Stdout carries only JSON-RPC
responses; all logging goes to stderr and the log file.

Every failure on the way (server unreachable, timeout, bad reply, malformed
arguments) is a MediationError and becomes a denial.
"""

import json
import logging
import sys
from collections.abc import Iterable
from typing import Any, TextIO

import requests

from permissions.types import ASK_USER_QUESTION, PERMISSION_TIMEOUT

logger = logging.getLogger("flotilla.permission_handler")

PORT_ENV = "FLOTILLA_PERMISSION_PORT"
REPO_ENV = "FLOTILLA_REPO_NAME"

PROTOCOL_VERSION = "2024-11-05"
SERVER_NAME = "flotilla-auth"
SERVER_VERSION = "1.0.0"
TOOL_NAME = "handle_permission"

# Longer than the server-side wait so the server always answers first
HTTP_TIMEOUT = PERMISSION_TIMEOUT + 30

METHOD_NOT_FOUND = -32601

TOOL_SCHEMA = {
    "name": TOOL_NAME,
    "description": "Handle permission requests for tool execution",
    "inputSchema": {
        "type": "object",
        "properties": {
            "tool_name": {"type": "string", "description": "The tool requesting permission"},
            "input": {"type": "object", "description": "The tool input/arguments"},
        },
        "required": ["tool_name", "input"],
    },
}


class MediationError(Exception):
    """Mediation could not produce a verdict; the call is denied with this message."""


class MediationUnavailable(MediationError):
    pass


class MediationTimeout(MediationError):
    pass


class MediationProtocolError(MediationError):
    pass


class InvalidToolCall(MediationError):
    pass


def extract_command(tool_input: Any) -> str:
    if isinstance(tool_input, dict):
        command = tool_input.get("command")
        if isinstance(command, str):
            return command
        return " ".join(f"{k}={v}" for k, v in tool_input.items())
    if isinstance(tool_input, str):
        return tool_input
    return json.dumps(tool_input)


def extract_questions(tool_input: Any) -> list[dict]:
    if not isinstance(tool_input, dict) or not isinstance(tool_input.get("questions"), list):
        return []
    questions = []
    for q in tool_input["questions"]:
        if not isinstance(q, dict):
            continue
        options = [
            {"label": str(o.get("label", "")), "description": str(o.get("description", ""))}
            for o in q.get("options") or []
            if isinstance(o, dict)
        ]
        questions.append({"text": str(q.get("question", "")), "header": str(q.get("header", "")), "options": options})
    return questions


def format_questions(questions: list[dict]) -> str:
    if not questions:
        return f"{ASK_USER_QUESTION} (no questions)"
    return "; ".join(q["text"] for q in questions)


def tool_result(decision: dict) -> dict:
    return {"content": [{"type": "text", "text": json.dumps(decision)}]}


def allow(tool_input: Any) -> dict:
    return tool_result({"behavior": "allow", "updatedInput": tool_input})


def deny(message: str) -> dict:
    return tool_result({"behavior": "deny", "message": message})


class PermissionHandler:
    def __init__(self, port: int | str, repo: str = "", session: requests.Session | None = None, timeout: float = HTTP_TIMEOUT):
        self._url = f"http://127.0.0.1:{port}/permission"
        self._repo = repo
        self._session = session or requests.Session()
        self._timeout = timeout

    def serve(self, stdin: Iterable[str], stdout: TextIO) -> None:
        for line in stdin:
            response = self.handle_line(line)
            if response is None:
                continue
            stdout.write(json.dumps(response) + "\n")
            stdout.flush()

    def handle_line(self, line: str) -> dict | None:
        line = line.strip()
        if not line:
            return None
        try:
            message = json.loads(line)
        except json.JSONDecodeError:
            logger.warning(f"Skipping unparseable line: {line[:200]}")
            return None
        if not isinstance(message, dict):
            return None
        if message.get("id") is None:
            logger.debug(f"Notification {message.get('method')!r} ignored")
            return None
        return self.handle_request(message)

    def handle_request(self, message: dict) -> dict:
        request_id = message["id"]
        method = message.get("method")
        if method == "initialize":
            return self._result(request_id, {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {"tools": {}},
                "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
            })
        if method == "tools/list":
            return self._result(request_id, {"tools": [TOOL_SCHEMA]})
        if method == "tools/call":
            return self._result(request_id, self.call_tool(message.get("params")))
        logger.warning(f"Unknown method {method!r}")
        return self._error(request_id, METHOD_NOT_FOUND, "method not found")

    def call_tool(self, params: Any) -> dict:
        try:
            tool_name, tool_input = self._parse_arguments(params)
            return self.mediate(tool_name, tool_input)
        except MediationError as e:
            logger.warning(f"Denying tool call: {e}")
            return deny(str(e))

    def mediate(self, tool_name: str, tool_input: Any) -> dict:
        payload: dict[str, Any] = {"tool_name": tool_name, "repo": self._repo}
        if tool_name == ASK_USER_QUESTION:
            questions = extract_questions(tool_input)
            payload["questions"] = questions
            payload["command"] = format_questions(questions)
        else:
            payload["command"] = extract_command(tool_input)

        logger.info(f"[{self._repo}] Requesting permission for {tool_name}: {payload['command']!r}")
        verdict = self._post(payload)

        answer = verdict.get("answer")
        if tool_name == ASK_USER_QUESTION and answer is not None:
            return deny(f"User answered: {answer}")
        if verdict.get("approved") is True:
            return allow(tool_input)
        return deny("User denied permission")

    def _post(self, payload: dict) -> dict:
        try:
            resp = self._session.post(self._url, json=payload, timeout=self._timeout)
        except requests.Timeout as e:
            raise MediationTimeout("permission server did not answer in time") from e
        except requests.RequestException as e:
            raise MediationUnavailable("failed to contact permission server") from e

        if resp.status_code != 200:
            raise MediationProtocolError(f"permission server answered HTTP {resp.status_code}")
        try:
            verdict = resp.json()
        except ValueError as e:
            raise MediationProtocolError("failed to decode permission response") from e
        if not isinstance(verdict, dict):
            raise MediationProtocolError("failed to decode permission response")
        return verdict

    @staticmethod
    def _parse_arguments(params: Any) -> tuple[str, Any]:
        if not isinstance(params, dict):
            raise InvalidToolCall("invalid params")
        arguments = params.get("arguments")
        if not isinstance(arguments, dict):
            raise InvalidToolCall("invalid arguments")
        tool_name = arguments.get("tool_name")
        if not isinstance(tool_name, str):
            raise InvalidToolCall("invalid arguments: tool_name missing")
        return tool_name, arguments.get("input", {})

    @staticmethod
    def _result(request_id: Any, result: dict) -> dict:
        return {"jsonrpc": "2.0", "id": request_id, "result": result}

    @staticmethod
    def _error(request_id: Any, code: int, message: str) -> dict:
        return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}


def run_from_env(environ: dict[str, str], stdin: TextIO = sys.stdin, stdout: TextIO = sys.stdout) -> None:
    """Entry point for `flotilla permission-handler`. Raises MediationUnavailable without a port."""
    port = environ.get(PORT_ENV)
    if not port:
        raise MediationUnavailable(f"{PORT_ENV} not set")
    handler = PermissionHandler(port, repo=environ.get(REPO_ENV, ""))
    logger.info(f"Permission handler relaying to port {port}")
    handler.serve(stdin, stdout)
