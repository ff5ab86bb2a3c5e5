"""HTTP half of the permission bridge.

Runs inside the orchestrator process on an ephemeral loopback port. Each POST
/permission becomes a PermissionRequest on the event stream; the handler then
waits on the request's reply slot until the supervisor answers, the timeout
fires, or the server shuts down. Every path ends in a verdict, and anything
other than an explicit approval is a denial.
"""

import asyncio
import contextlib
import logging
import socket
from collections.abc import Callable

import uvicorn
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from orchestration.events import EventStream
from permissions.types import (
    PERMISSION_TIMEOUT,
    CommandPrompt,
    PermissionExpiredEvent,
    PermissionRequest,
    PermissionRequestEvent,
    PermissionResponse,
    Prompt,
    Question,
    QuestionOption,
    QuestionPrompt,
)

logger = logging.getLogger("flotilla.permission_server")

LOOPBACK = "127.0.0.1"
STARTUP_POLL_INTERVAL = 0.01

VerdictObserver = Callable[[PermissionRequest, PermissionResponse], None]


class OptionBody(BaseModel):
    label: str
    description: str = ""


class QuestionBody(BaseModel):
    text: str = ""
    header: str = ""
    options: list[OptionBody] = []


class PermissionBody(BaseModel):
    tool_name: str = ""
    command: str = ""
    repo: str = ""
    questions: list[QuestionBody] | None = None


class VerdictBody(BaseModel):
    approved: bool
    answer: str | None = None


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the host process."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


def prompt_from_body(body: PermissionBody) -> Prompt:
    """Build the prompt for a request body. Raises ValueError for a question without options."""
    if not body.questions:
        return CommandPrompt(command=body.command)
    questions = tuple(
        Question(
            text=q.text,
            header=q.header,
            options=tuple(QuestionOption(label=o.label, description=o.description) for o in q.options),
        )
        for q in body.questions
    )
    return QuestionPrompt(questions=questions)


class PermissionServer:
    def __init__(
        self,
        stream: EventStream,
        timeout: float = PERMISSION_TIMEOUT,
        on_verdict: VerdictObserver | None = None,
    ):
        self._stream = stream
        self._timeout = timeout
        self.on_verdict = on_verdict
        self._pending: dict[str, PermissionRequest] = {}
        self._closed = False
        self._socket: socket.socket | None = None
        self._server: uvicorn.Server | None = None
        self._task: asyncio.Task | None = None
        self.app = self._build_app()

    @property
    def port(self) -> int:
        if self._socket is None:
            raise RuntimeError("Permission server is not started")
        return self._socket.getsockname()[1]

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def start(self) -> int:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((LOOPBACK, 0))
        self._socket = sock

        config = uvicorn.Config(self.app, log_level="warning", lifespan="off", access_log=False)
        self._server = _EmbeddedServer(config)
        self._task = asyncio.create_task(self._server.serve(sockets=[sock]), name="permission-server")

        while not self._server.started:
            if self._task.done():
                sock.close()
                self._task.result()
                raise RuntimeError("Permission server exited during startup")
            await asyncio.sleep(STARTUP_POLL_INTERVAL)

        logger.info(f"Permission server listening on {LOOPBACK}:{self.port}")
        return self.port

    async def shutdown(self) -> None:
        """Deny every pending request, then stop serving."""
        self._closed = True
        denied = 0
        for request in list(self._pending.values()):
            if request.reply.send(PermissionResponse.deny()):
                denied += 1
        if denied:
            logger.info(f"Denied {denied} pending permission request(s) on shutdown")

        if self._server is not None:
            self._server.should_exit = True
        if self._task is not None:
            await self._task
            self._task = None
        if self._socket is not None:
            self._socket.close()
            self._socket = None

    async def request_permission(self, body: PermissionBody) -> PermissionResponse:
        try:
            prompt = prompt_from_body(body)
        except ValueError as e:
            logger.warning(f"[{body.repo}] Rejecting malformed question request: {e}")
            return PermissionResponse.deny()

        request = PermissionRequest(repo=body.repo, tool_name=body.tool_name, prompt=prompt)
        if self._closed:
            logger.warning(f"[{request.repo}] Request {request.id} arrived after shutdown, denying")
            return PermissionResponse.deny()

        self._pending[request.id] = request
        logger.info(f"[{request.repo}] Permission requested for {request.tool_name}: {request.display()!r}")
        try:
            await self._stream.publish(PermissionRequestEvent(request=request))
            response = await self._await_reply(request)
        finally:
            self._pending.pop(request.id, None)

        logger.info(f"[{request.repo}] Request {request.id} resolved: approved={response.approved}")
        if self.on_verdict is not None:
            self.on_verdict(request, response)
        return response

    async def _await_reply(self, request: PermissionRequest) -> PermissionResponse:
        try:
            return await asyncio.wait_for(request.reply.wait(), self._timeout)
        except asyncio.TimeoutError:
            request.reply.close()
            # a reply that raced the timeout still counts
            if request.reply.response is not None:
                return request.reply.response
            logger.warning(f"[{request.repo}] Request {request.id} timed out after {self._timeout:.0f}s, denying")
            await self._stream.publish(PermissionExpiredEvent(request=request))
            return PermissionResponse.deny()

    def _build_app(self) -> FastAPI:
        app = FastAPI(title="flotilla permission server", docs_url=None, redoc_url=None, openapi_url=None)

        @app.exception_handler(RequestValidationError)
        async def bad_request(request, exc: RequestValidationError):
            logger.warning(f"Invalid permission request body: {exc.errors()}")
            return JSONResponse(status_code=400, content={"detail": "bad request"})

        @app.post("/permission", response_model=VerdictBody, response_model_exclude_none=True)
        async def permission(body: PermissionBody) -> VerdictBody:
            response = await self.request_permission(body)
            return VerdictBody(approved=response.approved, answer=response.answer)

        return app
