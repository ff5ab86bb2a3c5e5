import asyncio

import httpx
import pytest

from orchestration.events import EventStream
from permissions.server import PermissionBody, PermissionServer
from permissions.types import PermissionExpiredEvent, PermissionRequestEvent, PermissionResponse


def _client(server: PermissionServer) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=server.app), base_url="http://flotilla.test")


async def _next_request(stream: EventStream):
    event = await asyncio.wait_for(stream.next(), 1)
    assert isinstance(event, PermissionRequestEvent)
    return event.request


# ── POST /permission ──────────────────────────────────────────────


@pytest.mark.asyncio
async def test_command_request_is_published_and_approved():
    stream = EventStream()
    server = PermissionServer(stream)
    async with _client(server) as client:
        post = asyncio.create_task(client.post("/permission", json={
            "tool_name": "Bash", "command": "npm test", "repo": "web-app",
        }))
        request = await _next_request(stream)
        assert request.repo == "web-app"
        assert request.tool_name == "Bash"
        assert request.display() == "npm test"
        assert server.pending == 1

        request.reply.send(PermissionResponse.approve())
        resp = await post

    assert resp.status_code == 200
    assert resp.json() == {"approved": True}
    assert server.pending == 0


@pytest.mark.asyncio
async def test_denied_request_omits_answer():
    stream = EventStream()
    server = PermissionServer(stream)
    async with _client(server) as client:
        post = asyncio.create_task(client.post("/permission", json={"tool_name": "Bash", "command": "rm -rf /", "repo": "r"}))
        request = await _next_request(stream)
        request.reply.send(PermissionResponse.deny())
        resp = await post

    assert resp.json() == {"approved": False}


@pytest.mark.asyncio
async def test_question_request_returns_answer():
    stream = EventStream()
    server = PermissionServer(stream)
    body = {
        "tool_name": "AskUserQuestion",
        "command": "Which database?",
        "repo": "api",
        "questions": [{
            "text": "Which database?",
            "header": "DB",
            "options": [{"label": "postgres", "description": "default"}, {"label": "sqlite"}],
        }],
    }
    async with _client(server) as client:
        post = asyncio.create_task(client.post("/permission", json=body))
        request = await _next_request(stream)
        assert request.is_question
        question = request.prompt.questions[0]
        assert question.header == "DB"
        assert [o.label for o in question.options] == ["postgres", "sqlite"]

        request.reply.send(PermissionResponse.answered("sqlite"))
        resp = await post

    assert resp.json() == {"approved": False, "answer": "sqlite"}


@pytest.mark.asyncio
async def test_question_without_options_is_denied_without_publishing():
    stream = EventStream()
    server = PermissionServer(stream)
    async with _client(server) as client:
        resp = await client.post("/permission", json={
            "tool_name": "AskUserQuestion", "repo": "r", "questions": [{"text": "Anything?", "options": []}],
        })

    assert resp.json() == {"approved": False}
    assert stream.qsize() == 0


@pytest.mark.asyncio
async def test_invalid_json_is_400():
    server = PermissionServer(EventStream())
    async with _client(server) as client:
        resp = await client.post("/permission", content=b"{not json", headers={"Content-Type": "application/json"})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_wrong_field_type_is_400():
    server = PermissionServer(EventStream())
    async with _client(server) as client:
        resp = await client.post("/permission", json={"tool_name": ["Bash"], "command": "ls"})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_get_is_not_allowed():
    server = PermissionServer(EventStream())
    async with _client(server) as client:
        resp = await client.get("/permission")
    assert resp.status_code == 405


# ── timeout ───────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_timeout_denies_and_closes_slot():
    stream = EventStream()
    server = PermissionServer(stream, timeout=0.05)
    async with _client(server) as client:
        resp = await client.post("/permission", json={"tool_name": "Bash", "command": "sleep 999", "repo": "r"})

    assert resp.json() == {"approved": False}
    request = (await stream.next()).request
    assert request.reply.send(PermissionResponse.approve()) is False
    assert server.pending == 0
    expired = await asyncio.wait_for(stream.next(), 1)
    assert isinstance(expired, PermissionExpiredEvent)
    assert expired.request is request


# ── shutdown ──────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_shutdown_denies_pending_requests():
    stream = EventStream()
    server = PermissionServer(stream)
    waiting = [
        asyncio.create_task(server.request_permission(PermissionBody(tool_name="Bash", command=f"cmd {i}", repo="r")))
        for i in range(3)
    ]
    for _ in waiting:
        await _next_request(stream)

    await server.shutdown()

    responses = await asyncio.wait_for(asyncio.gather(*waiting), 1)
    assert all(r.approved is False for r in responses)


@pytest.mark.asyncio
async def test_request_after_shutdown_is_denied_immediately():
    stream = EventStream()
    server = PermissionServer(stream)
    await server.shutdown()

    response = await server.request_permission(PermissionBody(tool_name="Bash", command="ls", repo="r"))

    assert response.approved is False
    assert stream.qsize() == 0


# ── verdict observer ──────────────────────────────────────────────


@pytest.mark.asyncio
async def test_on_verdict_sees_each_resolution():
    stream = EventStream()
    seen = []
    server = PermissionServer(stream, on_verdict=lambda req, resp: seen.append((req.display(), resp.approved)))
    task = asyncio.create_task(server.request_permission(PermissionBody(tool_name="Bash", command="make", repo="r")))
    request = await _next_request(stream)
    request.reply.send(PermissionResponse.deny())
    await task

    assert seen == [("make", False)]


# ── live server ───────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_start_serves_on_loopback_port():
    stream = EventStream()
    server = PermissionServer(stream)
    port = await server.start()
    try:
        assert port > 0
        async with httpx.AsyncClient(base_url=f"http://127.0.0.1:{port}") as client:
            post = asyncio.create_task(client.post("/permission", json={"tool_name": "Bash", "command": "ls", "repo": "r"}))
            request = await _next_request(stream)
            request.reply.send(PermissionResponse.approve())
            resp = await asyncio.wait_for(post, 5)
        assert resp.json() == {"approved": True}
    finally:
        await server.shutdown()


def test_port_before_start_raises():
    with pytest.raises(RuntimeError):
        PermissionServer(EventStream()).port
