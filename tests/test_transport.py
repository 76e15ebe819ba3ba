from __future__ import annotations

import asyncio
import json
import socket
import ssl
import sys
import time

import pytest
from aiohttp import web
from aiohttp import test_utils

from discovery.manager import run_shell_command
from errors import ConnectionFailure, ProcessCommandTimeout
from http_helper import create_language_server_session, create_loopback_ssl_context
from language_server import GET_USER_STATUS, LanguageServerClient, LanguageServerResponse


class PlainHttpClient(LanguageServerClient):
    """Same client over plain HTTP so it can talk to an aiohttp test server"""

    @property
    def base_url(self) -> str:
        return f"http://127.0.0.1:{self.port}"


async def _serve(handler):
    app = web.Application()
    app.router.add_post("/{tail:.*}", handler)
    server = test_utils.TestServer(app, host="127.0.0.1")
    await server.start_server()
    return server


def _free_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def test_post_sends_language_server_headers():
    seen = {}

    async def handler(request):
        seen["path"] = request.path
        seen["headers"] = dict(request.headers)
        seen["body"] = await request.read()
        return web.json_response({"userStatus": {}})

    async def scenario():
        server = await _serve(handler)
        client = PlainHttpClient(server.port, "csrf-token-1234")
        try:
            return await client.post(GET_USER_STATUS, {"metadata": {"ideName": "antigravity"}})
        finally:
            await client.close()
            await server.close()

    response = asyncio.run(scenario())

    assert response.status == 200
    assert response.json() == {"userStatus": {}}
    assert seen["path"] == GET_USER_STATUS
    headers = seen["headers"]
    assert headers["Content-Type"] == "application/json"
    assert headers["Connect-Protocol-Version"] == "1"
    assert headers["X-Codeium-Csrf-Token"] == "csrf-token-1234"
    assert int(headers["Content-Length"]) == len(seen["body"])
    assert json.loads(seen["body"]) == {"metadata": {"ideName": "antigravity"}}


def test_slow_response_becomes_connection_failure():
    async def handler(request):
        await asyncio.sleep(0.5)
        return web.json_response({})

    async def scenario():
        server = await _serve(handler)
        client = PlainHttpClient(server.port, "token")
        try:
            await client.post(GET_USER_STATUS, {}, timeout_seconds=0.05)
        finally:
            await client.close()
            await server.close()

    with pytest.raises(ConnectionFailure, match="timed out"):
        asyncio.run(scenario())


def test_refused_connection_becomes_connection_failure_and_probe_none():
    port = _free_port()

    async def scenario():
        client = PlainHttpClient(port, "token")
        try:
            with pytest.raises(ConnectionFailure, match="Connection failed"):
                await client.post(GET_USER_STATUS, {})
            return await client.probe(timeout_seconds=0.5)
        finally:
            await client.close()

    assert asyncio.run(scenario()) is None


def test_probe_returns_status_of_rejected_call():
    async def handler(request):
        return web.Response(status=401, text="unauthorized")

    async def scenario():
        server = await _serve(handler)
        client = PlainHttpClient(server.port, "wrong-token")
        try:
            return await client.probe()
        finally:
            await client.close()
            await server.close()

    assert asyncio.run(scenario()) == 401


def test_missing_port_fails_without_network():
    client = LanguageServerClient(0, "token")

    with pytest.raises(ConnectionFailure, match="no language server port"):
        asyncio.run(client.post(GET_USER_STATUS, {}))


@pytest.mark.parametrize("status, body, expected", [
    (404, "404 page not found", True),
    (501, '{"code": "unimplemented", "message": "method not found"}', True),
    (400, '{"code": "NOT_FOUND"}', True),
    (500, '{"code": "internal"}', False),
    (500, "not json", False),
    (200, "", False),
    (200, '["not_found"]', False),
])
def test_not_found_detection(status, body, expected):
    assert LanguageServerResponse(status=status, body=body).is_not_found() is expected


def test_loopback_ssl_context_skips_verification():
    context = create_loopback_ssl_context()

    assert context.check_hostname is False
    assert context.verify_mode == ssl.CERT_NONE


def test_session_ignores_proxy_environment():
    async def scenario():
        session = create_language_server_session(timeout_seconds=5)
        try:
            return session.trust_env, session.timeout.total
        finally:
            await session.close()

    assert asyncio.run(scenario()) == (False, 5)


def test_shell_command_output():
    result = asyncio.run(run_shell_command(f'"{sys.executable}" -c "print(42)"', timeout_seconds=10))

    assert result.returncode == 0
    assert result.stdout.strip() == "42"


def test_shell_command_killed_on_timeout():
    command = f'"{sys.executable}" -c "import time; time.sleep(5)"'
    started = time.monotonic()

    with pytest.raises(ProcessCommandTimeout) as exc_info:
        asyncio.run(run_shell_command(command, timeout_seconds=0.2))

    assert time.monotonic() - started < 4
    assert exc_info.value.command == command
