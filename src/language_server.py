"""
Language server wire protocol
Endpoint paths, request headers and the loopback HTTPS client shared by discovery and telemetry
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp

from errors import ConnectionFailure
from http_helper import create_language_server_session

logger = logging.getLogger(__name__)

LOOPBACK_HOST = "127.0.0.1"

# Default endpoint paths (overridable under telemetry.endpoints)
GET_USER_STATUS = "/exa.language_server_pb.LanguageServerService/GetUserStatus"
GET_USER_STATUS_SEAT = "/exa.seat_management_pb.SeatManagementService/GetUserStatus"
GET_UNLEASH_DATA = "/exa.language_server_pb.LanguageServerService/GetUnleashData"
WARMUP_ENDPOINT = "/exa.language_server_pb.LanguageServerService/GetCascadeModelConfigData"

# Status codes that prove a live, auth-enforcing language server on the port
REACHABLE_STATUSES = frozenset({200, 400, 401, 403})

# Connect protocol error codes that mean "no such method on this service"
NOT_FOUND_CODES = frozenset({"not_found", "unimplemented"})

USER_STATUS_PAYLOAD = {
    "metadata": {
        "ideName": "antigravity",
        "extensionName": "antigravity",
        "locale": "en",
    }
}

PROBE_PAYLOAD = {"wrapper_data": {}}


@dataclass
class LanguageServerResponse:
    """Raw HTTP response from the language server"""
    status: int
    body: str

    def json(self) -> Any:
        return json.loads(self.body)

    def is_not_found(self) -> bool:
        """404 status or a Connect-style not_found/unimplemented error body"""
        if self.status == 404:
            return True
        try:
            data = json.loads(self.body) if self.body else None
        except ValueError:
            return False
        if isinstance(data, dict):
            code = str(data.get("code", "")).lower()
            return code in NOT_FOUND_CODES
        return False


def is_reachable_status(status: Optional[int]) -> bool:
    """A 200/400/401/403 means the service is up even if this call was rejected"""
    return status in REACHABLE_STATUSES


def build_headers(token: str, body: bytes) -> Dict[str, str]:
    """Headers required on every language server request"""
    return {
        "Content-Type": "application/json",
        "Content-Length": str(len(body)),
        "Connect-Protocol-Version": "1",
        "X-Codeium-Csrf-Token": token,
    }


class LanguageServerClient:
    """POSTs JSON to one language server port over loopback HTTPS"""

    def __init__(self, port: int, token: str, timeout_seconds: float = 10, session_factory=create_language_server_session):
        self.port = port
        self.token = token
        self.timeout_seconds = timeout_seconds
        self._session_factory = session_factory
        self.session: Optional[aiohttp.ClientSession] = None

    @property
    def base_url(self) -> str:
        return f"https://{LOOPBACK_HOST}:{self.port}"

    def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = self._session_factory(self.timeout_seconds)
        return self.session

    async def post(self, path: str, payload: Dict[str, Any], timeout_seconds: Optional[float] = None) -> LanguageServerResponse:
        """
        POST a JSON payload and return status + body text.
        Raises ConnectionFailure on refused connections and timeouts.
        """
        if not self.port:
            raise ConnectionFailure("System not ready: no language server port")

        body = json.dumps(payload).encode("utf-8")
        timeout = aiohttp.ClientTimeout(total=timeout_seconds or self.timeout_seconds)
        url = f"{self.base_url}{path}"
        logger.debug(f"Transmitting to {path} on port {self.port}")

        try:
            session = self._get_session()
            async with session.post(url, data=body, headers=build_headers(self.token, body), timeout=timeout) as response:
                text = await response.text()
                logger.debug(f"Received {response.status} from {path} ({len(text)} bytes)")
                return LanguageServerResponse(status=response.status, body=text)
        except asyncio.TimeoutError as e:
            raise ConnectionFailure(f"Signal lost: request to {path} timed out") from e
        except aiohttp.ClientError as e:
            raise ConnectionFailure(f"Connection failed: {e}") from e

    async def probe(self, path: str = GET_UNLEASH_DATA, timeout_seconds: float = 2) -> Optional[int]:
        """Minimal authenticated request; returns the status code or None if unreachable"""
        try:
            response = await self.post(path, PROBE_PAYLOAD, timeout_seconds=timeout_seconds)
            return response.status
        except ConnectionFailure as e:
            logger.debug(f"Probe of port {self.port} failed: {e}")
            return None

    async def close(self):
        if self.session and not self.session.closed:
            await self.session.close()
        self.session = None
