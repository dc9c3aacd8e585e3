#!/usr/bin/env python3
"""
Transmission RPC Module for SEEDRELAY

Submits torrent metainfo to a Transmission daemon. Transmission protects its
RPC endpoint with a session id: a request without one is answered with
409 Conflict and an ``X-Transmission-Session-Id`` header, which must then be
echoed on the real call. Each submission performs this handshake from
scratch; the daemon may rotate its session id at any time, so nothing is
cached between submissions.
"""

import base64
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import httpx

from relay_errors import SubmitError, SubmitErrorKind

logger = logging.getLogger(__name__)

SESSION_ID_HEADER = "X-Transmission-Session-Id"
DEFAULT_RPC_PATH = "/transmission/rpc"


class AddTorrentStatus(Enum):
    """Outcome of a handshake that reached the daemon's torrent-add call"""
    SUCCESS = "success"
    DAEMON_REJECTED = "daemon_rejected"


@dataclass
class AddTorrentResult:
    """Result of a torrent-add call the daemon answered"""
    status: AddTorrentStatus
    payload: Any = None

    @property
    def success(self) -> bool:
        return self.status is AddTorrentStatus.SUCCESS


def encode_metainfo(file_bytes: bytes) -> str:
    """Encode raw .torrent bytes the way torrent-add expects them"""
    return base64.b64encode(file_bytes).decode("ascii")


def build_torrent_add_payload(file_bytes: bytes) -> dict:
    """Build the JSON body of a torrent-add request"""
    return {
        "method": "torrent-add",
        "arguments": {"metainfo": encode_metainfo(file_bytes)},
    }


def _response_details(response: httpx.Response) -> Any:
    """Daemon response body for operator debugging, JSON when possible"""
    try:
        return response.json()
    except ValueError:
        return response.text or None


class TransmissionClient:
    """
    Client for a single Transmission daemon.

    Holds only connection settings. Every call to ``submit_torrent`` opens its
    own HTTP client and acquires its own session id.
    """

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        rpc_path: str = DEFAULT_RPC_PATH,
        timeout: float = 30.0,
        strict_handshake: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            base_url: Daemon base URL, e.g. http://localhost:9091
            username: HTTP Basic user for the RPC endpoint
            password: HTTP Basic password for the RPC endpoint
            rpc_path: Path of the RPC endpoint below ``base_url``
            timeout: Per-request timeout in seconds
            strict_handshake: Treat a probe that is not answered with 409 as
                a protocol violation instead of proceeding without a session id
            transport: Optional httpx transport, used by tests
        """
        self.rpc_url = base_url.rstrip("/") + "/" + rpc_path.lstrip("/")
        self.auth = httpx.BasicAuth(username, password)
        self.timeout = timeout
        self.strict_handshake = strict_handshake
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(auth=self.auth, timeout=self.timeout, transport=self._transport)

    async def submit_torrent(self, file_bytes: bytes) -> AddTorrentResult:
        """
        Add a torrent to the daemon.

        Args:
            file_bytes: Raw contents of the .torrent file

        Returns:
            AddTorrentResult with SUCCESS or DAEMON_REJECTED

        Raises:
            SubmitError: The handshake failed, the daemon broke protocol, or
                the daemon could not be reached
        """
        async with self._client() as client:
            session_id = await self._acquire_session_id(client)
            return await self._torrent_add(client, session_id, file_bytes)

    async def _acquire_session_id(self, client: httpx.AsyncClient) -> Optional[str]:
        """Probe the RPC endpoint; a 409 answer carries the session id"""
        logger.debug(f"Requesting Transmission session id from {self.rpc_url}")
        try:
            response = await client.post(self.rpc_url)
        except httpx.HTTPError as e:
            logger.error(f"Transmission unreachable while requesting session id: {e!r}")
            raise SubmitError(
                SubmitErrorKind.TRANSPORT_FAILURE,
                f"Failed to reach Transmission: {e.__class__.__name__}",
            ) from e

        if response.status_code == httpx.codes.CONFLICT:
            session_id = response.headers.get(SESSION_ID_HEADER)
            if not session_id:
                logger.error(
                    f"Transmission answered 409 without {SESSION_ID_HEADER}; "
                    f"headers: {dict(response.headers)}"
                )
                raise SubmitError(
                    SubmitErrorKind.HANDSHAKE_FAILED,
                    "Transmission did not provide a session id",
                    upstream_status=response.status_code,
                )
            logger.info("Obtained Transmission session id")
            logger.debug(f"Session id: {session_id}")
            return session_id

        if response.is_success:
            if self.strict_handshake:
                logger.error(
                    f"Transmission answered the session probe with {response.status_code} "
                    f"instead of 409"
                )
                raise SubmitError(
                    SubmitErrorKind.PROTOCOL_VIOLATION,
                    "Transmission did not request a session id",
                    details=_response_details(response),
                    upstream_status=response.status_code,
                )
            logger.warning(
                f"Transmission answered the session probe with {response.status_code} "
                f"instead of 409, proceeding without a session id"
            )
            return None

        logger.error(f"Unexpected status {response.status_code} while requesting session id")
        raise SubmitError(
            SubmitErrorKind.TRANSPORT_FAILURE,
            f"Transmission returned HTTP {response.status_code}",
            details=_response_details(response),
            upstream_status=response.status_code,
        )

    async def _torrent_add(self, client: httpx.AsyncClient, session_id: Optional[str],
                           file_bytes: bytes) -> AddTorrentResult:
        payload = build_torrent_add_payload(file_bytes)
        headers = {SESSION_ID_HEADER: session_id} if session_id else {}
        logger.debug(
            f"Sending torrent-add to {self.rpc_url} "
            f"(metainfo length {len(payload['arguments']['metainfo'])})"
        )

        try:
            response = await client.post(self.rpc_url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"Transmission unreachable during torrent-add: {e!r}")
            raise SubmitError(
                SubmitErrorKind.TRANSPORT_FAILURE,
                f"Failed to reach Transmission: {e.__class__.__name__}",
            ) from e

        if not response.is_success:
            logger.error(f"Transmission torrent-add failed with HTTP {response.status_code}")
            raise SubmitError(
                SubmitErrorKind.TRANSPORT_FAILURE,
                f"Transmission returned HTTP {response.status_code}",
                details=_response_details(response),
                upstream_status=response.status_code,
            )

        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            logger.error("Transmission torrent-add response is not a JSON object")
            raise SubmitError(
                SubmitErrorKind.PROTOCOL_VIOLATION,
                "Transmission returned an unreadable response",
                details=response.text or None,
                upstream_status=response.status_code,
            )

        if data.get("result") == "success":
            logger.info("Transmission confirmed torrent addition")
            return AddTorrentResult(AddTorrentStatus.SUCCESS, data.get("arguments"))

        logger.warning(f"Transmission reported non-success result: {data.get('result')}")
        return AddTorrentResult(AddTorrentStatus.DAEMON_REJECTED, data)
