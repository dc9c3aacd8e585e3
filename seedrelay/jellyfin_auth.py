#!/usr/bin/env python3
"""
Authentication Module for SEEDRELAY

Users log in with their Jellyfin credentials. A successful Jellyfin login
creates a server-side session; the browser receives a signed token naming
that session and presents it as a Bearer token on later requests.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import httpx
from jose import JWTError, jwt

from relay_errors import AuthError, AuthErrorKind, BadRequestError, UnauthenticatedError
from session_store import Session, SessionStore

logger = logging.getLogger(__name__)

TOKEN_ALGORITHM = "HS256"


@dataclass
class AuthenticatedUser:
    """User fields from a successful Jellyfin login"""
    user_id: str
    user_name: str
    access_token: str


class JellyfinClient:
    """Minimal client for Jellyfin's AuthenticateByName endpoint"""

    def __init__(
        self,
        server_url: str,
        client: str = "TorrentUploader",
        device: str = "WebApp",
        device_id: str = "1",
        version: str = "1.0",
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.login_url = server_url.rstrip("/") + "/Users/AuthenticateByName"
        self.authorization = (
            f'MediaBrowser Client="{client}", Device="{device}", '
            f'DeviceId="{device_id}", Version="{version}"'
        )
        self.timeout = timeout
        self._transport = transport

    async def authenticate_by_name(self, username: str, password: str) -> AuthenticatedUser:
        """
        Log in to Jellyfin.

        Raises:
            AuthError: REJECTED when Jellyfin answered with an error status,
                UPSTREAM_UNAVAILABLE when it could not be reached, and
                INVALID_RESPONSE when its success body lacks the user fields
        """
        headers = {"X-Emby-Authorization": self.authorization}
        logger.debug(f"Jellyfin auth URL: {self.login_url}")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    self.login_url,
                    json={"Username": username, "Pw": password},
                    headers=headers,
                )
        except httpx.HTTPError as e:
            logger.error(f"No response from Jellyfin for user {username}: {e!r}")
            raise AuthError(
                AuthErrorKind.UPSTREAM_UNAVAILABLE,
                "Authentication failed - No response from Jellyfin server",
            ) from e

        if not response.is_success:
            try:
                details = response.json()
            except ValueError:
                details = response.text or None
            logger.warning(f"Jellyfin rejected login for user {username} with HTTP {response.status_code}")
            raise AuthError(
                AuthErrorKind.REJECTED,
                "Authentication failed",
                details=details,
                status_code=response.status_code if response.status_code >= 400 else None,
            )

        try:
            data = response.json()
            user = data["User"]
            return AuthenticatedUser(
                user_id=str(user["Id"]),
                user_name=str(user["Name"]),
                access_token=str(data["AccessToken"]),
            )
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Unexpected Jellyfin login response for user {username}: {e!r}")
            raise AuthError(
                AuthErrorKind.INVALID_RESPONSE,
                "Authentication failed - Unexpected response from Jellyfin server",
            ) from e


def create_session_token(session: Session, secret_key: str) -> str:
    """Sign a token naming ``session``; it expires with the session"""
    claims = {
        "sub": session.user_name,
        "sid": session.session_id,
        "exp": datetime.fromtimestamp(session.expires_at, tz=timezone.utc),
    }
    return jwt.encode(claims, secret_key, algorithm=TOKEN_ALGORITHM)


def decode_session_token(token: str, secret_key: str) -> Optional[str]:
    """Return the session id from a valid token, None otherwise"""
    try:
        payload = jwt.decode(token, secret_key, algorithms=[TOKEN_ALGORITHM])
    except JWTError:
        return None
    session_id = payload.get("sid")
    if not isinstance(session_id, str):
        return None
    return session_id


class CredentialGate:
    """Turns Jellyfin credentials into sessions and tokens back into sessions"""

    def __init__(self, identity: JellyfinClient, store: SessionStore, secret_key: str):
        self.identity = identity
        self.store = store
        self.secret_key = secret_key

    async def authenticate(self, username: Optional[str], password: Optional[str],
                           previous_token: Optional[str] = None) -> Session:
        """
        Log a user in and open a new session.

        A session named by ``previous_token`` is destroyed once the new one
        exists, so an id known before login never becomes authenticated.
        """
        if not username or not password:
            logger.warning("Login attempt with missing username or password")
            raise BadRequestError("Username and password are required.")

        user = await self.identity.authenticate_by_name(username, password)
        session = self.store.create(user.user_id, user.user_name)
        logger.info(f"Jellyfin login successful for user {user.user_name}")

        if previous_token:
            previous_id = decode_session_token(previous_token, self.secret_key)
            if previous_id and previous_id != session.session_id:
                self.store.destroy(previous_id)
        return session

    def issue_token(self, session: Session) -> str:
        return create_session_token(session, self.secret_key)

    def optional_session(self, token: Optional[str]) -> Optional[Session]:
        if not token:
            return None
        session_id = decode_session_token(token, self.secret_key)
        if session_id is None:
            return None
        return self.store.lookup(session_id)

    def require_session(self, token: Optional[str]) -> Session:
        """Resolve a token to a live session or raise UnauthenticatedError"""
        session = self.optional_session(token)
        if session is None:
            raise UnauthenticatedError()
        return session

    def logout(self, token: Optional[str]) -> bool:
        session = self.optional_session(token)
        if session is None:
            return False
        logger.info(f"User {session.user_name} logged out")
        return self.store.destroy(session.session_id)
