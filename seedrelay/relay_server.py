#!/usr/bin/env python3
"""
SEEDRELAY: Torrent Upload Relay Server

A lightweight Python web server that lets Jellyfin users log in from the
browser, upload a .torrent file, and have it added to a Transmission daemon
through Transmission's RPC interface.
"""

import asyncio
import argparse
import logging
import os
import secrets
from contextlib import asynccontextmanager, suppress
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

import uvicorn
import yaml
from dotenv import load_dotenv
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse, JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

from jellyfin_auth import CredentialGate, JellyfinClient
from relay_errors import BadRequestError, ConfigError, DaemonRejectedError, RelayError
from scratch_files import DEFAULT_MAX_FILE_SIZE, receive_upload_form, scratch_upload
from session_store import InMemorySessionStore, Session, SessionStore
from transmission_rpc import DEFAULT_RPC_PATH, AddTorrentStatus, TransmissionClient

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logging.getLogger("httpx").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)

UPLOAD_FIELD = "torrent"


# ============================================================================
# Configuration Models
# ============================================================================

class ServerConfig(BaseModel):
    """Server configuration"""
    host: str = "127.0.0.1"
    port: int = 3000
    upload_dir: str = "./uploads"
    max_file_size: int = DEFAULT_MAX_FILE_SIZE


class JellyfinConfig(BaseModel):
    """Identity provider configuration"""
    server_url: str = "http://localhost:8096"
    client: str = "TorrentUploader"
    device: str = "WebApp"
    device_id: str = "1"
    version: str = "1.0"
    timeout: float = 15.0


class TransmissionConfig(BaseModel):
    """Download daemon configuration"""
    url: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    rpc_path: str = DEFAULT_RPC_PATH
    timeout: float = 30.0
    strict_handshake: bool = False

    def is_configured(self) -> bool:
        return bool(self.url and self.username and self.password)


class SecurityConfig(BaseModel):
    """Session configuration"""
    secret_key: Optional[str] = None
    session_ttl: float = 24 * 3600
    session_sweep_interval: float = 60.0


class LoggingConfig(BaseModel):
    """Logging configuration"""
    level: str = "INFO"


class AppConfig(BaseModel):
    """Application configuration"""
    server: ServerConfig = Field(default_factory=ServerConfig)
    jellyfin: JellyfinConfig = Field(default_factory=JellyfinConfig)
    transmission: TransmissionConfig = Field(default_factory=TransmissionConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


class LoginRequest(BaseModel):
    """Login request"""
    username: Optional[str] = None
    password: Optional[str] = None


# Environment variable -> (section, key)
ENV_OVERRIDES: Dict[str, Tuple[str, str]] = {
    "PORT": ("server", "port"),
    "UPLOAD_DIR": ("server", "upload_dir"),
    "JELLYFIN_SERVER": ("jellyfin", "server_url"),
    "TRANSMISSION_URL": ("transmission", "url"),
    "TRANS_USER": ("transmission", "username"),
    "TRANS_PASS": ("transmission", "password"),
    "TRANSMISSION_STRICT_HANDSHAKE": ("transmission", "strict_handshake"),
    "SESSION_SECRET": ("security", "secret_key"),
    "LOG_LEVEL": ("logging", "level"),
}


def parse_size(size_str: str) -> int:
    """Parse size string (e.g., '10MB') to bytes"""
    units = {'B': 1, 'KB': 1024, 'MB': 1024**2, 'GB': 1024**3, 'TB': 1024**4}
    size_str = size_str.upper().strip()

    for unit, multiplier in units.items():
        if size_str.endswith(unit):
            try:
                number = float(size_str[:-len(unit)])
                return int(number * multiplier)
            except ValueError:
                pass

    try:
        return int(size_str)
    except ValueError:
        raise ValueError(f"Invalid size format: {size_str}")


def load_config(config_file: Optional[str] = None,
                environ: Optional[Mapping[str, str]] = None) -> AppConfig:
    """
    Build configuration from an optional YAML file and the environment.

    Environment variables take precedence over the file.
    """
    data: dict = {}
    if config_file:
        with open(config_file, 'r') as f:
            data = yaml.safe_load(f) or {}

    if environ is None:
        environ = os.environ
    for var, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(var)
        if value:
            data.setdefault(section, {})[key] = value

    return AppConfig(**data)


def log_configuration(config: AppConfig) -> None:
    """Log the resolved configuration with credentials masked"""
    trans = config.transmission
    logger.info("=" * 60)
    logger.info("SEEDRELAY - Torrent Upload Relay Server")
    logger.info("=" * 60)
    logger.info(f"Host: {config.server.host}")
    logger.info(f"Port: {config.server.port}")
    logger.info(f"Upload Directory: {config.server.upload_dir}")
    logger.info(f"Max File Size: {config.server.max_file_size} bytes")
    logger.info(f"Jellyfin Server: {config.jellyfin.server_url}")
    logger.info(f"Transmission URL: {trans.url or 'MISSING!'}")
    logger.info(f"Transmission User: {'Set' if trans.username else 'MISSING!'}")
    logger.info(f"Transmission Password: {'Set (********)' if trans.password else 'MISSING!'}")
    logger.info(f"Strict Handshake: {'Enabled' if trans.strict_handshake else 'Disabled'}")
    logger.info("=" * 60)
    if not trans.is_configured():
        logger.error(
            "CRITICAL: Transmission settings (TRANSMISSION_URL, TRANS_USER, TRANS_PASS) "
            "are not fully set; uploads will be refused"
        )


# ============================================================================
# Request Dependencies
# ============================================================================

# HTTP Bearer for authentication
security_scheme = HTTPBearer(auto_error=False)


def get_gate(request: Request) -> CredentialGate:
    return request.app.state.gate


def bearer_token(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security_scheme)) -> Optional[str]:
    return credentials.credentials if credentials else None


async def get_current_session(
    token: Optional[str] = Depends(bearer_token),
    gate: CredentialGate = Depends(get_gate),
) -> Session:
    """Get the session of the authenticated user"""
    return gate.require_session(token)


# ============================================================================
# Exception Handlers
# ============================================================================

async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
    if isinstance(exc, ConfigError):
        logger.error(f"Configuration error on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.warning(f"Malformed request body on {request.url.path}")
    error = BadRequestError("Malformed request body.")
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = "bad_request" if exc.status_code == 400 else "http_error"
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail), "code": code},
        headers=getattr(exc, "headers", None),
    )


async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.url.path}")
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error.", "code": "internal_error"},
    )


# ============================================================================
# API Endpoints
# ============================================================================

router = APIRouter()


@router.get("/", response_class=HTMLResponse)
async def serve_frontend():
    """Serve the embedded web interface"""
    return HTML_TEMPLATE


@router.post("/api/login")
async def login(
    login_req: LoginRequest,
    previous_token: Optional[str] = Depends(bearer_token),
    gate: CredentialGate = Depends(get_gate),
):
    """Authenticate against Jellyfin and return a session token"""
    logger.info("Received POST /api/login")
    session = await gate.authenticate(login_req.username, login_req.password, previous_token)
    return {"token": gate.issue_token(session)}


@router.get("/api/status")
async def login_status(
    token: Optional[str] = Depends(bearer_token),
    gate: CredentialGate = Depends(get_gate),
):
    """Report whether the caller holds a live session"""
    session = gate.optional_session(token)
    if session is None:
        return {"loggedIn": False}
    return {"loggedIn": True, "username": session.user_name}


@router.post("/api/logout")
async def logout(
    token: Optional[str] = Depends(bearer_token),
    gate: CredentialGate = Depends(get_gate),
):
    """End the caller's session if there is one"""
    gate.logout(token)
    return {"message": "Logged out successfully"}


@router.post("/api/upload")
async def upload_torrent(
    request: Request,
    session: Session = Depends(get_current_session),
):
    """
    Relay an uploaded .torrent file to Transmission.

    The multipart body is only parsed after the session check, so an
    unauthenticated request never touches the disk.
    """
    logger.info(f"Received POST /api/upload from {session.user_name}")
    config: AppConfig = request.app.state.config
    client: Optional[TransmissionClient] = request.app.state.transmission

    if client is None:
        raise ConfigError("Server configuration error: Transmission details missing.")

    form = await receive_upload_form(request, config.server.max_file_size)
    try:
        upload = form.get(UPLOAD_FIELD)
        if not isinstance(upload, UploadFile):
            logger.error("Upload failed: No file received in the request")
            raise BadRequestError("No torrent file uploaded.")

        async with scratch_upload(upload, config.server.upload_dir, config.server.max_file_size) as job:
            logger.debug(f"Torrent file stored at {job.file_path} ({job.file_size_bytes} bytes)")
            file_bytes = await job.read_bytes()
            result = await client.submit_torrent(file_bytes)
    finally:
        await form.close()

    if result.status is AddTorrentStatus.SUCCESS:
        logger.info(f"Torrent from {session.user_name} added to Transmission")
        return {"result": "success", "details": result.payload}

    raise DaemonRejectedError(
        "Transmission reported an issue adding the torrent.",
        details=result.payload,
    )


# ============================================================================
# Application Factory
# ============================================================================

async def sweep_sessions(store: SessionStore, interval: float) -> None:
    """Periodically evict expired sessions"""
    while True:
        await asyncio.sleep(interval)
        try:
            store.sweep_expired()
        except Exception:
            logger.exception("Session sweep failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan - startup and shutdown"""
    config: AppConfig = app.state.config
    sweeper = asyncio.create_task(
        sweep_sessions(app.state.session_store, config.security.session_sweep_interval)
    )
    logger.info("Session sweeper started")

    yield

    sweeper.cancel()
    with suppress(asyncio.CancelledError):
        await sweeper
    logger.info("Session sweeper stopped")


def create_app(
    config: Optional[AppConfig] = None,
    session_store: Optional[SessionStore] = None,
    transport=None,
) -> FastAPI:
    """
    Build the application.

    Args:
        config: Resolved configuration, defaults if None
        session_store: Session store to use, an InMemorySessionStore if None
        transport: Optional httpx transport for both upstreams, used by tests
    """
    config = config or AppConfig()

    secret_key = config.security.secret_key
    if not secret_key:
        logger.warning("No session secret configured; using a random per-process secret")
        secret_key = secrets.token_urlsafe(32)

    store = session_store or InMemorySessionStore(ttl=config.security.session_ttl)
    jf = config.jellyfin
    identity = JellyfinClient(
        jf.server_url,
        client=jf.client,
        device=jf.device,
        device_id=jf.device_id,
        version=jf.version,
        timeout=jf.timeout,
        transport=transport,
    )

    trans = config.transmission
    transmission = None
    if trans.is_configured():
        transmission = TransmissionClient(
            trans.url,
            trans.username,
            trans.password,
            rpc_path=trans.rpc_path,
            timeout=trans.timeout,
            strict_handshake=trans.strict_handshake,
            transport=transport,
        )

    Path(config.server.upload_dir).mkdir(parents=True, exist_ok=True)

    app = FastAPI(
        title="SEEDRELAY - Torrent Upload Relay Server",
        description="Upload .torrent files to Transmission after logging in with Jellyfin",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.config = config
    app.state.session_store = store
    app.state.gate = CredentialGate(identity, store, secret_key)
    app.state.transmission = transmission

    app.add_exception_handler(RelayError, relay_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)
    app.include_router(router)
    return app


# ============================================================================
# HTML/CSS/JS Embedded Frontend
# ============================================================================

HTML_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>SEEDRELAY - Torrent Upload</title>
    <style>
        body { font-family: sans-serif; background: #101418; color: #e6e6e6; }
        .container { max-width: 480px; margin: 60px auto; }
        input, button { display: block; width: 100%; margin: 8px 0; padding: 8px; }
        .hidden { display: none; }
        .error { color: #ff6b6b; }
        .success { color: #6bff95; }
    </style>
</head>
<body>
    <div class="container">
        <h1>SEEDRELAY</h1>

        <div id="authSection">
            <h2>Login with Jellyfin</h2>
            <input type="text" id="username" placeholder="Username">
            <input type="password" id="password" placeholder="Password">
            <button onclick="login()">Login</button>
        </div>

        <div id="mainSection" class="hidden">
            <p>Logged in as <strong id="currentUser"></strong></p>
            <input type="file" id="torrentInput" accept=".torrent">
            <button onclick="upload()">Send to Transmission</button>
            <button onclick="logout()">Logout</button>
        </div>

        <div id="message"></div>
    </div>

    <script>
        let authToken = sessionStorage.getItem('seedrelayToken');

        function authHeaders() {
            return authToken ? { 'Authorization': `Bearer ${authToken}` } : {};
        }

        function showMessage(text, isError) {
            const div = document.getElementById('message');
            div.textContent = text;
            div.className = isError ? 'error' : 'success';
        }

        function describeError(data) {
            const messages = {
                bad_request: 'Please check your input.',
                auth_failed: 'Wrong username or password.',
                identity_provider_unavailable: 'Jellyfin is not reachable.',
                unauthenticated: 'Your session has ended, please log in again.',
                config_error: 'The server is misconfigured, contact the administrator.',
                daemon_unreachable: 'Transmission is not reachable.',
                daemon_rejected: 'Transmission refused this torrent.',
            };
            return data.error + (messages[data.code] ? ' ' + messages[data.code] : '');
        }

        async function refreshStatus() {
            const response = await fetch('/api/status', { headers: authHeaders() });
            const data = await response.json();
            document.getElementById('authSection').classList.toggle('hidden', data.loggedIn);
            document.getElementById('mainSection').classList.toggle('hidden', !data.loggedIn);
            document.getElementById('currentUser').textContent = data.username || '';
        }

        async function login() {
            const username = document.getElementById('username').value;
            const password = document.getElementById('password').value;
            const response = await fetch('/api/login', {
                method: 'POST',
                headers: { 'Content-Type': 'application/json', ...authHeaders() },
                body: JSON.stringify({ username, password })
            });
            const data = await response.json();
            if (response.ok) {
                authToken = data.token;
                sessionStorage.setItem('seedrelayToken', authToken);
                showMessage('', false);
            } else {
                showMessage(describeError(data), true);
            }
            await refreshStatus();
        }

        async function logout() {
            await fetch('/api/logout', { method: 'POST', headers: authHeaders() });
            authToken = null;
            sessionStorage.removeItem('seedrelayToken');
            await refreshStatus();
        }

        async function upload() {
            const input = document.getElementById('torrentInput');
            if (input.files.length === 0) {
                showMessage('Please select a .torrent file first', true);
                return;
            }
            const formData = new FormData();
            formData.append('torrent', input.files[0]);
            const response = await fetch('/api/upload', {
                method: 'POST',
                headers: authHeaders(),
                body: formData
            });
            const data = await response.json();
            if (response.ok) {
                showMessage('Torrent added to Transmission.', false);
                input.value = '';
            } else {
                showMessage(describeError(data), true);
                if (response.status === 401) {
                    await refreshStatus();
                }
            }
        }

        refreshStatus();
    </script>
</body>
</html>
"""


# ============================================================================
# CLI and Main
# ============================================================================

def main():
    """Main entry point"""
    parser = argparse.ArgumentParser(
        description="SEEDRELAY - Torrent Upload Relay Server"
    )
    parser.add_argument(
        "--config",
        type=str,
        help="Path to configuration file (YAML)"
    )
    parser.add_argument(
        "--env-file",
        type=str,
        default=".env",
        help="Path to a .env file with environment settings (default: .env)"
    )
    parser.add_argument(
        "--host",
        type=str,
        help="Host to bind to (default: 127.0.0.1)"
    )
    parser.add_argument(
        "--port",
        type=int,
        help="Port to bind to (default: 3000)"
    )
    parser.add_argument(
        "--upload-dir",
        type=str,
        help="Directory for temporary upload files (default: ./uploads)"
    )
    parser.add_argument(
        "--max-file-size",
        type=str,
        help="Maximum torrent file size (default: 10MB)"
    )
    parser.add_argument(
        "--strict-handshake",
        action="store_true",
        help="Fail uploads when Transmission does not ask for a session id"
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)"
    )

    args = parser.parse_args()

    load_dotenv(args.env_file)
    config = load_config(args.config)

    # Command line arguments override file and environment
    if args.host:
        config.server.host = args.host
    if args.port:
        config.server.port = args.port
    if args.upload_dir:
        config.server.upload_dir = args.upload_dir
    if args.max_file_size:
        config.server.max_file_size = parse_size(args.max_file_size)
    if args.strict_handshake:
        config.transmission.strict_handshake = True
    if args.log_level:
        config.logging.level = args.log_level

    # Configure logging
    logging.getLogger().setLevel(getattr(logging, config.logging.level.upper()))

    log_configuration(config)
    app = create_app(config)

    logger.info(f"Server running at http://{config.server.host}:{config.server.port}")
    logger.info("Press Ctrl+C to stop")
    logger.info("=" * 60)

    # Run server
    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level=config.logging.level.lower()
    )


if __name__ == "__main__":
    main()
