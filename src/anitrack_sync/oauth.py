"""OAuth authentication for AniList and MyAnimeList."""

import json
import logging
import secrets
import threading
import webbrowser
from datetime import datetime, timedelta, timezone
from enum import Enum
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path
from typing import Optional, Protocol
from urllib.parse import parse_qs, urlencode, urlparse

import requests

from .cancellation import CancelToken
from .config import AniListConfig, MALConfig, OAuthConfig
from .constants import (
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    HTTP_OK,
    HTTP_TOO_MANY_REQUESTS,
    TOKEN_EXPIRY_BUFFER_SECONDS,
)
from .exceptions import AuthenticationError, RemoteAPIError

logger = logging.getLogger(__name__)

# How long the interactive flow waits for the browser callback
CALLBACK_TIMEOUT_SECONDS = 300


class TokenManager:
    """Persists OAuth tokens for every service in one JSON file."""

    def __init__(self, token_file: Path):
        """Initialize token manager with file path."""
        self.token_file = Path(token_file)
        self._lock = threading.Lock()
        self.data = self._load_tokens()

    def _load_tokens(self) -> dict:
        """Load tokens from file."""
        if self.token_file.exists():
            try:
                with open(self.token_file, "r", encoding="utf-8") as f:
                    data = json.load(f)
                if "tokens" in data:
                    return data
                # Flat {service: {...}} layout
                return {"tokens": data}
            except (OSError, ValueError) as e:
                logger.warning(f"Failed to load tokens: {e}")
        return {"tokens": {}}

    def save_tokens(self) -> None:
        """Save tokens to file."""
        self.token_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.token_file, "w", encoding="utf-8") as f:
            json.dump(self.data, f, indent=4)
        logger.debug(f"Tokens saved to {self.token_file}")

    def get_token(self, service: str, token_type: str = "access_token") -> Optional[str]:
        """Get a token for a service."""
        return self.data.get("tokens", {}).get(service, {}).get(token_type)

    def set_tokens(
        self,
        service: str,
        access_token: str,
        refresh_token: Optional[str] = None,
        expires_in: Optional[int] = None,
    ) -> None:
        """Set tokens for a service with expiry tracking."""
        with self._lock:
            entry = self.data.setdefault("tokens", {}).setdefault(service, {})
            entry["access_token"] = access_token
            entry["token_type"] = "Bearer"

            if refresh_token:
                entry["refresh_token"] = refresh_token

            if expires_in:
                expiry = datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))
                entry["expiry"] = expiry.isoformat()
            else:
                entry.pop("expiry", None)

            self.save_tokens()

    def clear(self, service: str) -> None:
        """Forget every token stored for service."""
        with self._lock:
            if self.data.get("tokens", {}).pop(service, None) is not None:
                self.save_tokens()

    def is_token_expired(self, service: str, buffer_seconds: int = TOKEN_EXPIRY_BUFFER_SECONDS) -> bool:
        """Check if token is expired or will expire soon (within buffer).

        Tokens stored without an expiry are treated as valid.
        """
        expiry_str = self.data.get("tokens", {}).get(service, {}).get("expiry")
        if not expiry_str:
            return False

        try:
            expiry = datetime.fromisoformat(expiry_str.replace("Z", "+00:00"))
        except ValueError as e:
            logger.warning(f"Failed to parse expiry time for {service}: {e}")
            return True

        if expiry.tzinfo is None:
            expiry = expiry.replace(tzinfo=timezone.utc)
        return datetime.now(timezone.utc) >= expiry - timedelta(seconds=buffer_seconds)


class OAuthCallbackHandler(BaseHTTPRequestHandler):
    """HTTP handler for OAuth callback."""

    auth_code: Optional[str] = None
    state: Optional[str] = None
    error: Optional[str] = None

    def do_GET(self):
        """Handle GET request from OAuth callback."""
        parsed = urlparse(self.path)
        params = parse_qs(parsed.query)

        if parsed.path != "/callback":
            self.send_error(404)
            return

        OAuthCallbackHandler.auth_code = params.get("code", [None])[0]
        OAuthCallbackHandler.state = params.get("state", [None])[0]
        OAuthCallbackHandler.error = params.get("error", [None])[0]

        self.send_response(200)
        self.send_header("Content-type", "text/html")
        self.end_headers()

        html = """
        <html>
        <head><title>Authentication Complete</title></head>
        <body>
            <h1>Authentication Complete</h1>
            <p>You can close this window and return to the terminal.</p>
            <script>window.close();</script>
        </body>
        </html>
        """
        self.wfile.write(html.encode())

    def log_message(self, format, *args):
        """Suppress HTTP server logging."""

    @classmethod
    def reset(cls) -> None:
        cls.auth_code = None
        cls.state = None
        cls.error = None


class OAuthProvider(Protocol):
    """Service-specific half of an OAuth flow."""

    service: str

    def get_authorization_url(self) -> tuple[str, str]: ...

    def exchange_code_for_token(self, code: str) -> dict: ...

    def refresh_access_token(self, refresh_token: str) -> dict: ...


def _post_token_request(url: str, service: str, **kwargs) -> dict:
    try:
        response = requests.post(url, timeout=DEFAULT_REQUEST_TIMEOUT_SECONDS, **kwargs)
    except requests.RequestException as e:
        # Transport failure says nothing about the credentials
        raise RemoteAPIError(f"{service} token request failed: {e}") from e

    if response.status_code != HTTP_OK:
        logger.error(f"{service} token request failed: {response.status_code}")
        logger.debug(f"Response: {response.text}")
        message = f"{service} token request failed (HTTP {response.status_code})"
        if response.status_code >= 500 or response.status_code == HTTP_TOO_MANY_REQUESTS:
            raise RemoteAPIError(message, status_code=response.status_code)
        raise AuthenticationError(message)

    try:
        return response.json()
    except ValueError as e:
        raise RemoteAPIError(f"{service} token response is not JSON", status_code=response.status_code) from e


class AniListOAuth:
    """Authorization code flow for AniList."""

    service = "anilist"

    def __init__(self, config: AniListConfig, oauth: OAuthConfig):
        """Initialize AniList OAuth."""
        self.config = config
        self.oauth = oauth

    def get_authorization_url(self) -> tuple[str, str]:
        """Get authorization URL and state."""
        state = secrets.token_urlsafe(32)

        params = {
            "client_id": self.config.client_id,
            "redirect_uri": self.oauth.redirect_uri,
            "response_type": "code",
            "state": state,
        }

        return f"{self.config.auth_url}?{urlencode(params)}", state

    def exchange_code_for_token(self, code: str) -> dict:
        """Exchange authorization code for access token."""
        data = {
            "grant_type": "authorization_code",
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
            "redirect_uri": self.oauth.redirect_uri,
            "code": code,
        }
        return _post_token_request(
            self.config.token_url, "AniList", json=data, headers={"Accept": "application/json"}
        )

    def refresh_access_token(self, refresh_token: str) -> dict:
        # AniList access tokens are long-lived and come without a refresh token
        raise AuthenticationError("AniList tokens cannot be refreshed; run 'anitrack-sync auth anilist'")


class MALOAuth:
    """OAuth flow for MyAnimeList with PKCE."""

    service = "mal"

    def __init__(self, config: MALConfig, oauth: OAuthConfig):
        """Initialize MAL OAuth."""
        self.config = config
        self.oauth = oauth
        self.code_verifier: Optional[str] = None

    def get_authorization_url(self) -> tuple[str, str]:
        """Get authorization URL and state; remembers the PKCE verifier."""
        state = secrets.token_urlsafe(32)
        # MAL only supports the "plain" method, so challenge == verifier
        self.code_verifier = secrets.token_urlsafe(64)

        params = {
            "response_type": "code",
            "client_id": self.config.client_id,
            "redirect_uri": self.oauth.redirect_uri,
            "state": state,
            "code_challenge": self.code_verifier,
            "code_challenge_method": "plain",
        }

        return f"{self.config.auth_url}?{urlencode(params)}", state

    def exchange_code_for_token(self, code: str) -> dict:
        """Exchange authorization code for access token."""
        data = {
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.oauth.redirect_uri,
        }
        if self.code_verifier:
            data["code_verifier"] = self.code_verifier

        logger.debug(f"Sending token request to {self.config.token_url}")
        return _post_token_request(self.config.token_url, "MyAnimeList", data=data)

    def refresh_access_token(self, refresh_token: str) -> dict:
        """Refresh access token using refresh token."""
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        }
        logger.info("Refreshing MAL access token...")
        token_data = _post_token_request(
            self.config.token_url,
            "MyAnimeList",
            data=data,
            auth=(self.config.client_id, self.config.client_secret),
        )
        logger.info("MAL access token refreshed successfully")
        return token_data


class AuthState(str, Enum):
    """Lifecycle of one service's credentials."""

    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"
    REFRESHING = "refreshing"


class OAuthSession:
    """Token lifecycle for one tracker.

    UNAUTHENTICATED -> AUTHENTICATING -> AUTHENTICATED -> EXPIRED -> REFRESHING
    -> AUTHENTICATED | UNAUTHENTICATED. Cached tokens are loaded lazily from the
    token file, so a fresh session picks up a previous login.
    """

    def __init__(
        self,
        provider: OAuthProvider,
        token_manager: TokenManager,
        oauth: Optional[OAuthConfig] = None,
        open_browser: bool = True,
    ):
        self.provider = provider
        self.service = provider.service
        self.token_manager = token_manager
        self.oauth = oauth or OAuthConfig()
        self.open_browser = open_browser
        self._lock = threading.RLock()
        self._state: Optional[AuthState] = None
        # Set when the remote rejected our token and it could not be refreshed
        self._rejected = False

    @property
    def state(self) -> AuthState:
        with self._lock:
            if self._state in (AuthState.AUTHENTICATING, AuthState.REFRESHING):
                return self._state
            if self._rejected:
                self._state = AuthState.UNAUTHENTICATED
            else:
                self._state = self._stored_state()
            return self._state

    def _stored_state(self) -> AuthState:
        if not self.token_manager.get_token(self.service):
            return AuthState.UNAUTHENTICATED
        if self.token_manager.is_token_expired(self.service):
            return AuthState.EXPIRED
        return AuthState.AUTHENTICATED

    def _has_refresh_token(self) -> bool:
        return bool(self.token_manager.get_token(self.service, "refresh_token"))

    def is_authenticated(self) -> bool:
        """True when a usable token exists or an expired one can be refreshed."""
        state = self.state
        if state == AuthState.AUTHENTICATED:
            return True
        return state == AuthState.EXPIRED and self._has_refresh_token()

    def access_token(self) -> str:
        """Return a valid access token, refreshing an expired one first."""
        with self._lock:
            state = self.state
            if state == AuthState.EXPIRED:
                return self.refresh()
            if state != AuthState.AUTHENTICATED:
                raise AuthenticationError(f"Not authenticated with {self.service}")
            return self.token_manager.get_token(self.service)

    def refresh(self) -> str:
        """Exchange the refresh token for a new access token."""
        with self._lock:
            refresh_token = self.token_manager.get_token(self.service, "refresh_token")
            if not refresh_token:
                self._rejected = True
                self._state = AuthState.UNAUTHENTICATED
                raise AuthenticationError(f"No refresh token available for {self.service}")

            self._state = AuthState.REFRESHING
            try:
                token_data = self.provider.refresh_access_token(refresh_token)
                self._store(token_data, fallback_refresh=refresh_token)
            except AuthenticationError:
                self._rejected = True
                self._state = AuthState.UNAUTHENTICATED
                raise
            except RemoteAPIError:
                # Token endpoint unreachable; keep the refresh token for the next attempt
                self._state = None
                raise
            self._rejected = False
            self._state = AuthState.AUTHENTICATED
            return self.token_manager.get_token(self.service)

    def authenticate(self, cancel: Optional[CancelToken] = None) -> None:
        """Make the session usable, running the browser flow if needed.

        Idempotent when already authenticated.
        """
        cancel = cancel or CancelToken(timeout=CALLBACK_TIMEOUT_SECONDS)
        with self._lock:
            state = self.state
            if state == AuthState.AUTHENTICATED:
                logger.debug(f"Already authenticated with {self.service}")
                return
            if state == AuthState.EXPIRED and self._has_refresh_token():
                try:
                    self.refresh()
                    return
                except AuthenticationError as e:
                    logger.warning(f"Token refresh failed for {self.service}, starting login: {e}")

            self._state = AuthState.AUTHENTICATING
            try:
                token_data = self._run_browser_flow(cancel)
                self._store(token_data)
            except Exception:
                self._state = AuthState.UNAUTHENTICATED
                raise
            self._rejected = False
            self._state = AuthState.AUTHENTICATED
            logger.info(f"Successfully authenticated with {self.service}")

    def logout(self) -> None:
        with self._lock:
            self.token_manager.clear(self.service)
            self._rejected = False
            self._state = AuthState.UNAUTHENTICATED

    def _store(self, token_data: dict, fallback_refresh: Optional[str] = None) -> None:
        access_token = token_data.get("access_token")
        if not access_token:
            raise AuthenticationError(f"{self.service} token response has no access token")
        self.token_manager.set_tokens(
            self.service,
            access_token,
            token_data.get("refresh_token", fallback_refresh),
            token_data.get("expires_in"),
        )

    def _run_browser_flow(self, cancel: CancelToken) -> dict:
        """Open the authorization page and wait for the redirect callback."""
        logger.info(f"Starting OAuth flow for {self.service}...")
        auth_url, expected_state = self.provider.get_authorization_url()

        print(f"\nOpening browser for {self.service.upper()} authorization...")
        print(f"If the browser doesn't open, visit this URL:\n{auth_url}\n")
        if self.open_browser:
            webbrowser.open(auth_url)

        OAuthCallbackHandler.reset()
        try:
            server = HTTPServer(("", self.oauth.port), OAuthCallbackHandler)
        except OSError as e:
            raise AuthenticationError(f"Cannot listen for OAuth callback on port {self.oauth.port}: {e}") from e

        print(f"Waiting for authorization callback on port {self.oauth.port}...")
        server.timeout = 1.0
        try:
            while OAuthCallbackHandler.auth_code is None and OAuthCallbackHandler.error is None:
                if cancel.cancelled:
                    raise AuthenticationError(f"Timed out waiting for {self.service} authorization")
                server.handle_request()
        finally:
            server.server_close()

        if OAuthCallbackHandler.error:
            raise AuthenticationError(f"{self.service} authorization denied: {OAuthCallbackHandler.error}")
        if OAuthCallbackHandler.state != expected_state:
            logger.error("State mismatch! Possible CSRF attack.")
            raise AuthenticationError("OAuth state mismatch")

        return self.provider.exchange_code_for_token(OAuthCallbackHandler.auth_code)
