"""Base API client with common functionality."""

import logging
from typing import Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .cancellation import CancelToken, never_cancelled
from .constants import (
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    HTTP_FORBIDDEN,
    HTTP_TOO_MANY_REQUESTS,
    HTTP_UNAUTHORIZED,
)
from .exceptions import AuthenticationError, RemoteAPIError
from .oauth import OAuthSession

logger = logging.getLogger(__name__)


class BaseAPIClient:
    """Base class for API clients with common request handling.

    The bearer token is taken from the OAuth session on every request, so a
    token refreshed elsewhere is picked up without rebuilding the client.
    """

    service_name = "API"

    def __init__(
        self,
        auth: OAuthSession,
        base_url: str,
        headers: Optional[dict] = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ):
        """Initialize API client with an OAuth session."""
        self.auth = auth
        self.base_url = base_url
        self.request_timeout = request_timeout
        self.session = requests.Session()

        # Configure retry strategy for rate limits (429)
        retry_strategy = Retry(
            total=3,
            backoff_factor=1,
            status_forcelist=[HTTP_TOO_MANY_REQUESTS],
            allowed_methods=["GET", "POST", "PATCH", "PUT", "DELETE"],
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

        if headers:
            self.session.headers.update(headers)

    def _request(
        self, method: str, url: str, cancel: Optional[CancelToken] = None, **kwargs
    ) -> requests.Response:
        """Send an authorized request, refreshing the token once on 401."""
        cancel = cancel or never_cancelled()
        cancel.raise_if_cancelled()

        response = self._send(method, url, self.auth.access_token(), cancel, **kwargs)
        if response.status_code == HTTP_UNAUTHORIZED:
            logger.info(f"{self.service_name} rejected the access token, refreshing")
            token = self.auth.refresh()
            cancel.raise_if_cancelled()
            response = self._send(method, url, token, cancel, **kwargs)

        self._handle_auth_error(response)
        if not response.ok:
            logger.debug(f"{self.service_name} response: {response.text}")
            raise RemoteAPIError(
                f"{self.service_name} API error (HTTP {response.status_code})",
                status_code=response.status_code,
            )
        return response

    def _send(
        self, method: str, url: str, token: str, cancel: CancelToken, **kwargs
    ) -> requests.Response:
        headers = {"Authorization": f"Bearer {token}"}
        headers.update(kwargs.pop("headers", None) or {})
        try:
            return self.session.request(
                method,
                url,
                headers=headers,
                timeout=cancel.timeout_for(self.request_timeout),
                **kwargs,
            )
        except requests.RequestException as e:
            raise RemoteAPIError(f"{self.service_name} request failed: {e}") from e

    def _handle_auth_error(self, response: requests.Response) -> None:
        """Handle authentication errors consistently."""
        if response.status_code in (HTTP_UNAUTHORIZED, HTTP_FORBIDDEN):
            logger.error(f"{self.service_name} authentication failed (HTTP {response.status_code})")
            raise AuthenticationError(
                f"{self.service_name} access token is invalid or expired "
                f"(HTTP {response.status_code})"
            )

    def _json(self, response: requests.Response) -> dict:
        try:
            return response.json()
        except ValueError as e:
            raise RemoteAPIError(f"{self.service_name} returned an invalid JSON body") from e
