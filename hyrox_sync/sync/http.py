"""Base JSON-over-HTTP client with retry logic."""

import logging
from typing import Optional

import requests

from .. import __version__
from .backoff import BackoffPolicy, RetryExhausted, retry_with_backoff
from .errors import SyncError

__all__ = ["JsonHttpClient"]

logger = logging.getLogger(__name__)


class _TransientError(Exception):
    """Internal: marks an error as retryable."""

    pass


class JsonHttpClient:
    """Base HTTP client shared by the peer link and the cloud client.

    Handles:
    - Session management
    - Bearer token and device headers
    - Retry with exponential backoff on connection errors, timeouts and 5xx
    - Translation of ``requests`` failures into ``error_class``
    """

    error_class: type[SyncError] = SyncError
    DEFAULT_POLICY = BackoffPolicy()
    USER_AGENT = f"Hyrox-Sync/{__version__}"

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        device_id: Optional[str] = None,
        timeout: float = 10.0,
        policy: Optional[BackoffPolicy] = None,
        session: Optional[requests.Session] = None,
    ):
        """Initialize the client.

        Args:
            base_url: Endpoint base URL
            token: Bearer token, if the endpoint requires one
            device_id: Sent as ``X-Device-ID``
            timeout: Request timeout in seconds
            policy: Backoff policy for transient failures
            session: Optional requests session (for dependency injection/testing)
        """
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.device_id = device_id
        self.timeout = timeout
        self.policy = policy or self.DEFAULT_POLICY
        self._session = session or requests.Session()
        self._owns_session = session is None

    def _get_headers(self) -> dict:
        headers = {
            "Accept": "application/json",
            "User-Agent": self.USER_AGENT,
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        if self.device_id:
            headers["X-Device-ID"] = self.device_id
        return headers

    def _request(
        self,
        method: str,
        endpoint: str,
        data: Optional[dict] = None,
        params: Optional[dict] = None,
        retry: bool = True,
        allow_missing: bool = False,
    ) -> Optional[dict]:
        """Make a JSON request.

        Returns:
            Response body as dict (empty for no content), or None for a 404
            when ``allow_missing`` is set

        Raises:
            error_class: on HTTP errors, or transient errors after retries
        """
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        kwargs: dict = {"timeout": self.timeout, "headers": self._get_headers()}
        if data is not None:
            kwargs["json"] = data
        if params:
            kwargs["params"] = params

        def do_request() -> Optional[dict]:
            try:
                response = self._session.request(method, url, **kwargs)

                if allow_missing and response.status_code == 404:
                    return None

                if response.status_code in (401, 403):
                    raise self.error_class(f"Not authorized ({response.status_code})")

                # Server errors (5xx) are retryable
                if response.status_code >= 500:
                    raise _TransientError(f"Server error: {response.status_code}")

                response.raise_for_status()
                return response.json() if response.content else {}

            except requests.exceptions.ConnectionError:
                raise _TransientError(f"Cannot connect to {self.base_url}")
            except requests.exceptions.Timeout:
                raise _TransientError("Request timed out")
            except requests.exceptions.HTTPError as e:
                raise self.error_class(
                    f"HTTP error ({e.response.status_code}) for {method} {endpoint}"
                ) from e
            except ValueError as e:
                raise self.error_class(f"Invalid JSON from {method} {endpoint}") from e
            except requests.exceptions.RequestException as e:
                raise self.error_class(f"Request failed for {method} {endpoint}: {e}") from e

        if not retry:
            try:
                return do_request()
            except _TransientError as e:
                raise self.error_class(str(e)) from e

        try:
            return retry_with_backoff(
                do_request,
                policy=self.policy,
                retryable=(_TransientError,),
            )
        except RetryExhausted as e:
            if e.last_error:
                raise self.error_class(str(e.last_error)) from e.last_error
            raise self.error_class("Request failed after retries") from e

    def set_token(self, token: Optional[str]) -> None:
        self.token = token

    def close(self) -> None:
        """Close the session if we own it."""
        if self._owns_session and self._session is not None:
            self._session.close()
            self._session = None

    def __enter__(self) -> "JsonHttpClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
