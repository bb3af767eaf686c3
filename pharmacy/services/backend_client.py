"""Backend REST API client used by every storefront and admin service."""
import logging
from typing import Any, Callable, Dict, Optional

import requests

from pharmacy.exceptions import AuthError, NetworkError, StorefrontError, error_from_response
from pharmacy.services.events import backend_request_failed

logger = logging.getLogger(__name__)


def call_with_refresh(
    executor: Callable[[], Any],
    refresh: Optional[Callable[[], bool]] = None,
    on_session_expired: Optional[Callable[[], None]] = None
) -> Any:
    """
    Run a backend request, refreshing the session once on 401.

    Args:
        executor: Zero-argument callable performing the request
        refresh: Callable returning True when a new token was obtained
        on_session_expired: Called when the session cannot be recovered

    Returns:
        Whatever the executor returns

    Raises:
        AuthError: If the request is still unauthorized after one refresh
    """
    try:
        return executor()
    except AuthError:
        refreshed = False
        if refresh is not None:
            try:
                refreshed = refresh()
            except StorefrontError as e:
                logger.warning(f"[BACKEND] Token refresh failed: {e.message}")
                refreshed = False

        if not refreshed:
            if on_session_expired is not None:
                on_session_expired()
            raise

    try:
        return executor()
    except AuthError:
        if on_session_expired is not None:
            on_session_expired()
        raise


class BackendClient:
    """Client for the pharmacy backend REST API."""

    def __init__(
        self,
        base_url: str,
        token_provider: Optional[Callable[[], Optional[str]]] = None,
        refresh: Optional[Callable[[], bool]] = None,
        on_session_expired: Optional[Callable[[], None]] = None,
        timeout: int = 30,
        session: Optional[requests.Session] = None
    ):
        """
        Initialize backend client.

        Args:
            base_url: API root, e.g. http://backend:8000/api
            token_provider: Returns the bearer token for the current area, if any
            refresh: Refreshes the token; see call_with_refresh
            on_session_expired: Called when the session cannot be recovered
            timeout: Request timeout in seconds
            session: requests.Session to reuse (a new one is created if None)
        """
        self.base_url = base_url.rstrip('/')
        self.token_provider = token_provider
        self.refresh = refresh
        self.on_session_expired = on_session_expired
        self.timeout = timeout
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        headers = {'Accept': 'application/json'}
        token = self.token_provider() if self.token_provider else None
        if token:
            headers['Authorization'] = f'Bearer {token}'
        return headers

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def _send(self, method: str, path: str, **kwargs) -> Any:
        url = self._url(path)
        try:
            response = self.session.request(
                method,
                url,
                headers=self._headers(),
                timeout=self.timeout,
                **kwargs
            )
        except requests.RequestException as e:
            logger.error(f"[BACKEND] No response for {method} {path}: {e}")
            backend_request_failed.send(self, kind='network', method=method, path=path, status_code=None)
            raise NetworkError()

        if response.status_code >= 400:
            error = error_from_response(response)
            logger.warning(
                f"[BACKEND] {method} {path} failed with {response.status_code}: {error.message}"
            )
            backend_request_failed.send(
                self, kind=type(error).__name__, method=method, path=path,
                status_code=response.status_code
            )
            raise error

        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return None

    def request(self, method: str, path: str, retry_auth: bool = True, **kwargs) -> Any:
        """
        Perform a request and return the decoded JSON body (None when empty).

        With retry_auth, a 401 triggers one token refresh and replay.
        """
        def executor():
            return self._send(method, path, **kwargs)

        if not retry_auth:
            return executor()
        return call_with_refresh(executor, self.refresh, self.on_session_expired)

    def get(self, path: str, params: Optional[Dict[str, Any]] = None, **kwargs) -> Any:
        return self.request('GET', path, params=params, **kwargs)

    def post(self, path: str, json: Optional[Dict[str, Any]] = None, **kwargs) -> Any:
        return self.request('POST', path, json=json, **kwargs)

    def put(self, path: str, json: Optional[Dict[str, Any]] = None, **kwargs) -> Any:
        return self.request('PUT', path, json=json, **kwargs)

    def delete(self, path: str, **kwargs) -> Any:
        return self.request('DELETE', path, **kwargs)


def unwrap_list(payload: Any, *keys: str) -> list:
    """
    Extract a list from the several envelope shapes the backend uses.

    Tries the payload itself, then each key in order ('data' is always tried last).
    """
    if isinstance(payload, list):
        return payload
    if not isinstance(payload, dict):
        return []
    for key in keys + ('data',):
        value = payload.get(key)
        if isinstance(value, list):
            return value
        if isinstance(value, dict):
            nested = unwrap_list(value, *keys)
            if nested:
                return nested
    return []
