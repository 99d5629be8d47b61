"""
Client-credentials bearer token cache with single-flight refresh.
"""

import threading
import time
from typing import Callable, Optional

import requests
from pydantic import ValidationError as SchemaValidationError

from ..core.errors import ProviderAuthError, ProviderRateLimitError, ProviderUnavailableError, ProviderTimeoutError
from ..core.schemas import TokenResponse
from ..util.logging import logger


class ClientCredentialsAuth:
    """
    Obtains and caches an OAuth2 client-credentials token.

    The token is reused until `expires_in - refresh_margin` seconds after it
    was issued. Refreshes are serialized by a lock: concurrent callers that
    observe an expired token wait for the one in-flight request and then
    reuse its result.
    """

    def __init__(self, token_url: Optional[str], client_id: Optional[str], client_secret: Optional[str],
                 refresh_margin: float = 300.0, timeout: float = 30.0,
                 session: Optional[requests.Session] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_margin = refresh_margin
        self.timeout = timeout
        self.session = session or requests.Session()
        self._clock = clock

        self._lock = threading.Lock()
        self._token: Optional[str] = None
        self._refresh_at = 0.0
        self.refresh_count = 0

    def _is_fresh(self) -> bool:
        return self._token is not None and self._clock() < self._refresh_at

    def get_token(self) -> str:
        """Return a valid bearer token, refreshing at most once for all waiting callers."""
        if self._is_fresh():
            return self._token

        with self._lock:
            # Another thread may have refreshed while we waited for the lock
            if self._is_fresh():
                return self._token
            self._refresh()
            return self._token

    def invalidate(self) -> None:
        """Drop the cached token, e.g. after the provider rejected it."""
        with self._lock:
            self._token = None
            self._refresh_at = 0.0

    def _refresh(self) -> None:
        if not self.token_url or not self.client_id or not self.client_secret:
            raise ProviderAuthError("Client credentials are not configured")

        issued_at = self._clock()
        try:
            response = self.session.post(
                self.token_url,
                data={
                    'grant_type': 'client_credentials',
                    'client_id': self.client_id,
                    'client_secret': self.client_secret,
                },
                headers={'Content-Type': 'application/x-www-form-urlencoded'},
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            raise ProviderTimeoutError(f"Token request timed out after {self.timeout}s") from e
        except requests.RequestException as e:
            raise ProviderUnavailableError(f"Token request failed: {e}") from e

        if response.status_code == 429:
            raise ProviderRateLimitError("Token endpoint rate limited", status_code=429)
        if 400 <= response.status_code < 500:
            raise ProviderAuthError(
                f"Token request rejected with status {response.status_code}",
                status_code=response.status_code,
            )
        if not 200 <= response.status_code < 300:
            raise ProviderUnavailableError(
                f"Token request failed with status {response.status_code}",
                status_code=response.status_code,
            )

        try:
            token = TokenResponse.model_validate(response.json())
        except (ValueError, SchemaValidationError) as e:
            raise ProviderAuthError(f"Malformed token response: {e}") from e

        # Short-lived tokens would otherwise never count as fresh
        margin = min(self.refresh_margin, token.expires_in / 2)
        self._token = token.access_token
        self._refresh_at = issued_at + token.expires_in - margin
        self.refresh_count += 1

        logger.log_operation("auth.token_refresh", "success", {"expires_in": token.expires_in})
