"""REST record writer for host platforms exposing entity endpoints."""

import asyncio
import base64
import time
import logging
import requests
from typing import Any, Dict, List, Optional

from ..errors import (
    PermanentRepositoryError,
    PermissionDeniedError,
    TransientRepositoryError,
)
from .base import RecordWriter

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = {408, 425, 429}


class APIRecordWriter(RecordWriter):
    """
    Record writer for REST endpoints.

    Entities live at ``{base_url}{endpoint}``; single entities at
    ``{base_url}{endpoint}/{id}``. Blocking ``requests`` calls run in a
    worker thread so the event loop keeps serving other jobs.

    Failure classification:
    - Timeouts, connection errors, 408/425/429 and 5xx are transient
    - 401 and 403 are permission errors
    - Any other 4xx is permanent
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        auth_type: str = "bearer",  # bearer, basic, header
        auth_header: str = "Authorization",
        endpoints: Optional[Dict[str, str]] = None,
        timeout: float = 30.0,
        rate_limit: float = 0.0,
        session: Optional[requests.Session] = None
    ):
        """
        Initialize the API writer.

        Args:
            base_url: Base URL for the API
            api_key: API key for authentication
            auth_type: Type of authentication
            auth_header: Header name for ``header`` authentication
            endpoints: Mapping of entity type -> endpoint path
            timeout: Per-request timeout in seconds
            rate_limit: Max requests per second, 0 for unlimited
            session: Pre-built session, mainly for tests
        """
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.auth_type = auth_type
        self.auth_header = auth_header
        self.endpoints = endpoints or {}
        self.timeout = timeout
        self.rate_limit = rate_limit
        self._last_request_time = 0.0
        self._session = session or self._create_session()

    def _create_session(self) -> requests.Session:
        """Create a requests session with authentication."""
        session = requests.Session()

        if self.api_key:
            if self.auth_type == "bearer":
                session.headers["Authorization"] = f"Bearer {self.api_key}"
            elif self.auth_type == "basic":
                credentials = base64.b64encode(f"{self.api_key}:".encode()).decode()
                session.headers["Authorization"] = f"Basic {credentials}"
            elif self.auth_type == "header":
                session.headers[self.auth_header] = self.api_key

        session.headers["Content-Type"] = "application/json"

        return session

    def _rate_limit_wait(self):
        """Wait to respect rate limits."""
        if self.rate_limit > 0:
            elapsed = time.time() - self._last_request_time
            wait_time = (1.0 / self.rate_limit) - elapsed
            if wait_time > 0:
                time.sleep(wait_time)
        self._last_request_time = time.time()

    def _get_endpoint(self, entity_type: str) -> str:
        """Get the API endpoint for an entity type."""
        if entity_type in self.endpoints:
            return self.endpoints[entity_type]
        return f"/{entity_type}"

    def _request(
        self,
        method: str,
        path: str,
        allow_not_found: bool = False,
        **kwargs
    ) -> Optional[requests.Response]:
        """
        Send one request and classify failures.

        Returns:
            The response, or None for a 404 when ``allow_not_found`` is set
        """
        url = f"{self.base_url}{path}"
        self._rate_limit_wait()

        try:
            response = self._session.request(method, url, timeout=self.timeout, **kwargs)
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
            raise TransientRepositoryError(f"{method} {url} failed: {e}") from e
        except requests.exceptions.RequestException as e:
            raise PermanentRepositoryError(f"{method} {url} failed: {e}") from e

        status = response.status_code
        if status < 400:
            return response
        if status == 404 and allow_not_found:
            return None

        message = f"{method} {url} returned {status}: {self._error_message(response)}"
        if status >= 500 or status in TRANSIENT_STATUS_CODES:
            raise TransientRepositoryError(message)
        if status in (401, 403):
            raise PermissionDeniedError(message)
        raise PermanentRepositoryError(message)

    def _error_message(self, response: requests.Response) -> str:
        try:
            error_data = response.json()
        except ValueError:
            return response.text or response.reason or ""
        if isinstance(error_data, dict):
            return str(error_data.get("message") or error_data.get("error") or error_data)
        return str(error_data)

    def _json(self, response: requests.Response) -> Any:
        if not response.text:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise PermanentRepositoryError(f"Invalid JSON response from {response.url}") from e

    @staticmethod
    def _extract_id(data: Any) -> Optional[str]:
        if not isinstance(data, dict):
            return None
        entity_id = data.get("id")
        if entity_id is None and isinstance(data.get("data"), dict):
            entity_id = data["data"].get("id")
        return str(entity_id) if entity_id is not None else None

    def _create_sync(self, entity_type: str, fields: Dict[str, Any]) -> str:
        response = self._request("POST", self._get_endpoint(entity_type), json=fields)
        entity_id = self._extract_id(self._json(response))
        if entity_id is None:
            raise PermanentRepositoryError(f"Create {entity_type} response carried no id")
        return entity_id

    def _find_sync(self, entity_type: str, key: str, value: Any) -> Optional[str]:
        response = self._request(
            "GET", self._get_endpoint(entity_type), params={key: value}, allow_not_found=True,
        )
        if response is None:
            return None
        data = self._json(response)
        items: List[Any] = []
        if isinstance(data, list):
            items = data
        elif isinstance(data, dict):
            for list_key in ["data", "results", "items", "records"]:
                if isinstance(data.get(list_key), list):
                    items = data[list_key]
                    break
        for item in items:
            entity_id = self._extract_id(item)
            if entity_id is not None:
                return entity_id
        return None

    def _update_sync(self, entity_type: str, entity_id: str, fields: Dict[str, Any]) -> None:
        self._request("PATCH", f"{self._get_endpoint(entity_type)}/{entity_id}", json=fields)

    def _get_sync(self, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        response = self._request(
            "GET", f"{self._get_endpoint(entity_type)}/{entity_id}", allow_not_found=True,
        )
        if response is None:
            return None
        data = self._json(response)
        if isinstance(data, dict) and isinstance(data.get("data"), dict):
            return data["data"]
        return data

    async def create(self, entity_type: str, fields: Dict[str, Any]) -> str:
        return await asyncio.to_thread(self._create_sync, entity_type, fields)

    async def find_by_natural_key(self, entity_type: str, key: str, value: Any) -> Optional[str]:
        return await asyncio.to_thread(self._find_sync, entity_type, key, value)

    async def update(self, entity_type: str, entity_id: str, fields: Dict[str, Any]) -> None:
        await asyncio.to_thread(self._update_sync, entity_type, entity_id, fields)

    async def get(self, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self._get_sync, entity_type, entity_id)
