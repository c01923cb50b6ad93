"""
Base API client class for the catalog clients.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional
import xml.etree.ElementTree as ET

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry


@dataclass
class APIError(Exception):
    """Custom exception for API errors."""
    message: str
    status_code: Optional[int] = None
    response_data: Optional[Dict[str, Any]] = None

    def __str__(self) -> str:
        if self.status_code:
            return f"API Error {self.status_code}: {self.message}"
        return f"API Error: {self.message}"


class TransportError(APIError):
    """Network failure or timeout before a response was received."""


class ParseError(APIError):
    """A response arrived but its body could not be parsed."""


class FetchStatus(str, Enum):
    OK = "ok"
    EMPTY = "empty"
    ERROR = "error"


@dataclass
class FetchResult:
    """
    Tagged outcome of a single fetch attempt.

    Lets callers walk a list of endpoint strategies without relying on
    exception types to decide whether to move on.
    """
    status: FetchStatus
    url: str
    root: Optional[ET.Element] = None
    error: Optional[APIError] = None

    @property
    def ok(self) -> bool:
        return self.status is FetchStatus.OK

    @classmethod
    def success(cls, url: str, root: ET.Element) -> "FetchResult":
        return cls(FetchStatus.OK, url, root=root)

    @classmethod
    def empty(cls, url: str, root: Optional[ET.Element] = None) -> "FetchResult":
        return cls(FetchStatus.EMPTY, url, root=root)

    @classmethod
    def failure(cls, url: str, error: APIError) -> "FetchResult":
        return cls(FetchStatus.ERROR, url, error=error)


class BaseClient:
    """
    Base class for API clients with common functionality.
    """

    def __init__(
        self,
        base_url: str,
        timeout: int = 30,
        max_retries: int = 3,
        retry_backoff_factor: float = 0.5,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

        # Create session with retry strategy
        self.session = requests.Session()

        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=retry_backoff_factor,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=None,
            raise_on_status=False,
        )

        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def _build_url(self, endpoint: str) -> str:
        """Build full URL from endpoint."""
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        if not endpoint.startswith("/"):
            endpoint = "/" + endpoint
        return f"{self.base_url}{endpoint}"

    def _send(
        self,
        method: str,
        endpoint: str,
        **kwargs
    ) -> requests.Response:
        """
        Send an HTTP request and return the raw response.

        Raises:
            TransportError: If no response was received
        """
        url = self._build_url(endpoint)

        # Set default timeout
        kwargs.setdefault("timeout", self.timeout)

        try:
            return self.session.request(method, url, **kwargs)
        except requests.exceptions.ConnectionError as e:
            raise TransportError(f"Connection error: {str(e)}")
        except requests.exceptions.Timeout as e:
            raise TransportError(f"Request timeout: {str(e)}")
        except requests.exceptions.RequestException as e:
            raise TransportError(f"Request failed: {str(e)}")

    def _request(
        self,
        method: str,
        endpoint: str,
        **kwargs
    ) -> Dict[str, Any]:
        """
        Make an HTTP request.

        Args:
            method: HTTP method (GET, POST, etc.)
            endpoint: API endpoint
            **kwargs: Additional arguments for requests

        Returns:
            Response JSON data

        Raises:
            APIError: If the request fails
        """
        response = self._send(method, endpoint, **kwargs)

        # Check for HTTP errors
        if response.status_code >= 400:
            try:
                error_data = response.json()
            except ValueError:
                error_data = {"error": response.text}
            if not isinstance(error_data, dict):
                error_data = {"error": response.text}

            raise APIError(
                message=error_data.get("error", response.text),
                status_code=response.status_code,
                response_data=error_data,
            )

        if response.status_code == 204 or not response.content:
            return {}

        # Return JSON if possible
        try:
            return response.json()
        except ValueError:
            return {"data": response.text}

    def get(self, endpoint: str, **kwargs) -> Dict[str, Any]:
        """Make a GET request."""
        return self._request("GET", endpoint, **kwargs)

    def post(self, endpoint: str, **kwargs) -> Dict[str, Any]:
        """Make a POST request."""
        return self._request("POST", endpoint, **kwargs)

    def delete(self, endpoint: str, **kwargs) -> Dict[str, Any]:
        """Make a DELETE request."""
        return self._request("DELETE", endpoint, **kwargs)

    def close(self) -> None:
        """Close the session."""
        self.session.close()
