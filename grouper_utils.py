"""
Utility module for Grouper MCP server.
Contains the configuration value, error types, the Grouper web services client
and the response chunking helper.
"""
from typing import Dict, Any, List, Optional
from dataclasses import dataclass
import json
import logging
import math
import os
import sys
import requests
from requests.auth import HTTPBasicAuth
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_GROUPER_URL = "https://grouper.institution.edu"


def setup_logging(level: Optional[str] = None) -> logging.Logger:
    """Configure logging for the server process.

    Everything goes to stderr: stdout is reserved for the stdio transport.

    Args:
        level: Log level name (defaults to LOG_LEVEL env var or INFO)

    Returns:
        The root logger
    """
    level = level or os.getenv("LOG_LEVEL", "INFO")
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
        force=True,
    )
    return logging.getLogger()


class GrouperError(Exception):
    """Base class for every failure raised while talking to Grouper."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class GrouperConfigError(GrouperError):
    """Raised when required connection settings are missing."""


class GrouperAPIError(GrouperError):
    """Non-success HTTP status or transport failure.

    ``status`` is None when no response was received at all.
    """

    def __init__(self, message: str, status: Optional[int] = None, raw_body: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.raw_body = raw_body


class GrouperParseError(GrouperError):
    """Response body could not be decoded as JSON."""

    def __init__(self, message: str, raw_body: str, status: Optional[int] = None, looks_like_html: bool = False):
        super().__init__(message)
        self.raw_body = raw_body
        self.status = status
        self.looks_like_html = looks_like_html


@dataclass(frozen=True)
class GrouperConfig:
    """Connection settings for one Grouper instance."""

    base_url: str
    username: str
    password: str
    timeout: Optional[float] = None

    @classmethod
    def from_env(cls, base_url: Optional[str] = None, username: Optional[str] = None,
                 password: Optional[str] = None) -> "GrouperConfig":
        """Build a config from explicit overrides, falling back to the environment (.env included)."""
        load_dotenv(override=True)
        base_url = base_url or os.getenv("GROUPER_BASE_URL") or DEFAULT_GROUPER_URL
        username = username or os.getenv("GROUPER_USERNAME")
        password = password or os.getenv("GROUPER_PASSWORD")

        logger.info("GROUPER_BASE_URL: %s", base_url)
        logger.info("GROUPER_USERNAME: %s", "SET" if username else "NOT SET")
        logger.info("GROUPER_PASSWORD: %s", "SET" if password else "NOT SET")

        if not username or not password:
            raise GrouperConfigError("GROUPER_USERNAME and GROUPER_PASSWORD environment variables are required")
        return cls(base_url=base_url.rstrip("/"), username=username, password=password)


class GrouperAPIClient:
    """Encapsulated API client for Grouper web services calls."""

    def __init__(self, config: GrouperConfig):
        self._config = config
        self._auth = HTTPBasicAuth(config.username, config.password)
        self._headers = {
            "Content-Type": "application/json",
            "Accept": "application/json"
        }

    @property
    def base_url(self) -> str:
        return self._config.base_url

    def request(self, endpoint: str, method: str = "POST", body: Optional[Dict[str, Any]] = None) -> Any:
        """Make an authenticated call to the Grouper web services.

        Args:
            endpoint: Path below the base URL, e.g. ``/web/servicesRest/v4_0_120/memberships``
            method: HTTP method
            body: Optional JSON request body

        Returns:
            The decoded JSON response

        Raises:
            GrouperAPIError: on transport failure or a non-success status
            GrouperParseError: when the body is not JSON
        """
        url = f"{self._config.base_url}{endpoint}"
        logger.debug("Grouper %s %s", method, url)
        if body is not None:
            logger.debug("Request body: %s", json.dumps(body))

        try:
            response = requests.request(
                method,
                url,
                json=body,
                headers=self._headers,
                auth=self._auth,
                timeout=self._config.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.error("Request to %s failed: %s", url, e)
            raise GrouperAPIError(f"Grouper API request failed: {e}", raw_body=str(e)) from e

        logger.info("Grouper %s %s -> %s", method, endpoint, response.status_code)
        response_text = response.text

        try:
            data = json.loads(response_text)
        except ValueError as e:
            if not response.ok:
                # Usually an HTML login or error page: bad credentials or wrong base URL
                raise GrouperParseError(
                    f"Grouper API error ({response.status_code}): Response is HTML, not JSON. "
                    f"Check credentials and URL. First 200 chars: {response_text[:200]}",
                    raw_body=response_text,
                    status=response.status_code,
                    looks_like_html=True,
                ) from e
            raise GrouperParseError(
                f"Failed to parse response as JSON: {e}",
                raw_body=response_text,
                status=response.status_code,
            ) from e

        if not response.ok:
            raise GrouperAPIError(
                f"Grouper API error: {json.dumps(data)}",
                status=response.status_code,
                raw_body=response_text,
            )
        return data


def response_section(response: Any, key: str) -> Dict[str, Any]:
    """Return one results object from a Grouper response, or {} when the body or section is not an object."""
    envelope = response if isinstance(response, dict) else {}
    section = envelope.get(key)
    return section if isinstance(section, dict) else {}


@dataclass
class ChunkedResult:
    items: List[Any]
    total_items: int
    is_complete: bool
    page_info: Optional[Dict[str, Any]] = None


class ResultChunker:
    """Splits large result lists into pages so a single tool response stays small."""

    # Maximum response size in characters of JSON
    MAX_RESPONSE_SIZE = 50000
    DEFAULT_PAGE_SIZE = 25

    def __init__(self, max_response_size: Optional[int] = None, default_page_size: Optional[int] = None):
        self.max_response_size = max_response_size or self.MAX_RESPONSE_SIZE
        self.default_page_size = default_page_size or self.DEFAULT_PAGE_SIZE

    def chunk(self, items: List[Any], page_number: Optional[int] = None, page_size: Optional[int] = None,
              item_type_name: str = "items") -> ChunkedResult:
        """Return all items when they fit, otherwise the requested page with pagination metadata.

        Args:
            items: The full list of items
            page_number: 1-indexed page to return (default 1)
            page_size: Items per page (default DEFAULT_PAGE_SIZE)
            item_type_name: Used in the pagination messages, e.g. "members"
        """
        page = int(page_number) if page_number else 1
        size = int(page_size) if page_size else self.default_page_size

        total_size = len(json.dumps(items))
        total_items = len(items)

        if total_size <= self.max_response_size:
            return ChunkedResult(items=items, total_items=total_items, is_complete=True)

        start_index = (page - 1) * size
        chunked_items = items[start_index:start_index + size]
        total_pages = math.ceil(total_items / size)
        has_next = page < total_pages
        has_previous = page > 1

        page_info = {
            "message": (
                f"Result set is too large ({total_items} {item_type_name}, ~{round(total_size / 1024)}KB). "
                f"Showing page {page} of {total_pages} ({size} {item_type_name} per page)."
            ),
            "currentPage": page,
            "pageSize": size,
            "totalPages": total_pages,
            "totalItems": total_items,
            "hasNextPage": has_next,
            "hasPreviousPage": has_previous,
            "nextPage": page + 1 if has_next else None,
            "previousPage": page - 1 if has_previous else None,
            "instruction": (
                f"To retrieve more results, call this tool again with "
                f"page_number={page + 1 if has_next else page} and page_size={size}."
            ),
        }
        return ChunkedResult(items=chunked_items, total_items=total_items, is_complete=False, page_info=page_info)
