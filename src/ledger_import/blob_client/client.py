"""
Blob store client for uploaded files.
"""

import logging
from pathlib import Path
from typing import Optional
from urllib.parse import unquote, urlparse

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ledger_import.errors import BlobFetchError

logger = logging.getLogger(__name__)


class BlobClient:
    """
    Fetches uploaded file bytes by URL.

    Features:
    - Automatic retry with backoff on 429 and 5xx responses
    - Per-request timeout
    - file:// URLs read from the local filesystem (CLI imports)
    """

    DEFAULT_TIMEOUT = 30

    def __init__(
        self,
        timeout: int = DEFAULT_TIMEOUT,
        max_retries: int = 3,
        backoff_factor: float = 0.5,
        headers: Optional[dict[str, str]] = None,
    ):
        """
        Initialize blob client.

        Args:
            timeout: Request timeout in seconds
            max_retries: Maximum retry attempts for transient failures
            backoff_factor: Backoff factor for retries
            headers: Extra headers sent with every request
        """
        self.timeout = timeout

        self.session = requests.Session()
        if headers:
            self.session.headers.update(headers)

        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=backoff_factor,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET", "HEAD"],
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def fetch(self, url: str) -> bytes:
        """
        Download a file.

        Args:
            url: http(s) or file URL

        Returns:
            File content

        Raises:
            BlobFetchError: On transport failure, timeout or non-2xx status
        """
        parsed = urlparse(url)
        if parsed.scheme == "file":
            return self._read_local(url, Path(unquote(parsed.path)))
        if parsed.scheme not in ("http", "https"):
            raise BlobFetchError(url, f"Unsupported URL scheme: {parsed.scheme or '(none)'}")

        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise BlobFetchError(url, f"Request timed out: {e}", network=True) from e
        except requests.exceptions.RetryError as e:
            raise BlobFetchError(url, f"Retries exhausted: {e}", network=True) from e
        except requests.exceptions.ConnectionError as e:
            raise BlobFetchError(url, f"Failed to connect: {e}", network=True) from e
        except requests.exceptions.RequestException as e:
            raise BlobFetchError(url, f"Request failed: {e}") from e

        if not response.ok:
            raise BlobFetchError(url, response.reason or "HTTP error", status_code=response.status_code)

        logger.debug("Fetched %d bytes from %s", len(response.content), parsed.netloc)
        return response.content

    @staticmethod
    def _read_local(url: str, path: Path) -> bytes:
        try:
            return path.read_bytes()
        except OSError as e:
            raise BlobFetchError(url, f"Could not read file: {e}") from e

    def close(self) -> None:
        self.session.close()
