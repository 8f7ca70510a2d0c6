"""Raw file download from the object storage collaborator."""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional

import requests

from .errors import DownloadError

logger = logging.getLogger(__name__)


class DocumentStorage(ABC):
    """Interface for fetching uploaded files."""

    @abstractmethod
    async def download(self, url: str) -> bytes:
        """Fetch the raw bytes behind ``url``; raise DownloadError on any failure."""


class HttpDocumentStorage(DocumentStorage):
    """Downloads files over HTTP(S), e.g. from public storage bucket URLs."""

    def __init__(self, session: Optional[requests.Session] = None, timeout: float = 30.0):
        self.session = session or requests.Session()
        self.timeout = timeout

    def _fetch(self, url: str) -> bytes:
        try:
            response = self.session.get(
                url,
                headers={"Accept": "application/pdf"},
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            raise DownloadError(f"Request timed out fetching {url}", e) from e
        except requests.exceptions.RequestException as e:
            raise DownloadError(f"Failed to fetch {url}: {e}", e) from e

        if not 200 <= response.status_code < 300:
            raise DownloadError(f"Failed to fetch {url}: HTTP {response.status_code} {response.reason}")

        try:
            content = response.content
        except requests.exceptions.RequestException as e:
            raise DownloadError(f"Failed to read response body from {url}: {e}", e) from e

        if not content:
            raise DownloadError(f"Downloaded file from {url} is empty")

        content_type = response.headers.get("content-type", "")
        if content_type and "pdf" not in content_type:
            logger.warning(f"Content-Type is {content_type}, expected application/pdf")

        logger.info(f"Downloaded {len(content)} bytes from {url}")
        return content

    async def download(self, url: str) -> bytes:
        return await asyncio.to_thread(self._fetch, url)
