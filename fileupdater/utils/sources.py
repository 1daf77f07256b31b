"""
HOMESERVER Update Management System
Copyright (C) 2024 HOMESERVER LLC

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

"""
Update sources.

A source serves three things: the catalog bytes (index.json), the checksum of
the catalog (index.json.sha256) and the bytes of each file at its current
version. Transport failures surface as NetworkError.
"""

import os
import time
from pathlib import Path
from typing import Iterator, Optional
from urllib.parse import quote, urlparse
from urllib.request import url2pathname

import requests

from ..errors import NetworkError
from .index import CHUNK_SIZE, debug_log, log_message

CATALOG_NAME = "index.json"
CATALOG_CHECKSUM_NAME = "index.json.sha256"


class IndexSource:
    """Interface every update source implements."""

    def fetch_catalog(self) -> bytes:
        raise NotImplementedError

    def fetch_catalog_checksum(self) -> Optional[str]:
        raise NotImplementedError

    def open_file(self, path: str) -> Iterator[bytes]:
        raise NotImplementedError

    def describe(self) -> str:
        return self.__class__.__name__


class DirectoryIndexSource(IndexSource):
    """A mirror laid out on the local filesystem (or a mounted share)."""

    def __init__(self, directory):
        self.directory = Path(directory)

    def _read(self, name: str) -> bytes:
        target = self.directory / name
        try:
            with open(target, "rb") as f:
                return f.read()
        except FileNotFoundError:
            raise
        except OSError as e:
            raise NetworkError(f"Could not read {target}: {e}") from e

    def fetch_catalog(self) -> bytes:
        try:
            return self._read(CATALOG_NAME)
        except FileNotFoundError as e:
            raise NetworkError(f"No catalog found at {self.directory / CATALOG_NAME}") from e

    def fetch_catalog_checksum(self) -> Optional[str]:
        try:
            return self._read(CATALOG_CHECKSUM_NAME).decode("utf-8").strip() or None
        except FileNotFoundError:
            return None

    def open_file(self, path: str) -> Iterator[bytes]:
        target = self.directory.joinpath(*path.split("/"))
        try:
            f = open(target, "rb")
        except OSError as e:
            raise NetworkError(f"Could not open {target}: {e}") from e
        with f:
            for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
                yield chunk

    def describe(self) -> str:
        return str(self.directory)


class HttpIndexSource(IndexSource):
    """HTTP(S) mirror fetched with requests, with retry and backoff."""

    def __init__(self, base_url: str, timeout: float = 30.0, retries: int = 3,
                 retry_backoff: float = 0.5, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/") + "/"
        self.timeout = timeout
        self.retries = max(1, int(retries))
        self.retry_backoff = max(0.0, float(retry_backoff))
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", "fileupdater")

    def _url(self, name: str) -> str:
        return self.base_url + quote(name)

    def _request_with_retry(self, url: str, stream: bool = False) -> requests.Response:
        last_error = None
        for attempt in range(1, self.retries + 1):
            try:
                response = self.session.get(url, timeout=self.timeout, stream=stream)
                if response.status_code == 404:
                    return response
                response.raise_for_status()
                return response
            except requests.RequestException as e:
                last_error = e
                debug_log(f"GET {url} attempt {attempt}/{self.retries} failed: {e}")
                if attempt < self.retries:
                    time.sleep(self.retry_backoff * attempt)
        raise NetworkError(f"Failed to fetch {url}: {last_error}") from last_error

    def fetch_catalog(self) -> bytes:
        url = self._url(CATALOG_NAME)
        response = self._request_with_retry(url)
        if response.status_code == 404:
            raise NetworkError(f"No catalog found at {url}")
        return response.content

    def fetch_catalog_checksum(self) -> Optional[str]:
        response = self._request_with_retry(self._url(CATALOG_CHECKSUM_NAME))
        if response.status_code == 404:
            return None
        return response.text.strip() or None

    def open_file(self, path: str) -> Iterator[bytes]:
        url = self._url(path)
        response = self._request_with_retry(url, stream=True)
        if response.status_code == 404:
            response.close()
            raise NetworkError(f"File not found on server: {url}")
        with response:
            try:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if chunk:
                        yield chunk
            except requests.RequestException as e:
                raise NetworkError(f"Transfer of {url} interrupted: {e}") from e

    def describe(self) -> str:
        return self.base_url


def source_from_url(url: str, timeout: float = 30.0, retries: int = 3) -> IndexSource:
    """Pick the source implementation for a URL or a local path."""
    if not url:
        raise ValueError("No update source configured")
    parsed = urlparse(url)
    if parsed.scheme in ("http", "https"):
        return HttpIndexSource(url, timeout=timeout, retries=retries)
    if parsed.scheme == "file":
        return DirectoryIndexSource(url2pathname(parsed.path))
    if parsed.scheme and len(parsed.scheme) > 1:
        log_message(f"Unsupported source scheme '{parsed.scheme}', treating as path", "WARNING")
    return DirectoryIndexSource(os.path.expanduser(url))
