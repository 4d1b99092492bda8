"""
Resumable HTTP download of model artifacts.
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Callable, Protocol

import requests

from .config import DOWNLOAD_CHUNK_BYTES, DOWNLOAD_TIMEOUT_S
from .observability import get_logger

logger = get_logger(__name__)

ByteProgress = Callable[[int, int], None]


class Downloader(Protocol):
    def download(self, url: str, destination: Path, on_progress: ByteProgress | None = None) -> Path:
        ...


def partial_path(destination: Path) -> Path:
    return destination.with_name(destination.name + ".part")


class HttpDownloader:
    """Streams a URL into ``<destination>.part`` and renames it on completion."""

    def __init__(
        self,
        session: requests.Session | None = None,
        chunk_bytes: int = DOWNLOAD_CHUNK_BYTES,
        timeout_s: float = DOWNLOAD_TIMEOUT_S,
    ):
        self._session = session or requests.Session()
        self._chunk_bytes = int(chunk_bytes)
        self._timeout_s = float(timeout_s)

    def download(self, url: str, destination: Path, on_progress: ByteProgress | None = None) -> Path:
        destination = Path(destination)
        if destination.exists():
            size = destination.stat().st_size
            if on_progress:
                on_progress(size, size)
            return destination

        destination.parent.mkdir(parents=True, exist_ok=True)
        part = partial_path(destination)
        offset = part.stat().st_size if part.exists() else 0
        headers = {"Range": f"bytes={offset}-"} if offset else {}

        with self._session.get(url, stream=True, headers=headers, timeout=self._timeout_s) as response:
            if response.status_code == 416:
                # The partial file already holds the whole body.
                os.replace(part, destination)
                return destination
            response.raise_for_status()
            if offset and response.status_code != 206:
                offset = 0
            total = int(response.headers.get("Content-Length") or 0)
            if total:
                total += offset

            logger.info("model_download_started", url=url, destination=str(destination), resume_from=offset)
            written = offset
            with open(part, "ab" if offset else "wb") as handle:
                for block in response.iter_content(chunk_size=self._chunk_bytes):
                    if not block:
                        continue
                    handle.write(block)
                    written += len(block)
                    if on_progress:
                        on_progress(written, total)

        os.replace(part, destination)
        logger.info("model_download_finished", destination=str(destination), bytes=written)
        return destination
