# Image Search Multitool - Concurrent multi-engine image downloader
# Copyright (C) 2025
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""
Parallel download of one target's image URLs into a single folder.

Every URL becomes a ``DownloadJob`` whose index is its 1-based position in the
input list, so filenames stay deterministic however the downloads race.
"""
from __future__ import annotations

import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

import requests
from requests.adapters import HTTPAdapter


LOGGER = logging.getLogger("image_search_multitool.downloads")
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/127.0.0.0 Safari/537.36"
)
DEFAULT_DOWNLOAD_TIMEOUT = 15.0
IMAGE_EXTENSION = ".jpg"
COLLISION_POLICIES = ("overwrite", "skip", "timestamp")

_UNSAFE_FILENAME_CHARS = re.compile(r'[\\/:*?"<>|\x00-\x1f]+')


class DownloadError(RuntimeError):
    """Raised when a single image (or its destination folder) cannot be written."""


def sanitize_query(query: str) -> str:
    """Replace characters that cannot appear in a filename, keeping everything else."""
    cleaned = _UNSAFE_FILENAME_CHARS.sub("_", query.strip())
    return cleaned or "image"


def ensure_folder(folder: Path) -> Path:
    """Create ``folder`` (and parents) if missing; existing folders are fine."""
    try:
        folder.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        raise DownloadError(f"failed to create folder {folder}: {error}") from error
    return folder


def iter_chunks(response: requests.Response, chunk_size: int = 8192) -> Iterator[bytes]:
    """Yield response body in chunks while ensuring the request context stays open."""
    for chunk in response.iter_content(chunk_size=chunk_size):
        if chunk:
            yield chunk


@dataclass(frozen=True)
class DownloadJob:
    url: str
    folder: Path
    index: int

    def filename(self, query: str, *, stamp: str = "") -> str:
        suffix = f"_{stamp}" if stamp else ""
        return f"{sanitize_query(query)}{self.index}{suffix}{IMAGE_EXTENSION}"

    def target_path(self, query: str, *, stamp: str = "") -> Path:
        return self.folder / self.filename(query, stamp=stamp)


@dataclass
class BatchResult:
    folder: Path
    saved: List[Path] = field(default_factory=list)
    failed: List[Tuple[int, str]] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return len(self.saved) + len(self.failed)


def plan_jobs(urls: Sequence[str], folder: Path) -> List[DownloadJob]:
    """Number the URLs 1..N in the order the search engine returned them."""
    return [DownloadJob(url=url, folder=folder, index=index) for index, url in enumerate(urls, start=1)]


def resolve_target_path(job: DownloadJob, query: str, on_collision: str) -> Path:
    if on_collision not in COLLISION_POLICIES:
        raise ValueError(f"Unknown collision policy: {on_collision!r}")

    target_path = job.target_path(query)
    if not target_path.exists():
        return target_path
    if on_collision == "skip":
        raise DownloadError(f"{target_path.name} already exists")
    if on_collision == "timestamp":
        stamp = time.strftime("%Y%m%dT%H%M%S")
        stamped_path = job.target_path(query, stamp=stamp)
        attempt = 2
        while stamped_path.exists():
            stamped_path = job.target_path(query, stamp=f"{stamp}_{attempt}")
            attempt += 1
        return stamped_path
    LOGGER.warning("Overwriting existing image %s", target_path)
    return target_path


def download_image(
    http: requests.Session,
    job: DownloadJob,
    query: str,
    *,
    timeout: float = DEFAULT_DOWNLOAD_TIMEOUT,
    headers: Optional[Mapping[str, str]] = None,
    on_collision: str = "overwrite",
) -> Path:
    """
    Fetch one image and write it to its numbered file.

    The file is opened only once a 2xx response has arrived, so a network or
    HTTP error leaves nothing behind. A body interrupted mid-stream may leave a
    partial file.
    """
    target_path = resolve_target_path(job, query, on_collision)
    try:
        response = http.get(job.url, timeout=timeout, stream=True, headers=dict(headers or {}))
    except requests.RequestException as error:
        raise DownloadError(f"failed to download image: {error}") from error

    with response:
        try:
            response.raise_for_status()
        except requests.HTTPError as error:
            raise DownloadError(f"failed to download image: {error}") from error

        try:
            with target_path.open("wb") as handle:
                for chunk in iter_chunks(response):
                    handle.write(chunk)
        except OSError as error:
            raise DownloadError(f"failed to save image {target_path.name}: {error}") from error
        except requests.RequestException as error:
            raise DownloadError(f"failed while reading image body: {error}") from error

    return target_path


def _new_http_session(pool_size: int) -> requests.Session:
    session = requests.Session()
    session.headers["User-Agent"] = DEFAULT_USER_AGENT
    adapter = HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def download_batch(
    urls: Sequence[str],
    folder: Path,
    query: str,
    *,
    http: Optional[requests.Session] = None,
    headers: Optional[Mapping[str, str]] = None,
    timeout: float = DEFAULT_DOWNLOAD_TIMEOUT,
    on_collision: str = "overwrite",
    max_workers: Optional[int] = None,
    label: str = "",
) -> BatchResult:
    """
    Download every URL in parallel into ``folder`` and wait for all of them.

    Each job is independent: a failed download is logged and recorded in
    ``BatchResult.failed`` without touching its siblings. ``saved`` and
    ``failed`` come back sorted by index, not by completion order.

    Args:
        urls: Image URLs in the order the search engine returned them.
        folder: Destination folder, created if missing.
        query: Search phrase used as the filename stem.
        http: Shared ``requests.Session``; a pooled one is created if omitted.
        headers: Extra request headers, e.g. a per-engine ``Referer``.
        timeout: Per-request timeout in seconds.
        on_collision: ``overwrite``, ``skip`` or ``timestamp``.
        max_workers: Thread cap; defaults to one thread per URL.
        label: Prefix for log messages, usually the target name.
    """
    if on_collision not in COLLISION_POLICIES:
        raise ValueError(f"Unknown collision policy: {on_collision!r}")

    ensure_folder(folder)
    result = BatchResult(folder=folder)
    jobs = plan_jobs(urls, folder)
    if not jobs:
        LOGGER.info("%sno images to download into %s", f"{label}: " if label else "", folder)
        return result

    workers = len(jobs) if not max_workers or max_workers <= 0 else min(max_workers, len(jobs))
    owns_http = http is None
    if http is None:
        http = _new_http_session(workers)

    saved: Dict[int, Path] = {}
    failed: Dict[int, str] = {}
    prefix = f"{label} " if label else ""
    try:
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"download-{label or 'batch'}") as executor:
            future_to_job = {
                executor.submit(
                    download_image,
                    http,
                    job,
                    query,
                    timeout=timeout,
                    headers=headers,
                    on_collision=on_collision,
                ): job
                for job in jobs
            }
            for future in as_completed(future_to_job):
                job = future_to_job[future]
                try:
                    path = future.result()
                except DownloadError as error:
                    LOGGER.warning("Failed to download %simage %d: %s", prefix, job.index, error)
                    failed[job.index] = str(error)
                except Exception as error:  # pylint: disable=broad-except
                    LOGGER.warning("Unexpected error downloading %simage %d: %s", prefix, job.index, error)
                    failed[job.index] = str(error)
                else:
                    LOGGER.info("Saved %simage -> %s", prefix, path)
                    saved[job.index] = path
    finally:
        if owns_http:
            http.close()

    result.saved = [saved[index] for index in sorted(saved)]
    result.failed = [(index, failed[index]) for index in sorted(failed)]
    return result
