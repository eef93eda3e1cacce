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
Headless browser sessions and the per-engine image URL collectors.

Each search engine exposes ``fetch_candidate_urls(session, query)`` and fails
with ``FetchError``. A ``BrowserSession`` is bound to a wall-clock deadline: a
watchdog quits the driver once it passes, and anything still running inside
the session then fails with ``SessionTimeout``.
"""
from __future__ import annotations

import contextlib
import json
import logging
import threading
import time
from concurrent.futures import Future, TimeoutError as FutureTimeoutError
from pathlib import Path
from typing import Dict, List, Optional, Sequence
from urllib.parse import parse_qs, urlencode, urlsplit

from bs4 import BeautifulSoup
from webdriver_manager.chrome import ChromeDriverManager


LOGGER = logging.getLogger("image_search_multitool.engines")
DEFAULT_SESSION_TIMEOUT = 60.0

_DRIVER_INSTALL_LOCK = threading.Lock()
_chromedriver_path: Optional[Path] = None


class FetchError(RuntimeError):
    """Raised when a search engine session cannot produce candidate URLs."""


class SessionTimeout(FetchError):
    """Raised when work is attempted on a session whose deadline has passed."""


class BrowserSession:
    """
    One isolated browser, torn down at ``timeout`` seconds after it opened.

    The session owns its driver. ``close()`` is idempotent and is also what the
    watchdog calls, so a page load blocked in another thread fails as soon as
    the deadline passes.
    """

    def __init__(self, driver, *, timeout: float = DEFAULT_SESSION_TIMEOUT, label: str = "") -> None:
        self.driver = driver
        self.timeout = timeout
        self.label = label
        self.deadline = time.monotonic() + timeout
        self._lock = threading.Lock()
        self._closing = False
        self._closed = threading.Event()
        self._expired = threading.Event()

        with contextlib.suppress(Exception):
            driver.set_page_load_timeout(timeout)
            driver.set_script_timeout(timeout)

        self._watchdog = threading.Timer(max(timeout, 0.0), self._expire)
        self._watchdog.daemon = True
        self._watchdog.start()

    def __enter__(self) -> "BrowserSession":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def expired(self) -> bool:
        # The deadline wins even if the watchdog thread has not fired yet.
        if time.monotonic() >= self.deadline:
            self._expire()
        return self._expired.is_set()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def remaining(self) -> float:
        return max(0.0, self.deadline - time.monotonic())

    def _expire(self) -> None:
        with self._lock:
            if self._closing or self._expired.is_set():
                return
            self._expired.set()
        LOGGER.warning("%s session timed out after %.1fs, closing browser", self.label or "Browser", self.timeout)
        self.close()

    def close(self) -> None:
        with self._lock:
            if self._closing:
                return
            self._closing = True
        self._watchdog.cancel()
        with contextlib.suppress(Exception):
            self.driver.quit()
        # Waiters in pause() wake only once the driver is gone.
        self._closed.set()

    def check(self) -> None:
        """Raise if the session can no longer be used."""
        if self.expired:
            raise SessionTimeout(f"{self.label or 'browser'} session exceeded {self.timeout:.0f}s")
        if self._closed.is_set():
            raise FetchError(f"{self.label or 'browser'} session is closed")

    def open(self, url: str) -> None:
        self.check()
        LOGGER.debug("Navigating to %s", url)
        self.driver.get(url)
        self.check()

    def pause(self, seconds: float) -> None:
        """Sleep for ``seconds``, waking early if the session is torn down."""
        self.check()
        self._closed.wait(min(seconds, self.remaining()))
        self.check()

    def run_script(self, script: str):
        self.check()
        result = self.driver.execute_script(script)
        self.check()
        return result

    def scroll(self, times: int, interval: float) -> None:
        """Scroll to the bottom ``times`` times so lazy-loaded results render."""
        for _ in range(times):
            self.run_script("window.scrollBy(0, document.body.scrollHeight);")
            self.pause(interval)

    @property
    def page_source(self) -> str:
        self.check()
        return self.driver.page_source


def _resolve_chromedriver() -> Path:
    global _chromedriver_path
    with _DRIVER_INSTALL_LOCK:
        if _chromedriver_path is None:
            try:
                # Use default cache (usually ~/.wdm) as path arg is not supported in v4.x
                _chromedriver_path = Path(ChromeDriverManager().install())
            except Exception as error:
                raise FetchError(f"Failed to install ChromeDriver: {error}") from error
        return _chromedriver_path


def _start_driver(chromedriver_path: Path, headless: bool):
    # Lazy import selenium pieces; the parsers and session bookkeeping do not need them
    try:
        from selenium import webdriver as selenium_webdriver  # type: ignore
        from selenium.webdriver.chrome.service import Service as ChromeService  # type: ignore
    except Exception as error:  # pylint: disable=broad-except
        raise FetchError(
            "Selenium is required for browser sessions. Please install it: pip install selenium"
        ) from error

    options = selenium_webdriver.ChromeOptions()
    if headless:
        # modern headless for Chrome >= 109
        options.add_argument("--headless=new")
    options.add_argument("--disable-gpu")
    options.add_argument("--no-sandbox")
    options.add_argument("--window-size=1920,1080")
    options.add_argument("--log-level=3")
    # Fix for WebGL/GPU errors in some environments
    options.add_argument("--enable-unsafe-swiftshader")
    options.add_argument("--disable-software-rasterizer")

    try:
        service = ChromeService(executable_path=str(chromedriver_path))
        return selenium_webdriver.Chrome(service=service, options=options)
    except Exception as error:  # pylint: disable=broad-except
        raise FetchError(f"Failed to start Chrome: {error}") from error


def _launch_driver(future: Future, headless: bool) -> None:
    if not future.set_running_or_notify_cancel():
        return
    try:
        future.set_result(_start_driver(_resolve_chromedriver(), headless))
    except BaseException as error:  # pylint: disable=broad-except
        future.set_exception(error)


def _quit_late_driver(future: Future) -> None:
    if future.cancelled() or future.exception() is not None:
        return
    LOGGER.debug("Closing browser that finished starting after its deadline")
    with contextlib.suppress(Exception):
        future.result().quit()


def open_browser_session(
    timeout: float = DEFAULT_SESSION_TIMEOUT, *, headless: bool = True, label: str = ""
) -> BrowserSession:
    """
    Launch a fresh Chrome instance and wrap it in a deadline-bound session.

    The ChromeDriver install and the browser launch run on a daemon thread and
    count against ``timeout``. A browser that comes up after the deadline is
    quit as soon as it appears.
    """
    started = time.monotonic()
    future: Future = Future()
    launcher = threading.Thread(
        target=_launch_driver, args=(future, headless), name=f"launch-{label or 'browser'}", daemon=True
    )
    launcher.start()
    try:
        driver = future.result(timeout=max(timeout, 0.0))
    except FutureTimeoutError:
        future.add_done_callback(_quit_late_driver)
        raise SessionTimeout(f"{label or 'browser'} session exceeded {timeout:.0f}s while starting") from None

    remaining = timeout - (time.monotonic() - started)
    if remaining <= 0:
        with contextlib.suppress(Exception):
            driver.quit()
        raise SessionTimeout(f"{label or 'browser'} session exceeded {timeout:.0f}s while starting")
    return BrowserSession(driver, timeout=remaining, label=label)


def filter_google_image_urls(image_urls: Sequence[str]) -> List[str]:
    """Drop Google's own logos, inline base64 thumbnails and favicons."""
    filtered: List[str] = []
    for url in image_urls:
        if not isinstance(url, str):
            continue
        if url.startswith("https") and "google" not in url and "base64" not in url and "FAVICON" not in url:
            filtered.append(url)
    return filtered


def parse_bing_image_urls(page_source: str) -> List[str]:
    """Pull the full-size ``murl`` out of each result's JSON ``m`` attribute."""
    soup = BeautifulSoup(page_source, "html.parser")
    results: List[str] = []
    for anchor in soup.select("a.iusc"):
        meta_raw = anchor.get("m")
        if not meta_raw:
            continue
        try:
            meta_data = json.loads(meta_raw)
        except (ValueError, TypeError):
            continue
        image_url = meta_data.get("murl") if isinstance(meta_data, dict) else None
        if image_url:
            results.append(image_url)
    return results


def parse_yandex_image_urls(links: Sequence[str]) -> List[str]:
    """Extract the ``img_url`` parameter Yandex embeds in each result link."""
    image_urls: List[str] = []
    for link in links:
        try:
            query = urlsplit(link).query
        except ValueError:
            continue
        values = parse_qs(query).get("img_url")
        if values and values[0]:
            image_urls.append(values[0])
    return image_urls


class ImageSearchEngine:
    """Base class for the per-engine collectors."""

    name = ""
    SEARCH_URL = ""
    QUERY_PARAM = "q"
    EXTRA_PARAMS: Dict[str, str] = {}
    REFERER = ""
    SETTLE_SECONDS = 2.0
    SCROLLS = 0
    SCROLL_INTERVAL = 0.5

    def build_search_url(self, query: str) -> str:
        params = {self.QUERY_PARAM: query}
        params.update(self.EXTRA_PARAMS)
        return f"{self.SEARCH_URL}?{urlencode(params)}"

    def request_headers(self) -> Dict[str, str]:
        return {"Referer": self.REFERER} if self.REFERER else {}

    def fetch_candidate_urls(self, session: BrowserSession, query: str) -> List[str]:
        LOGGER.info("Fetching %s results for %r", self.name, query)
        try:
            urls = self._collect(session, query)
        except FetchError:
            raise
        except Exception as error:  # pylint: disable=broad-except
            if session.expired:
                raise SessionTimeout(f"{self.name} session timed out: {error}") from error
            raise FetchError(f"failed to fetch {self.name} image links: {error}") from error
        # A list gathered past the deadline is discarded, not salvaged.
        session.check()
        LOGGER.info("%s returned %d candidate URLs", self.name, len(urls))
        return urls

    def _load_results(self, session: BrowserSession, query: str) -> None:
        session.open(self.build_search_url(query))
        session.pause(self.SETTLE_SECONDS)
        if self.SCROLLS:
            session.scroll(self.SCROLLS, self.SCROLL_INTERVAL)

    def _collect(self, session: BrowserSession, query: str) -> List[str]:
        raise NotImplementedError


class GoogleImageSearch(ImageSearchEngine):
    name = "google"
    SEARCH_URL = "https://www.google.com/search"
    EXTRA_PARAMS = {"tbm": "isch", "udm": "2"}
    REFERER = "https://www.google.com/"
    SCROLLS = 10
    IMAGE_SCRIPT = "return Array.from(document.querySelectorAll('img')).map(img => img.src);"

    def _collect(self, session: BrowserSession, query: str) -> List[str]:
        self._load_results(session, query)
        session.pause(self.SETTLE_SECONDS)
        image_urls = session.run_script(self.IMAGE_SCRIPT) or []
        return filter_google_image_urls(image_urls)


class BingImageSearch(ImageSearchEngine):
    name = "bing"
    SEARCH_URL = "https://www.bing.com/images/search"
    REFERER = "https://www.bing.com/"
    SCROLLS = 5

    def _collect(self, session: BrowserSession, query: str) -> List[str]:
        self._load_results(session, query)
        return parse_bing_image_urls(session.page_source)


class YandexImageSearch(ImageSearchEngine):
    name = "yandex"
    SEARCH_URL = "https://yandex.com/images/search"
    QUERY_PARAM = "text"
    REFERER = "https://yandex.com/"

    def _collect(self, session: BrowserSession, query: str) -> List[str]:
        self._load_results(session, query)
        soup = BeautifulSoup(session.page_source, "html.parser")
        links = [anchor.get("href", "") for anchor in soup.select("a.Link.ContentImage-Cover")]
        return parse_yandex_image_urls([link for link in links if link])


ENGINES: Dict[str, ImageSearchEngine] = {
    engine.name: engine for engine in (GoogleImageSearch(), BingImageSearch(), YandexImageSearch())
}
