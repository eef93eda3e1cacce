from __future__ import annotations

import threading
import time
from typing import Dict, List, Optional, Sequence, Union

import pytest
import requests

from search_engines import SessionTimeout


class FakeResponse:
    """Minimal stand-in for a streamed ``requests.Response``."""

    def __init__(self, chunks: Sequence[bytes] = (b"\xff\xd8image",), status_code: int = 200,
                 fail_after: Optional[int] = None, delay: float = 0.0) -> None:
        self.chunks = list(chunks)
        self.status_code = status_code
        self.fail_after = fail_after
        self.delay = delay
        self.closed = False

    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self.closed = True

    def raise_for_status(self) -> None:
        if not 200 <= self.status_code < 300:
            raise requests.HTTPError(f"{self.status_code} Client Error")

    def iter_content(self, chunk_size: int = 8192):
        if self.delay:
            time.sleep(self.delay)
        for position, chunk in enumerate(self.chunks):
            if self.fail_after is not None and position >= self.fail_after:
                raise requests.ConnectionError("connection reset mid-body")
            yield chunk


class FakeHttp:
    """Serves canned responses per URL and records every request it sees."""

    def __init__(self, responses: Dict[str, Union[FakeResponse, Exception]]) -> None:
        self.responses = responses
        self.requests: List[dict] = []
        self._lock = threading.Lock()
        self.closed = False

    def get(self, url, timeout=None, stream=False, headers=None):
        with self._lock:
            self.requests.append({"url": url, "timeout": timeout, "stream": stream, "headers": headers})
        outcome = self.responses.get(url)
        if outcome is None:
            raise requests.ConnectionError(f"no route to {url}")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def close(self) -> None:
        self.closed = True


class FakeBrowserSession:
    """Records navigation and hands back canned script results and page source."""

    def __init__(self, *, script_result=None, page_source: str = "", fail_on: str = "",
                 expired: bool = False) -> None:
        self.script_result = script_result
        self._page_source = page_source
        self.fail_on = fail_on
        self.expired = expired
        self.closed = False
        self.visited: List[str] = []
        self.pauses: List[float] = []
        self.scrolls: List[tuple] = []
        self.scripts: List[str] = []

    def __enter__(self) -> "FakeBrowserSession":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self.closed = True

    def check(self) -> None:
        if self.expired:
            raise SessionTimeout("fake session expired")

    def open(self, url: str) -> None:
        if self.fail_on == "open":
            raise RuntimeError("net::ERR_NAME_NOT_RESOLVED")
        self.visited.append(url)

    def pause(self, seconds: float) -> None:
        self.pauses.append(seconds)

    def scroll(self, times: int, interval: float) -> None:
        self.scrolls.append((times, interval))

    def run_script(self, script: str):
        if self.fail_on == "script":
            raise RuntimeError("javascript error")
        self.scripts.append(script)
        return self.script_result

    @property
    def page_source(self) -> str:
        return self._page_source


class FakeDriver:
    """Just enough of a Selenium WebDriver for ``BrowserSession``."""

    def __init__(self, *, page_source: str = "<html></html>", get_delay: float = 0.0) -> None:
        self.page_source = page_source
        self.get_delay = get_delay
        self.visited: List[str] = []
        self.scripts: List[str] = []
        self.quit_calls = 0
        self.page_load_timeout = None
        self.script_timeout = None
        self._quit = threading.Event()

    def set_page_load_timeout(self, seconds: float) -> None:
        self.page_load_timeout = seconds

    def set_script_timeout(self, seconds: float) -> None:
        self.script_timeout = seconds

    def get(self, url: str) -> None:
        if self.get_delay and self._quit.wait(self.get_delay):
            raise RuntimeError("invalid session id")
        self.visited.append(url)

    def execute_script(self, script: str):
        self.scripts.append(script)
        return []

    def quit(self) -> None:
        self.quit_calls += 1
        self._quit.set()


class FakeEngine:
    """Search engine collaborator returning canned URLs or a canned failure."""

    def __init__(self, name: str, urls: Sequence[str] = (), error: Optional[Exception] = None,
                 delay: float = 0.0) -> None:
        self.name = name
        self.urls = list(urls)
        self.error = error
        self.delay = delay
        self.calls: List[tuple] = []

    def request_headers(self) -> dict:
        return {"Referer": f"https://{self.name}.example/"}

    def fetch_candidate_urls(self, session, query: str) -> List[str]:
        self.calls.append((session, query))
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.urls)


class SessionRecorder:
    """Session factory that hands out a new ``FakeBrowserSession`` per call."""

    def __init__(self) -> None:
        self.sessions: List[FakeBrowserSession] = []
        self.calls: List[dict] = []
        self._lock = threading.Lock()

    def __call__(self, timeout, *, headless=True, label=""):
        session = FakeBrowserSession()
        with self._lock:
            self.sessions.append(session)
            self.calls.append({"timeout": timeout, "headless": headless, "label": label})
        return session


@pytest.fixture
def session_recorder() -> SessionRecorder:
    return SessionRecorder()
