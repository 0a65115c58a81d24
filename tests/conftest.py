"""Shared fixtures and utilities for TikTok Streamkey tests."""

import asyncio
import json
from pathlib import Path
from typing import Any, Callable

import pytest

from tiktok_streamkey.config import (
    ENV_AUTH_TIMEOUT,
    ENV_BROWSER_CHANNEL,
    ENV_DATA_DIR,
    ENV_LOGIN_SETTLE_DELAY,
    STREAMLABS_LOGIN_URL,
    TIKTOK_LOGIN_URL,
    Settings,
)
from tiktok_streamkey.oauth.browser import BrowserSession, NavigationEvent, SessionListeners
from tiktok_streamkey.oauth.cookies import SessionCookie
from tiktok_streamkey.oauth.flow import EXCHANGE_SCRIPT


# ============================================================================
# Sample URLs and Payloads
# ============================================================================

HOME_URL = "https://www.tiktok.com/foryou"
SUCCESS_URL = "https://streamlabs.com/dashboard?code=abc&success=true"
SUCCESS_RESPONSE = {
    "success": True,
    "status": 200,
    "data": {"success": True, "data": {"oauth_token": "XYZ", "id": 42}},
}


def window_context_message(url: str) -> str:
    """Build the WINDOW_CONTEXT message the bridge script posts for a URL."""
    return json.dumps(
        {
            "type": "WINDOW_CONTEXT",
            "payload": {
                "url": {"full": url, "host": url.split("/")[2] if "://" in url else ""},
                "document": {"title": "Test page"},
                "userAgent": "test-agent",
            },
        }
    )


# ============================================================================
# Fake Browser Session
# ============================================================================


class FakeBrowserSession(BrowserSession):
    """In-memory browser session.

    Every URL the session "loads" is reported twice, once as a full page load
    and once as an in-page WINDOW_CONTEXT message, the way a real page does.

    Attributes:
        routes: Navigated URL prefix -> URLs the page then redirects through
        exchange_result: Value the in-page exchange returns, or an exception
            to raise from it
        after_navigate: Hook called after each navigate(url)
    """

    def __init__(
        self,
        routes: dict[str, list[str]] | None = None,
        exchange_result: Any = None,
        cookies: list[SessionCookie] | None = None,
        after_navigate: Callable[["FakeBrowserSession", str], None] | None = None,
        report_in_page: bool = True,
    ):
        self.routes = routes or {}
        self.exchange_result = exchange_result if exchange_result is not None else SUCCESS_RESPONSE
        self.jar: list[SessionCookie] = list(cookies or [])
        self.after_navigate = after_navigate
        self.report_in_page = report_in_page

        self.listeners: SessionListeners | None = None
        self.navigations: list[str] = []
        self.exchange_calls: list[dict[str, Any]] = []
        self.evaluations: list[tuple[str, Any]] = []
        self.added_cookies: list[SessionCookie] = []
        self.close_calls = 0
        self._url = "about:blank"
        self._closed = False

    @property
    def url(self) -> str:
        return self._url

    @property
    def is_closed(self) -> bool:
        return self._closed

    def attach(self, listeners: SessionListeners) -> None:
        self.listeners = listeners

    async def add_cookies(self, cookies: list[SessionCookie]) -> None:
        self.added_cookies.extend(cookies)
        self.jar.extend(cookies)

    async def get_cookies(self) -> list[SessionCookie]:
        return list(self.jar)

    async def navigate(self, url: str) -> None:
        self.navigations.append(url)
        self.load_url(url)
        for prefix, follow_ups in self.routes.items():
            if url.startswith(prefix):
                for next_url in follow_ups:
                    self.load_url(next_url)
                break
        if self.after_navigate is not None:
            self.after_navigate(self, url)

    def load_url(self, url: str) -> None:
        """Simulate the page arriving at a URL."""
        self._url = url
        if self.listeners is None or self._closed:
            return
        self.listeners.on_navigate(NavigationEvent(url=url, occurs_during_page_load=True))
        self.listeners.on_load()
        if self.report_in_page:
            self.post_message(window_context_message(url))

    def post_message(self, text: str | bytes) -> None:
        """Simulate the page posting a message over window.ipc."""
        assert self.listeners is not None
        self.listeners.on_message(text)

    def simulate_user_close(self) -> None:
        """Simulate the user closing the window."""
        self._closed = True
        if self.listeners is not None:
            self.listeners.on_close()

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        if script == EXCHANGE_SCRIPT:
            self.exchange_calls.append(arg)
            await asyncio.sleep(0)
            if isinstance(self.exchange_result, BaseException):
                raise self.exchange_result
            return self.exchange_result
        self.evaluations.append((script, arg))
        return True

    async def close(self) -> None:
        self.close_calls += 1
        self._closed = True


def session_factory(session: FakeBrowserSession):
    """Wrap a fake session in the async factory the state machine expects."""

    async def factory() -> BrowserSession:
        return session

    return factory


@pytest.fixture
def fake_session() -> FakeBrowserSession:
    """A fake session that logs in and lands on the success URL."""
    return FakeBrowserSession(
        routes={
            TIKTOK_LOGIN_URL: [HOME_URL],
            STREAMLABS_LOGIN_URL: [SUCCESS_URL],
        }
    )


# ============================================================================
# Settings and Environment Fixtures
# ============================================================================


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings rooted in a temporary data directory with no login delay."""
    return Settings(data_dir=tmp_path, auth_timeout=5.0, login_settle_delay=0.0)


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    """Remove STREAMKEY_* variables and restore them after the test.

    Setting before deleting makes monkeypatch record the variables, so
    values a .env file loads during the test are removed afterwards too.
    """
    for name in (ENV_DATA_DIR, ENV_AUTH_TIMEOUT, ENV_LOGIN_SETTLE_DELAY, ENV_BROWSER_CHANNEL):
        monkeypatch.setenv(name, "placeholder")
        monkeypatch.delenv(name)
    return monkeypatch
