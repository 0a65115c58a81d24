"""Automated browser session host.

The acquisition flow needs a visible browser it can drive: inject cookies,
navigate, run scripts in the page, and hear about navigations and page
messages. ``BrowserSession`` is that contract; ``PlaywrightSession`` is the
real implementation and tests substitute an in-memory fake.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError

from ..config import Settings
from .cookies import SessionCookie

logger = logging.getLogger(__name__)

# Name of the page-side function the bridge script posts through
BRIDGE_FUNCTION = "__streamkeyPostMessage"

VIEWPORT = {"width": 1280, "height": 800}

# Defines window.ipc.postMessage and reports WINDOW_CONTEXT on DOM ready and
# on every history change, so in-page navigations are observed even when the
# page never fully reloads.
BRIDGE_SCRIPT = """
(() => {
  if (window.top !== window) return;
  if (window.ipc && window.ipc.__streamkey) return;

  const post = (text) => {
    try { window.%(bridge)s(String(text)); } catch (e) {}
  };
  window.ipc = { __streamkey: true, postMessage: post };

  const sendContext = () => {
    const loc = window.location;
    const params = {};
    new URLSearchParams(loc.search).forEach((value, key) => { params[key] = value; });
    post(JSON.stringify({
      type: 'WINDOW_CONTEXT',
      payload: {
        url: {
          full: loc.href, protocol: loc.protocol, host: loc.host,
          pathname: loc.pathname, hash: loc.hash, origin: loc.origin, params,
        },
        document: {
          title: document.title, referrer: document.referrer,
          language: navigator.language, encoding: document.characterSet,
        },
        screen: { width: screen.width, height: screen.height },
        userAgent: navigator.userAgent,
        timestamp: new Date().toISOString(),
      },
      timestamp: Date.now(),
    }));
  };

  for (const name of ['pushState', 'replaceState']) {
    const original = history[name];
    history[name] = function (...args) {
      const result = original.apply(this, args);
      sendContext();
      return result;
    };
  }
  window.addEventListener('popstate', sendContext);
  window.addEventListener('hashchange', sendContext);

  if (document.readyState === 'loading') {
    document.addEventListener('DOMContentLoaded', sendContext);
  } else {
    sendContext();
  }
})();
""" % {"bridge": BRIDGE_FUNCTION}


class BrowserSessionError(Exception):
    """Error driving the automated browser."""

    pass


@dataclass(frozen=True)
class NavigationEvent:
    """The main frame's URL changed.

    Attributes:
        url: The new URL
        occurs_during_page_load: True for full page loads, False for
            in-page (history API or hash) navigations
    """

    url: str
    occurs_during_page_load: bool


@dataclass
class SessionListeners:
    """Callbacks a session delivers its events to."""

    on_navigate: Callable[[NavigationEvent], None]
    on_load: Callable[[], None]
    on_message: Callable[[str | bytes], None]
    on_close: Callable[[], None]


class BrowserSession(ABC):
    """An automatable browser window."""

    @property
    @abstractmethod
    def url(self) -> str:
        """Current URL of the main frame."""

    @property
    @abstractmethod
    def is_closed(self) -> bool:
        """Whether the window has been closed."""

    @abstractmethod
    def attach(self, listeners: SessionListeners) -> None:
        """Start delivering events to ``listeners``."""

    @abstractmethod
    async def add_cookies(self, cookies: list[SessionCookie]) -> None:
        """Inject cookies into the session's cookie jar."""

    @abstractmethod
    async def get_cookies(self) -> list[SessionCookie]:
        """Read every cookie in the session's cookie jar."""

    @abstractmethod
    async def navigate(self, url: str) -> None:
        """Navigate the main frame to ``url``."""

    @abstractmethod
    async def evaluate(self, script: str, arg: Any = None) -> Any:
        """Evaluate a script in the page and return its JSON-able result."""

    @abstractmethod
    async def close(self) -> None:
        """Close the window and release the browser."""


def _to_playwright_cookie(cookie: SessionCookie) -> dict[str, Any]:
    # domain+path keeps domain cookies (leading ".") scoped to subdomains;
    # Playwright rejects url together with domain/path.
    return {
        "name": cookie.name,
        "value": cookie.value,
        "domain": cookie.domain,
        "path": cookie.path,
        "secure": cookie.secure,
        "httpOnly": cookie.http_only,
        "expires": cookie.expiration_date if cookie.expiration_date is not None else -1,
    }


class PlaywrightSession(BrowserSession):
    """Headed Chromium window driven through Playwright."""

    def __init__(
        self,
        playwright: Playwright,
        browser: Browser,
        context: BrowserContext,
        page: Page,
    ):
        self._playwright = playwright
        self._browser = browser
        self._context = context
        self._page = page
        self._listeners: SessionListeners | None = None
        self._closed = False
        self._stopped = False

    @classmethod
    async def launch(
        cls,
        user_agent: str,
        channel: str | None = None,
        headless: bool = False,
    ) -> "PlaywrightSession":
        """Launch Chromium and open a single page.

        Args:
            user_agent: User agent for every request from the context
            channel: Browser channel such as "chrome" or "msedge"; bundled
                Chromium when None
            headless: Run without a window (the login usually needs a human)

        Raises:
            BrowserSessionError: If the browser cannot be started
        """
        playwright = await async_playwright().start()
        try:
            browser = await playwright.chromium.launch(headless=headless, channel=channel)
            context = await browser.new_context(user_agent=user_agent, viewport=VIEWPORT)
            page = await context.new_page()
            session = cls(playwright, browser, context, page)
            await context.expose_function(BRIDGE_FUNCTION, session._handle_bridge_message)
            await context.add_init_script(script=BRIDGE_SCRIPT)
        except PlaywrightError as e:
            await playwright.stop()
            raise BrowserSessionError(f"Failed to launch browser: {e}") from e

        session._wire_events()
        logger.debug(f"Launched Chromium (channel={channel or 'bundled'}, headless={headless})")
        return session

    def _wire_events(self) -> None:
        self._page.on("framenavigated", self._handle_frame_navigated)
        self._page.on("load", lambda _page: self._handle_load())
        self._page.on("close", lambda _page: self._notify_close())
        self._browser.on("disconnected", lambda _browser: self._notify_close())

    @property
    def url(self) -> str:
        return self._page.url

    @property
    def is_closed(self) -> bool:
        return self._closed or self._page.is_closed()

    def attach(self, listeners: SessionListeners) -> None:
        self._listeners = listeners

    def _handle_frame_navigated(self, frame: Any) -> None:
        if frame != self._page.main_frame or self._listeners is None:
            return
        self._listeners.on_navigate(NavigationEvent(url=frame.url, occurs_during_page_load=True))

    def _handle_load(self) -> None:
        if self._listeners is not None:
            self._listeners.on_load()

    def _handle_bridge_message(self, text: Any) -> None:
        if self._listeners is not None:
            self._listeners.on_message(text if isinstance(text, (str, bytes)) else str(text))

    def _notify_close(self) -> None:
        if self._closed:
            return
        self._closed = True
        logger.debug("Browser window closed")
        if self._listeners is not None:
            self._listeners.on_close()

    async def add_cookies(self, cookies: list[SessionCookie]) -> None:
        if not cookies:
            return
        try:
            await self._context.add_cookies([_to_playwright_cookie(c) for c in cookies])
        except PlaywrightError as e:
            raise BrowserSessionError(f"Failed to inject cookies: {e}") from e

    async def get_cookies(self) -> list[SessionCookie]:
        try:
            records = await self._context.cookies()
        except PlaywrightError as e:
            raise BrowserSessionError(f"Failed to read cookies: {e}") from e
        return [SessionCookie.from_dict(dict(record)) for record in records]

    async def navigate(self, url: str) -> None:
        try:
            await self._page.goto(url, wait_until="commit")
        except PlaywrightError as e:
            raise BrowserSessionError(f"Navigation to {url} failed: {e}") from e

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        try:
            return await self._page.evaluate(script, arg)
        except PlaywrightError as e:
            raise BrowserSessionError(f"Script evaluation failed: {e}") from e

    async def close(self) -> None:
        # Mark closed first so our own close is not reported as the user's
        self._closed = True
        if self._stopped:
            return
        self._stopped = True
        try:
            await self._browser.close()
        except PlaywrightError as e:
            logger.debug(f"Error closing browser: {e}")
        finally:
            await self._playwright.stop()


async def open_browser_session(settings: Settings) -> BrowserSession:
    """Default session factory: a headed Playwright window."""
    return await PlaywrightSession.launch(
        user_agent=settings.user_agent,
        channel=settings.browser_channel,
    )
