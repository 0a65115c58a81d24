"""Browser-driven Streamlabs authorization for TikTok.

One ``NavigationStateMachine`` runs one acquisition attempt:
1. Open a browser session and inject the saved cookie jar
2. Navigate to the TikTok login page and wait for the user to log in
3. Force the Streamlabs authorization URL once TikTok looks logged in
4. Capture the authorization code from the post-consent redirect
5. Exchange the code for a token inside the page, using its cookies
6. Persist cookies and the result, then close the session

Navigations are reported by two independent producers (full page loads from
the browser, and in-page history changes posted by the bridge script), so
the same success URL is usually seen twice. The exchange is guarded to fire
exactly once.
"""

import asyncio
import logging
import time
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Coroutine
from urllib.parse import parse_qs, urlsplit

from ..config import (
    AUTH_DATA_URL,
    DEFAULT_AUTH_TIMEOUT,
    DEFAULT_LOGIN_SETTLE_DELAY,
    STREAMLABS_DASHBOARD_URL,
    STREAMLABS_SLOBS_DASHBOARD_URL,
    TIKTOK_LOGIN_URL,
)
from ..ipc import (
    IPCMessage,
    IPCMessageType,
    LogEventPayload,
    MessageRouter,
    RawStringPayload,
    UserActionPayload,
    WindowContextPayload,
)
from .browser import BrowserSession, BrowserSessionError, NavigationEvent, SessionListeners
from .cookies import CookieStore
from .store import SessionCache, SessionCacheError
from .tokens import JSON_PARSE_ERROR, AuthResult

logger = logging.getLogger(__name__)

__all__ = [
    "AcquisitionError",
    "AcquisitionState",
    "AcquisitionTimeoutError",
    "ExchangeNetworkError",
    "ExchangeParseError",
    "MissingVerifierError",
    "NavigationEvent",
    "NavigationStateMachine",
    "TokenExchangeError",
    "WindowClosedByUser",
    "extract_auth_code",
    "is_logged_in_url",
    "is_success_url",
]

# Action posted by the manual "Start Streamlabs Auth" control
TRIGGER_AUTH_ACTION = "TRIGGER_STREAMLABS_AUTH"
MANUAL_BUTTON_ID = "sl-auth-btn"

WINDOW_CLOSED_MESSAGE = "Window closed by user"
MISSING_VERIFIER_MESSAGE = "No CodeVerifier found"

# Runs in the page so the request carries the browser's Streamlabs cookies.
# code and verifier arrive as arguments, never spliced into the source.
EXCHANGE_SCRIPT = """
async ({ endpoint, code, verifier, parseError }) => {
  const url = endpoint
    + '?code=' + encodeURIComponent(code)
    + '&code_verifier=' + encodeURIComponent(verifier);
  let response;
  let text;
  try {
    response = await fetch(url, {
      method: 'GET',
      credentials: 'include',
      headers: {
        'Accept': 'application/json',
        'X-Requested-With': 'XMLHttpRequest',
      },
    });
    text = await response.text();
  } catch (e) {
    return { success: false, error: 'Fetch failed: ' + (e && e.message ? e.message : String(e)) };
  }
  try {
    return { success: true, status: response.status, data: JSON.parse(text) };
  } catch (e) {
    return { success: false, status: response.status, error: parseError, body: text };
  }
}
"""

MANUAL_BUTTON_SCRIPT = """
({ buttonId, action }) => {
  if (!window.location.hostname.includes('tiktok.com')) return false;
  if (document.getElementById(buttonId)) return false;

  const button = document.createElement('button');
  button.id = buttonId;
  button.textContent = 'Start Streamlabs Auth';
  Object.assign(button.style, {
    position: 'fixed', top: '12px', right: '12px', zIndex: '2147483647',
    padding: '10px 16px', background: '#31c3a2', color: '#ffffff',
    border: 'none', borderRadius: '6px', cursor: 'pointer',
    fontSize: '14px', fontWeight: 'bold',
  });
  button.addEventListener('click', () => {
    window.ipc.postMessage(JSON.stringify({
      type: 'USER_ACTION',
      payload: { action, timestamp: Date.now() },
    }));
  });
  (document.body || document.documentElement).appendChild(button);
  return true;
}
"""


class AcquisitionState(str, Enum):
    """Progress of one acquisition attempt."""

    IDLE = "idle"
    SESSION_LOADED = "session_loaded"
    LOGIN_PAGE_LOADED = "login_page_loaded"
    LOGIN_DETECTED = "login_detected"
    AUTH_REDIRECT_PENDING = "auth_redirect_pending"
    CODE_CAPTURED = "code_captured"
    TOKEN_EXCHANGE_IN_FLIGHT = "token_exchange_in_flight"
    COMPLETED = "completed"
    FAILED = "failed"


class AcquisitionError(Exception):
    """Error during token acquisition.

    Attributes:
        payload: Raw diagnostic payload (usually the exchange result)
    """

    def __init__(self, message: str, payload: Any = None):
        super().__init__(message)
        self.payload = payload


class WindowClosedByUser(AcquisitionError):
    """The browser window closed before an authorization code was captured."""

    pass


class MissingVerifierError(AcquisitionError):
    """A code was captured but no PKCE verifier is held."""

    pass


class TokenExchangeError(AcquisitionError):
    """The token exchange did not yield a token."""

    pass


class ExchangeParseError(TokenExchangeError):
    """The exchange endpoint answered with a non-JSON body."""

    pass


class ExchangeNetworkError(TokenExchangeError):
    """The exchange request itself failed."""

    pass


class AcquisitionTimeoutError(AcquisitionError):
    """No token was acquired before the deadline."""

    pass


def is_logged_in_url(url: str) -> bool:
    """Check whether a TikTok URL indicates a logged-in session."""
    on_tiktok = "tiktok.com" in url and "login" not in url and "streamlabs" not in url
    return on_tiktok or "/foryou" in url


def extract_auth_code(url: str) -> str | None:
    """Get the ``code`` query parameter from a URL, if present."""
    values = parse_qs(urlsplit(url).query).get("code", [])
    for value in values:
        if value:
            return value
    return None


def is_success_url(url: str) -> bool:
    """Check whether a URL is the post-consent redirect carrying the code.

    A code alone is not enough: the URL must also carry the success flag or
    be one of the Streamlabs dashboard landing pages.
    """
    if extract_auth_code(url) is None:
        return False
    return (
        "success=true" in url
        or STREAMLABS_DASHBOARD_URL in url
        or STREAMLABS_SLOBS_DASHBOARD_URL in url
    )


def _preview(secret: str) -> str:
    return f"{secret[:6]}..." if len(secret) > 6 else "***"


SessionFactory = Callable[[], Awaitable[BrowserSession]]


class NavigationStateMachine:
    """Drives one browser session from TikTok login to a Streamlabs token.

    Usage:
        machine = NavigationStateMachine(auth_url, cookies_path, verifier, factory)
        result = await machine.find_token()
    """

    def __init__(
        self,
        auth_url: str,
        cookies_path: Path,
        code_verifier: str | None,
        session_factory: SessionFactory,
        session_cache: SessionCache | None = None,
        timeout: float | None = DEFAULT_AUTH_TIMEOUT,
        login_settle_delay: float = DEFAULT_LOGIN_SETTLE_DELAY,
        login_url: str = TIKTOK_LOGIN_URL,
        on_status: Callable[[str], None] | None = None,
    ):
        """Initialize the state machine.

        Args:
            auth_url: Streamlabs authorization URL carrying the PKCE challenge
            cookies_path: Cookie jar file
            code_verifier: PKCE verifier for the token exchange
            session_factory: Opens the browser session
            session_cache: Where the acquired auth data is saved, if anywhere
            timeout: Overall deadline in seconds (None for no deadline)
            login_settle_delay: Seconds to wait after a login is detected
                before re-checking the URL and redirecting
            login_url: TikTok login entry point
            on_status: Optional callback for status messages
        """
        self.auth_url = auth_url
        self.cookie_store = CookieStore(Path(cookies_path))
        self.code_verifier = code_verifier
        self.session_factory = session_factory
        self.session_cache = session_cache
        self.timeout = timeout
        self.login_settle_delay = login_settle_delay
        self.login_url = login_url
        self.on_status = on_status or (lambda msg: None)

        self.state = AcquisitionState.IDLE
        self.history: list[AcquisitionState] = [AcquisitionState.IDLE]
        self.router = self._build_router()

        self._session: BrowserSession | None = None
        self._result: asyncio.Future[AuthResult] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._settle_task: asyncio.Task[Any] | None = None
        self._exchange_started = False
        self._started = False

    def _emit_status(self, message: str) -> None:
        """Emit a status message."""
        logger.info(message)
        self.on_status(message)

    def _transition(self, new_state: AcquisitionState) -> None:
        if new_state == self.state:
            return
        logger.debug(f"State {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)

    @property
    def exchange_started(self) -> bool:
        return self._exchange_started

    def _finished(self) -> bool:
        return self._result is None or self._result.done()

    async def find_token(self) -> AuthResult:
        """Run the acquisition attempt to completion.

        Returns:
            The successful exchange result

        Raises:
            WindowClosedByUser: If the user closed the window first
            MissingVerifierError: If no PKCE verifier was provided
            TokenExchangeError: If the exchange did not yield a token
            AcquisitionTimeoutError: If the deadline passed
            AcquisitionError: If the machine was already used or the
                browser could not be driven
        """
        if self._started:
            raise AcquisitionError("This acquisition attempt has already run")
        self._started = True
        self._result = asyncio.get_running_loop().create_future()

        try:
            return await asyncio.wait_for(self._run(), timeout=self.timeout)
        except asyncio.TimeoutError:
            self._transition(AcquisitionState.FAILED)
            raise AcquisitionTimeoutError(
                f"Timed out after {self.timeout:g} seconds waiting for authorization"
            ) from None
        except BrowserSessionError as e:
            self._transition(AcquisitionState.FAILED)
            raise AcquisitionError(f"Browser session failed: {e}") from e
        finally:
            if not self._result.done():
                self._result.cancel()
            await self._shutdown()

    async def _run(self) -> AuthResult:
        assert self._result is not None

        self._emit_status("Opening browser...")
        session = await self.session_factory()
        self._session = session
        session.attach(
            SessionListeners(
                on_navigate=self._on_navigate,
                on_load=self._on_load,
                on_message=self.router.dispatch,
                on_close=self._on_close,
            )
        )

        await self._restore_cookies(session)
        self._transition(AcquisitionState.SESSION_LOADED)

        self._emit_status("Waiting for TikTok login...")
        try:
            await session.navigate(self.login_url)
        except BrowserSessionError as e:
            logger.warning(f"Could not open the login page: {e}")
        if self.state == AcquisitionState.SESSION_LOADED:
            self._transition(AcquisitionState.LOGIN_PAGE_LOADED)

        return await self._result

    async def _restore_cookies(self, session: BrowserSession) -> None:
        now = time.time()
        cookies = [c for c in self.cookie_store.load() if not c.is_expired(now)]
        if not cookies:
            return
        for cookie in cookies:
            logger.debug(f"Restoring cookie {cookie.name} for {cookie.injection_url}")
        try:
            await session.add_cookies(cookies)
        except BrowserSessionError as e:
            logger.warning(f"Failed to restore saved cookies: {e}")
            return
        logger.debug(f"Restored {len(cookies)} saved cookies")

    async def _save_cookies(self) -> None:
        session = self._session
        if session is None or session.is_closed:
            return
        try:
            cookies = await session.get_cookies()
        except BrowserSessionError as e:
            logger.warning(f"Failed to read session cookies: {e}")
            return
        self.cookie_store.save(cookies)

    async def _shutdown(self) -> None:
        current = asyncio.current_task()
        pending = [task for task in self._tasks if task is not current]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()

        session = self._session
        if session is None:
            return
        # A window the user closed still owns a browser process
        if not session.is_closed:
            await self._save_cookies()
        try:
            await session.close()
        except BrowserSessionError as e:
            logger.debug(f"Error closing browser session: {e}")

    # Task bookkeeping

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            return
        if isinstance(error, AcquisitionError):
            self._fail(error)
            return
        logger.error(f"Acquisition step failed: {error!r}")
        wrapped = AcquisitionError(f"Acquisition step failed: {error}")
        wrapped.__cause__ = error
        self._fail(wrapped)

    def _complete(self, result: AuthResult) -> None:
        if self._finished():
            return
        assert self._result is not None

        if self.session_cache is not None and result.auth_data is not None:
            try:
                self.session_cache.save(result.auth_data)
            except SessionCacheError as e:
                logger.warning(f"Failed to save tokens: {e}")

        self._transition(AcquisitionState.COMPLETED)
        self._emit_status("Streamlabs token acquired")
        self._result.set_result(result)

    def _fail(self, error: AcquisitionError) -> None:
        if self._finished():
            return
        assert self._result is not None
        self._transition(AcquisitionState.FAILED)
        logger.debug(f"Acquisition failed: {error}")
        self._result.set_exception(error)

    # Session events

    def _on_navigate(self, event: NavigationEvent) -> None:
        if self._finished():
            return
        kind = "load" if event.occurs_during_page_load else "in-page"
        logger.debug(f"Navigation ({kind}): {event.url}")

        if self._check_for_code(event.url):
            return
        if event.occurs_during_page_load and not self._exchange_started and is_logged_in_url(event.url):
            self._schedule_login_settle()

    def _on_load(self) -> None:
        if self._finished() or self._session is None:
            return
        self._spawn(self._inject_manual_control())

    def _on_close(self) -> None:
        if self._finished() or self._exchange_started:
            return
        self._fail(
            WindowClosedByUser(
                WINDOW_CLOSED_MESSAGE,
                {"success": False, "error": WINDOW_CLOSED_MESSAGE},
            )
        )

    # Transitions

    def _schedule_login_settle(self) -> None:
        if self._settle_task is not None and not self._settle_task.done():
            return
        self._transition(AcquisitionState.LOGIN_DETECTED)
        self._emit_status("TikTok login detected")
        self._settle_task = self._spawn(self._settle_then_authorize())

    async def _settle_then_authorize(self) -> None:
        await asyncio.sleep(self.login_settle_delay)
        session = self._session
        if self._finished() or self._exchange_started or session is None or session.is_closed:
            return

        current_url = session.url
        if "streamlabs" in current_url:
            logger.debug(f"Already on Streamlabs ({current_url}), not redirecting")
            return
        await self._navigate_to_auth()

    def _request_manual_authorization(self) -> None:
        if self._finished() or self._exchange_started:
            return
        logger.info("Manual authorization requested")
        self._transition(AcquisitionState.LOGIN_DETECTED)
        self._spawn(self._navigate_to_auth())

    async def _navigate_to_auth(self) -> None:
        session = self._session
        if session is None or session.is_closed:
            return
        self._transition(AcquisitionState.AUTH_REDIRECT_PENDING)
        self._emit_status("Redirecting to Streamlabs authorization...")
        try:
            await session.navigate(self.auth_url)
        except BrowserSessionError as e:
            logger.warning(f"Redirect to Streamlabs authorization failed: {e}")

    def _check_for_code(self, url: str) -> bool:
        if self._exchange_started or not is_success_url(url):
            return False
        code = extract_auth_code(url)
        assert code is not None

        self._exchange_started = True
        self._transition(AcquisitionState.CODE_CAPTURED)
        self._emit_status("Authorization code received")
        logger.debug(f"Captured authorization code {_preview(code)}")
        self._spawn(self._exchange(code))
        return True

    async def _exchange(self, code: str) -> None:
        result = await self._exchange_code(code)
        self._complete(result)

    async def _exchange_code(self, code: str) -> AuthResult:
        """Exchange the authorization code inside the page.

        Raises:
            MissingVerifierError: If no PKCE verifier is held
            TokenExchangeError: If the result carries no token
        """
        await self._save_cookies()

        if not self.code_verifier:
            raise MissingVerifierError(
                MISSING_VERIFIER_MESSAGE,
                {"success": False, "error": MISSING_VERIFIER_MESSAGE},
            )

        session = self._session
        assert session is not None

        self._transition(AcquisitionState.TOKEN_EXCHANGE_IN_FLIGHT)
        self._emit_status("Exchanging authorization code for a token...")
        try:
            raw = await session.evaluate(
                EXCHANGE_SCRIPT,
                {
                    "endpoint": AUTH_DATA_URL,
                    "code": code,
                    "verifier": self.code_verifier,
                    "parseError": JSON_PARSE_ERROR,
                },
            )
        except BrowserSessionError as e:
            raw = {"success": False, "error": f"Fetch failed: {e}"}

        result = AuthResult.from_dict(raw)
        if result.is_success():
            return result

        payload = result.to_dict()
        details = result.describe()
        if result.is_parse_error():
            raise ExchangeParseError(f"Token exchange returned a non-JSON response: {details}", payload)
        if result.is_network_error():
            raise ExchangeNetworkError(f"Token exchange request failed: {details}", payload)
        raise TokenExchangeError(f"Token exchange did not return a token: {details}", payload)

    async def _inject_manual_control(self) -> None:
        session = self._session
        if session is None or session.is_closed or "tiktok.com" not in session.url:
            return
        try:
            injected = await session.evaluate(
                MANUAL_BUTTON_SCRIPT,
                {"buttonId": MANUAL_BUTTON_ID, "action": TRIGGER_AUTH_ACTION},
            )
        except BrowserSessionError as e:
            logger.debug(f"Could not inject manual auth control: {e}")
            return
        if injected:
            logger.debug("Injected manual auth control")

    # Router handlers

    def _build_router(self) -> MessageRouter:
        return MessageRouter().register_handlers(
            {
                IPCMessageType.WINDOW_CONTEXT: self._handle_window_context,
                IPCMessageType.USER_ACTION: self._handle_user_action,
                IPCMessageType.LOG_EVENT: self._handle_log_event,
                IPCMessageType.RAW_STRING: self._handle_raw_string,
            }
        )

    def _handle_window_context(self, payload: WindowContextPayload, message: IPCMessage) -> None:
        if payload.url.full:
            self._on_navigate(NavigationEvent(url=payload.url.full, occurs_during_page_load=False))

    def _handle_user_action(self, payload: UserActionPayload, message: IPCMessage) -> None:
        if payload.action == TRIGGER_AUTH_ACTION:
            self._request_manual_authorization()
        else:
            logger.debug(f"Ignoring page action: {payload.action}")

    def _handle_log_event(self, payload: LogEventPayload, message: IPCMessage) -> None:
        level = logging.getLevelName(payload.level.upper())
        if not isinstance(level, int):
            level = logging.INFO
        logger.log(level, f"[page] {payload.message}")

    def _handle_raw_string(self, payload: RawStringPayload, message: IPCMessage) -> None:
        if payload.data.strip() == TRIGGER_AUTH_ACTION:
            self._request_manual_authorization()
        else:
            logger.debug(f"Raw page message: {payload.data[:200]}")
