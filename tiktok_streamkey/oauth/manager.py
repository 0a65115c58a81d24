"""High-level token acquisition for TikTok Streamkey.

This module provides the main interface used by the CLI: return the cached
Streamlabs token when there is one, otherwise run a fresh browser-driven
acquisition attempt with a new PKCE pair.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable
from urllib.parse import urlencode

from ..config import AUTH_QUERY_PARAMS, STREAMLABS_LOGIN_URL, Settings, load_settings
from ..stream_api import StreamAPI
from .browser import BrowserSession, open_browser_session
from .cookies import CookieStore
from .flow import AcquisitionError, NavigationStateMachine, SessionFactory
from .pkce import generate_pkce_pair
from .store import TOKEN_FIELD, SessionCache, has_usable_token

logger = logging.getLogger(__name__)


class AcquisitionInProgressError(AcquisitionError):
    """Another acquisition attempt is already running."""

    pass


def build_authorization_url(code_challenge: str) -> str:
    """Build the Streamlabs authorization URL for a TikTok grant.

    Args:
        code_challenge: PKCE S256 challenge

    Returns:
        Full authorization URL
    """
    params = dict(AUTH_QUERY_PARAMS)
    params["code_challenge"] = code_challenge
    return f"{STREAMLABS_LOGIN_URL}?{urlencode(params)}"


def _token_preview(token: str) -> str:
    if len(token) <= 8:
        return "***"
    return f"{token[:4]}...{token[-4:]}"


@dataclass
class SessionContext:
    """An authorized Streamlabs session.

    Holds the token and the auth data it came with, and hands out clients
    bound to it.
    """

    token: str
    auth_data: dict[str, Any] = field(default_factory=dict)

    def create_stream_api(self) -> StreamAPI:
        """Create a stream client authorized with this session's token."""
        return StreamAPI(self.token)


@dataclass
class AuthStatus:
    """Cached authorization state, safe to display.

    Attributes:
        authenticated: Whether a usable token is cached
        token_preview: First and last characters of the token
        cached_fields: Keys present in the token cache
        cookie_count: Cookies in the saved jar
        tokens_path: Token cache file
        cookies_path: Cookie jar file
    """

    authenticated: bool
    token_preview: str | None = None
    cached_fields: list[str] = field(default_factory=list)
    cookie_count: int = 0
    tokens_path: str | None = None
    cookies_path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "authenticated": self.authenticated,
            "token_preview": self.token_preview,
            "cached_fields": self.cached_fields,
            "cookie_count": self.cookie_count,
            "tokens_path": self.tokens_path,
            "cookies_path": self.cookies_path,
        }


class AuthManager:
    """Acquires and caches the Streamlabs token.

    Usage:
        manager = AuthManager(load_settings())
        token = await manager.retrieve_token()

        # Or get a session object for downstream calls
        session = await manager.retrieve_session()
        async with session.create_stream_api() as api:
            await api.search("Just Chatting")
    """

    def __init__(
        self,
        settings: Settings | None = None,
        session_cache: SessionCache | None = None,
        session_factory: SessionFactory | None = None,
        on_status: Callable[[str], None] | None = None,
    ):
        self.settings = settings or load_settings()
        self.session_cache = session_cache or SessionCache(self.settings.tokens_path)
        self.cookie_store = CookieStore(self.settings.cookies_path)
        self.on_status = on_status
        self._session_factory = session_factory or self._open_default_session
        self._in_flight = False

    async def _open_default_session(self) -> BrowserSession:
        return await open_browser_session(self.settings)

    @property
    def tokens_path(self) -> Path:
        return self.session_cache.path

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    async def retrieve_auth_data(self, force: bool = False) -> dict[str, Any]:
        """Return the Streamlabs auth data, acquiring it if needed.

        Args:
            force: Ignore the cache and always run a new attempt

        Returns:
            Auth data containing at least ``oauth_token``

        Raises:
            AcquisitionInProgressError: If an attempt is already running
            AcquisitionError: If the attempt fails (never retried here)
        """
        if self._in_flight:
            raise AcquisitionInProgressError("A token acquisition attempt is already in progress")

        if not force:
            record = self.session_cache.load()
            if has_usable_token(record):
                logger.debug(f"Using cached token from {self.session_cache.path}")
                return record  # type: ignore[return-value]

        self._in_flight = True
        try:
            pkce = generate_pkce_pair()
            machine = NavigationStateMachine(
                auth_url=build_authorization_url(pkce.challenge),
                cookies_path=self.settings.cookies_path,
                code_verifier=pkce.verifier,
                session_factory=self._session_factory,
                session_cache=self.session_cache,
                timeout=self.settings.auth_timeout,
                login_settle_delay=self.settings.login_settle_delay,
                on_status=self.on_status,
            )
            result = await machine.find_token()
        finally:
            self._in_flight = False

        auth_data = result.auth_data
        assert auth_data is not None
        return auth_data

    async def retrieve_token(self, force: bool = False) -> str:
        """Return the Streamlabs oauth_token, acquiring it if needed."""
        auth_data = await self.retrieve_auth_data(force=force)
        return auth_data[TOKEN_FIELD]

    async def retrieve_session(self, force: bool = False) -> SessionContext:
        """Return an authorized session context."""
        auth_data = await self.retrieve_auth_data(force=force)
        return SessionContext(token=auth_data[TOKEN_FIELD], auth_data=dict(auth_data))

    def logout(self) -> bool:
        """Remove the cached token and the saved cookie jar.

        Returns:
            True if anything was removed
        """
        removed_tokens = self.session_cache.clear()
        removed_cookies = self.cookie_store.clear()
        if removed_tokens or removed_cookies:
            logger.info("Logged out of Streamlabs")
        return removed_tokens or removed_cookies

    def get_status(self) -> AuthStatus:
        """Describe the cached authorization state."""
        record = self.session_cache.load()
        authenticated = has_usable_token(record)
        return AuthStatus(
            authenticated=authenticated,
            token_preview=_token_preview(record[TOKEN_FIELD]) if authenticated else None,  # type: ignore[index]
            cached_fields=sorted(record) if record else [],
            cookie_count=len(self.cookie_store.load()),
            tokens_path=str(self.session_cache.path),
            cookies_path=str(self.cookie_store.path),
        )
