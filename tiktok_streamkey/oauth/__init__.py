"""Streamlabs token acquisition for TikTok LIVE.

Streamlabs issues TikTok streaming tokens through a PKCE-protected login
that only completes in a real browser. This package drives that login in an
automated browser window, captures the authorization code, and exchanges it
inside the page so the browser's own Streamlabs cookies authorize the call.

Main Components:
    AuthManager: Cache-first entry point (retrieve_token, logout, status)
    NavigationStateMachine: One browser-driven acquisition attempt
    CookieStore: Saved browser cookies between runs
    SessionCache: Cached authorization result (tokens.json)

Quick Start:
    from tiktok_streamkey.oauth import AuthManager

    manager = AuthManager(on_status=print)
    token = await manager.retrieve_token()
"""

from .browser import (
    BrowserSession,
    BrowserSessionError,
    NavigationEvent,
    PlaywrightSession,
    SessionListeners,
    open_browser_session,
)
from .cookies import CookieStore, CookieStoreError, SessionCookie
from .flow import (
    AcquisitionError,
    AcquisitionState,
    AcquisitionTimeoutError,
    ExchangeNetworkError,
    ExchangeParseError,
    MissingVerifierError,
    NavigationStateMachine,
    TokenExchangeError,
    WindowClosedByUser,
    extract_auth_code,
    is_logged_in_url,
    is_success_url,
)
from .manager import (
    AcquisitionInProgressError,
    AuthManager,
    AuthStatus,
    SessionContext,
    build_authorization_url,
)
from .pkce import PKCEPair, generate_code_challenge, generate_code_verifier, generate_pkce_pair
from .store import SessionCache, SessionCacheError
from .tokens import AuthResult

__all__ = [
    # Manager (main entry point)
    "AuthManager",
    "AuthStatus",
    "SessionContext",
    "AcquisitionInProgressError",
    "build_authorization_url",
    # Flow
    "NavigationStateMachine",
    "AcquisitionState",
    "AcquisitionError",
    "WindowClosedByUser",
    "MissingVerifierError",
    "TokenExchangeError",
    "ExchangeParseError",
    "ExchangeNetworkError",
    "AcquisitionTimeoutError",
    "is_logged_in_url",
    "is_success_url",
    "extract_auth_code",
    # Browser
    "BrowserSession",
    "BrowserSessionError",
    "NavigationEvent",
    "PlaywrightSession",
    "SessionListeners",
    "open_browser_session",
    # Results
    "AuthResult",
    # Storage
    "CookieStore",
    "CookieStoreError",
    "SessionCookie",
    "SessionCache",
    "SessionCacheError",
    # PKCE
    "generate_pkce_pair",
    "generate_code_verifier",
    "generate_code_challenge",
    "PKCEPair",
]
