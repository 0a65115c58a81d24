"""Settings and endpoint constants for TikTok Streamkey."""

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

# Streamlabs endpoints
API_BASE_URL = "https://streamlabs.com/api/v5/slobs"
TIKTOK_API_BASE_URL = f"{API_BASE_URL}/tiktok"
AUTH_DATA_URL = f"{API_BASE_URL}/auth/data"
STREAMLABS_LOGIN_URL = "https://streamlabs.com/m/login"
STREAMLABS_DASHBOARD_URL = "https://streamlabs.com/dashboard"
STREAMLABS_SLOBS_DASHBOARD_URL = "https://streamlabs.com/slobs/dashboard"

# Identity provider entry point
TIKTOK_LOGIN_URL = "https://www.tiktok.com/login"

# Query parameters the Streamlabs login endpoint expects for a TikTok grant
AUTH_QUERY_PARAMS = {
    "force_verify": "1",
    "external": "mobile",
    "skip_splash": "1",
    "tiktok": "1",
}

# Streamlabs Desktop identifies itself with this user agent; the auth and
# stream endpoints reject generic browser agents.
USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) StreamlabsDesktop/1.17.0 Chrome/122.0.6261.156 "
    "Electron/29.3.1 Safari/537.36"
)

# File names inside the data directory
COOKIES_FILE = "cookies.json"
TOKENS_FILE = "tokens.json"

DEFAULT_AUTH_TIMEOUT = 300.0  # seconds
DEFAULT_LOGIN_SETTLE_DELAY = 2.0  # seconds

# Environment variables
ENV_DATA_DIR = "STREAMKEY_DATA_DIR"
ENV_AUTH_TIMEOUT = "STREAMKEY_AUTH_TIMEOUT"
ENV_LOGIN_SETTLE_DELAY = "STREAMKEY_LOGIN_SETTLE_DELAY"
ENV_BROWSER_CHANNEL = "STREAMKEY_BROWSER_CHANNEL"


@dataclass
class Settings:
    """Runtime settings for token acquisition and the stream client."""

    data_dir: Path = field(default_factory=Path.cwd)
    cookies_file: str = COOKIES_FILE
    tokens_file: str = TOKENS_FILE
    auth_timeout: float = DEFAULT_AUTH_TIMEOUT
    login_settle_delay: float = DEFAULT_LOGIN_SETTLE_DELAY
    browser_channel: str | None = None
    user_agent: str = USER_AGENT
    env_path: Path | None = None

    @property
    def cookies_path(self) -> Path:
        return self.data_dir / self.cookies_file

    @property
    def tokens_path(self) -> Path:
        return self.data_dir / self.tokens_file


def find_env_file(explicit_path: Path | None = None) -> Path | None:
    """Find the .env file, preferring an explicit path."""
    if explicit_path:
        if explicit_path.exists():
            return explicit_path
        return None

    candidate = Path(".env")
    if candidate.exists():
        return candidate
    return None


def _read_float(name: str, default: float, allow_zero: bool = True) -> float:
    """Read a non-negative float from the environment."""
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None
    if value < 0 or (value == 0 and not allow_zero):
        limit = "not be negative" if allow_zero else "be greater than zero"
        raise ValueError(f"{name} must {limit}, got {raw!r}")
    return value


def load_settings(
    data_dir: Path | None = None,
    env_path: Path | None = None,
) -> Settings:
    """Load settings from an optional .env file and the environment.

    Args:
        data_dir: Explicit data directory (overrides STREAMKEY_DATA_DIR)
        env_path: Explicit path to a .env file

    Returns:
        Settings with all values resolved

    Raises:
        ValueError: If a numeric environment variable is malformed
    """
    env_file = find_env_file(env_path)
    if env_file:
        load_dotenv(env_file)

    if data_dir is None:
        env_dir = os.environ.get(ENV_DATA_DIR)
        data_dir = Path(env_dir).expanduser() if env_dir else Path.cwd()

    return Settings(
        data_dir=data_dir,
        auth_timeout=_read_float(ENV_AUTH_TIMEOUT, DEFAULT_AUTH_TIMEOUT, allow_zero=False),
        login_settle_delay=_read_float(ENV_LOGIN_SETTLE_DELAY, DEFAULT_LOGIN_SETTLE_DELAY),
        browser_channel=os.environ.get(ENV_BROWSER_CHANNEL) or None,
        env_path=env_file,
    )
