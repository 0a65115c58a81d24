"""Session cookie jar persistence.

The jar lets a second run reuse the TikTok and Streamlabs login from the
previous one. It is stored as a JSON array of cookie records:

    [{"name": ..., "value": ..., "domain": ..., "path": ..., "secure": ...,
      "httpOnly": ..., "expirationDate": ...}]

Losing the jar only costs the user a fresh login, so the lenient
``load``/``save`` pair logs failures instead of raising.
"""

import json
import logging
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

logger = logging.getLogger(__name__)


class CookieStoreError(Exception):
    """Error reading or writing the cookie jar."""

    pass


@dataclass
class SessionCookie:
    """A single browser cookie as persisted in the jar.

    Attributes:
        name: Cookie name
        value: Cookie value
        domain: Cookie domain, possibly with a leading "." for domain cookies
        path: Cookie path
        secure: Only sent over HTTPS
        http_only: Hidden from page scripts
        expiration_date: Expiry as seconds since the epoch, None for session cookies
    """

    name: str
    value: str
    domain: str
    path: str = "/"
    secure: bool = False
    http_only: bool = False
    expiration_date: float | None = None

    @property
    def normalized_domain(self) -> str:
        """Domain with the leading "." of a domain cookie stripped."""
        return self.domain[1:] if self.domain.startswith(".") else self.domain

    @property
    def injection_url(self) -> str:
        """Same-origin URL the cookie belongs to."""
        scheme = "https" if self.secure else "http"
        return f"{scheme}://{self.normalized_domain}{self.path}"

    def is_expired(self, now: float) -> bool:
        """Check whether a persistent cookie has expired."""
        return self.expiration_date is not None and self.expiration_date <= now

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the jar format."""
        data: dict[str, Any] = {
            "name": self.name,
            "value": self.value,
            "domain": self.domain,
            "path": self.path,
            "secure": self.secure,
            "httpOnly": self.http_only,
        }
        if self.expiration_date is not None:
            data["expirationDate"] = self.expiration_date
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionCookie":
        """Deserialize from the jar format.

        Also accepts the browser-automation shape, where expiry is stored
        under "expires" and -1 marks a session cookie.

        Raises:
            KeyError: If name or domain is missing
        """
        expiration = data.get("expirationDate")
        if expiration is None:
            expires = data.get("expires")
            if expires is not None and expires >= 0:
                expiration = expires

        return cls(
            name=data["name"],
            value=str(data.get("value", "")),
            domain=data["domain"],
            path=data.get("path") or "/",
            secure=bool(data.get("secure", False)),
            http_only=bool(data.get("httpOnly", False)),
            expiration_date=float(expiration) if expiration is not None else None,
        )


def cookies_from_records(records: Iterable[Any]) -> list[SessionCookie]:
    """Convert raw cookie records, skipping malformed entries."""
    cookies: list[SessionCookie] = []
    for record in records:
        if not isinstance(record, dict):
            logger.warning(f"Skipping non-object cookie entry: {record!r}")
            continue
        try:
            cookies.append(SessionCookie.from_dict(record))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Skipping malformed cookie entry ({type(e).__name__}: {e})")
    return cookies


class CookieStore:
    """JSON file backed cookie jar."""

    def __init__(self, path: Path):
        self.path = path

    def read(self) -> list[SessionCookie]:
        """Read the jar.

        Returns:
            Cookies from the file, or an empty list if the file is absent

        Raises:
            CookieStoreError: If the file cannot be read or is not a JSON array
        """
        if not self.path.exists():
            return []

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError) as e:
            raise CookieStoreError(f"Cannot read cookie jar {self.path}: {e}") from e
        except json.JSONDecodeError as e:
            raise CookieStoreError(f"Cookie jar {self.path} is corrupted: {e}") from e

        if not isinstance(data, list):
            raise CookieStoreError(
                f"Cookie jar {self.path} must contain a JSON array, got {type(data).__name__}"
            )

        return cookies_from_records(data)

    def write(self, cookies: Iterable[SessionCookie]) -> None:
        """Overwrite the jar with the given cookies.

        Raises:
            CookieStoreError: If the file cannot be written
        """
        payload = json.dumps([c.to_dict() for c in cookies], indent=2)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(payload, encoding="utf-8")
        except OSError as e:
            raise CookieStoreError(f"Cannot write cookie jar {self.path}: {e}") from e

        try:
            self.path.chmod(stat.S_IRUSR | stat.S_IWUSR)  # 0600
        except OSError as e:
            logger.warning(f"Could not set cookie jar permissions: {e}")

    def load(self) -> list[SessionCookie]:
        """Read the jar, treating any failure as an empty jar."""
        try:
            cookies = self.read()
        except CookieStoreError as e:
            logger.warning(f"{e}. Continuing without saved cookies.")
            return []

        logger.debug(f"Loaded {len(cookies)} cookies from {self.path}")
        return cookies

    def save(self, cookies: Iterable[SessionCookie]) -> bool:
        """Write the jar, logging instead of raising on failure.

        Returns:
            True if the jar was written
        """
        cookies = list(cookies)
        try:
            self.write(cookies)
        except CookieStoreError as e:
            logger.warning(f"{e}. Cookies will not persist to the next run.")
            return False

        logger.debug(f"Saved {len(cookies)} cookies to {self.path}")
        return True

    def clear(self) -> bool:
        """Delete the jar.

        Returns:
            True if a jar file was removed
        """
        if not self.path.exists():
            return False
        self.path.unlink()
        logger.info(f"Removed cookie jar {self.path}")
        return True
