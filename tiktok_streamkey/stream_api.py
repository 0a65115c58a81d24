"""Streamlabs TikTok stream client.

Consumes only the acquired ``oauth_token`` as a bearer credential. Most
calls log failures and return an empty value so interactive use keeps going;
``get_info`` raises because callers need to know why account info is missing.
"""

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from .config import TIKTOK_API_BASE_URL, USER_AGENT

logger = logging.getLogger(__name__)

# The category endpoint answers HTTP 500 to longer queries
MAX_CATEGORY_QUERY_LENGTH = 25
INITIAL_CATEGORY_LIMIT = 20
DEFAULT_CATEGORY_QUERY = "gaming"
DEVICE_PLATFORM = "win32"

FALLBACK_CATEGORIES = [{"full_name": "Other", "game_mask_id": "", "id": "other"}]


class StreamAPIError(Exception):
    """Error calling the Streamlabs stream API."""

    pass


@dataclass
class StreamCategory:
    """A category a stream can be filed under."""

    id: str
    full_name: str
    game_mask_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "full_name": self.full_name, "game_mask_id": self.game_mask_id}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StreamCategory":
        return cls(
            id=str(data.get("id", "")),
            full_name=str(data.get("full_name", "")),
            game_mask_id=str(data.get("game_mask_id") or ""),
        )


@dataclass
class StreamInfo:
    """Ingest details for a started stream."""

    rtmp_url: str
    stream_key: str
    id: str

    def to_dict(self) -> dict[str, Any]:
        return {"rtmp_url": self.rtmp_url, "stream_key": self.stream_key, "id": self.id}


def _describe_error(error: httpx.HTTPError) -> str:
    if isinstance(error, httpx.HTTPStatusError):
        return f"HTTP {error.response.status_code}: {error.response.text[:200]}"
    return str(error) or type(error).__name__


class StreamAPI:
    """Async client for the Streamlabs TikTok stream endpoints.

    Usage:
        async with StreamAPI(token) as api:
            categories = await api.search("Minecraft")
            info = await api.start("My stream", categories[0].id)
            ...
            await api.end()
    """

    def __init__(self, token: str, http_client: httpx.AsyncClient | None = None):
        """Initialize the client.

        Args:
            token: Streamlabs oauth_token
            http_client: Optional pre-configured client (its base URL and
                headers are used as given)
        """
        self.token = token
        self._http = http_client or httpx.AsyncClient(
            base_url=TIKTOK_API_BASE_URL,
            headers={"User-Agent": USER_AGENT, "Authorization": f"Bearer {token}"},
            timeout=30.0,
        )
        self._should_close = http_client is None
        self.current_stream_id: str | None = None

    async def __aenter__(self) -> "StreamAPI":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._should_close:
            await self._http.aclose()

    async def _get_json(self, path: str, params: dict[str, str] | None = None) -> Any:
        response = await self._http.get(path, params=params)
        response.raise_for_status()
        return response.json()

    async def search(self, game: str) -> list[StreamCategory]:
        """Search stream categories by name.

        Args:
            game: Category name; blank returns the initial category list

        Returns:
            Matching categories, empty on failure
        """
        query = game.strip()
        if not query:
            return await self.get_initial_categories()

        if len(query) > MAX_CATEGORY_QUERY_LENGTH:
            truncated = query[:MAX_CATEGORY_QUERY_LENGTH]
            logger.info(f"Truncating category query {query!r} to {truncated!r}")
            query = truncated

        try:
            data = await self._get_json("/info", params={"category": query})
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Category search failed: {e}")
            return []

        records = data.get("categories") if isinstance(data, dict) else None
        categories = [StreamCategory.from_dict(r) for r in records or [] if isinstance(r, dict)]
        logger.debug(f"Found {len(categories)} categories for {query!r}")
        return categories

    async def get_initial_categories(self) -> list[StreamCategory]:
        """Default category list, with a single "Other" entry on failure."""
        fallback = [StreamCategory.from_dict(r) for r in FALLBACK_CATEGORIES]
        try:
            data = await self._get_json("/info", params={"category": DEFAULT_CATEGORY_QUERY})
        except (httpx.HTTPError, ValueError) as e:
            logger.debug(f"Initial categories unavailable: {e}")
            return fallback

        records = data.get("categories") if isinstance(data, dict) else None
        return [
            StreamCategory.from_dict(r) for r in (records or [])[:INITIAL_CATEGORY_LIMIT] if isinstance(r, dict)
        ]

    async def start(self, title: str, category: str, audience_type: str = "0") -> StreamInfo | None:
        """Start a stream and return its ingest details.

        Args:
            title: Stream title
            category: Category id
            audience_type: "0" for all audiences

        Returns:
            StreamInfo, or None if the stream could not be started
        """
        form = {
            "title": (None, title),
            "device_platform": (None, DEVICE_PLATFORM),
            "category": (None, category),
            "audience_type": (None, audience_type),
        }
        try:
            response = await self._http.post("/stream/start", files=form)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            logger.error(f"Error starting stream: {_describe_error(e)}")
            return None
        except ValueError as e:
            logger.error(f"Error starting stream, response was not JSON: {e}")
            return None

        if not isinstance(data, dict) or not data.get("id"):
            logger.error(f"Error starting stream, unexpected response: {data!r}")
            return None

        info = StreamInfo(
            rtmp_url=str(data.get("rtmp", "")),
            stream_key=str(data.get("key", "")),
            id=str(data["id"]),
        )
        self.current_stream_id = info.id
        logger.info(f"Started stream {info.id}")
        return info

    async def end(self, stream_id: str | None = None) -> bool:
        """End a stream.

        Args:
            stream_id: Stream to end; defaults to the last one started here

        Returns:
            True if Streamlabs reported success
        """
        stream_id = stream_id or self.current_stream_id
        if not stream_id:
            logger.error("No stream id provided to end the stream")
            return False

        try:
            response = await self._http.post(f"/stream/{stream_id}/end")
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            logger.error(f"Error ending stream {stream_id}: {_describe_error(e)}")
            return False
        except ValueError as e:
            logger.error(f"Error ending stream {stream_id}, response was not JSON: {e}")
            return False

        success = bool(isinstance(data, dict) and data.get("success"))
        if success and stream_id == self.current_stream_id:
            self.current_stream_id = None
        return success

    async def get_info(self) -> dict[str, Any]:
        """Get account and stream info.

        Raises:
            StreamAPIError: If the request fails
        """
        try:
            data = await self._get_json("/info")
        except httpx.HTTPError as e:
            raise StreamAPIError(f"Failed to get info: {_describe_error(e)}") from e
        except ValueError as e:
            raise StreamAPIError(f"Info response was not JSON: {e}") from e

        if not isinstance(data, dict):
            raise StreamAPIError(f"Unexpected info response: {data!r}")
        return data

    async def get_user_profile(self) -> dict[str, Any] | None:
        """The user object from the info response, if available."""
        try:
            info = await self.get_info()
        except StreamAPIError as e:
            logger.debug(f"User profile unavailable: {e}")
            return None
        return info.get("user") or None

    async def get_current_stream(self) -> Any:
        """The currently running stream, or None."""
        try:
            return await self._get_json("/stream/current")
        except (httpx.HTTPError, ValueError) as e:
            logger.debug(f"Current stream unavailable: {e}")
            return None
