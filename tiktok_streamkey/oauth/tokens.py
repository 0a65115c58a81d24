"""Authorization result returned by the in-browser token exchange.

The exchange script reports an envelope around the Streamlabs response:

    {"success": true, "status": 200,
     "data": {"success": true, "data": {"oauth_token": "...", ...}}}

On failure the envelope carries ``error`` and, when the response body was
not JSON, the raw ``body``.
"""

import json
from dataclasses import dataclass
from typing import Any

# Error marker the exchange script reports when the body is not JSON
JSON_PARSE_ERROR = "JSON Parse Error"


@dataclass
class AuthResult:
    """Outcome of one token exchange.

    Attributes:
        success: The fetch completed and the body parsed as JSON
        data: Parsed Streamlabs response body
        error: Error description when the fetch or parse failed
        status: HTTP status of the exchange response, if one arrived
        body: Raw response text when it was not JSON
    """

    success: bool
    data: Any = None
    error: Any = None
    status: int | None = None
    body: str | None = None

    def is_success(self) -> bool:
        """Check the outer flag, the nested flag, and the token payload."""
        if not self.success or not isinstance(self.data, dict):
            return False
        if not self.data.get("success"):
            return False
        auth_data = self.data.get("data")
        return isinstance(auth_data, dict) and bool(auth_data.get("oauth_token"))

    @property
    def auth_data(self) -> dict[str, Any] | None:
        """The nested authorization data, when the exchange succeeded."""
        if not self.is_success():
            return None
        return self.data["data"]

    @property
    def oauth_token(self) -> str | None:
        data = self.auth_data
        return data["oauth_token"] if data else None

    def is_parse_error(self) -> bool:
        """The exchange endpoint answered with a non-JSON body."""
        return not self.success and self.error == JSON_PARSE_ERROR

    def is_network_error(self) -> bool:
        """The fetch itself failed, so no HTTP status is known."""
        return not self.success and not self.is_parse_error() and self.status is None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the envelope shape."""
        data: dict[str, Any] = {"success": self.success}
        if self.data is not None:
            data["data"] = self.data
        if self.error is not None:
            data["error"] = self.error
        if self.status is not None:
            data["status"] = self.status
        if self.body is not None:
            data["body"] = self.body
        return data

    def describe(self) -> str:
        """JSON rendering for error messages and logs."""
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_dict(cls, data: Any) -> "AuthResult":
        """Build from whatever the exchange script returned.

        Anything that is not an object becomes a failed result carrying the
        unexpected value as its error.
        """
        if not isinstance(data, dict):
            return cls(success=False, error=f"Unexpected exchange result: {data!r}")

        status = data.get("status")
        return cls(
            success=bool(data.get("success", False)),
            data=data.get("data"),
            error=data.get("error"),
            status=int(status) if isinstance(status, (int, float)) else None,
            body=data.get("body"),
        )
