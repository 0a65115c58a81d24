"""TikTok Streamkey - Get TikTok LIVE stream keys through Streamlabs."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("tiktok-streamkey")
except PackageNotFoundError:
    __version__ = "0.1.0"  # Fallback for development

__all__ = [
    "__version__",
    # Core modules
    "Settings",
    "load_settings",
    "AuthManager",
    "SessionContext",
    "StreamAPI",
    "StreamInfo",
    "StreamCategory",
    "MessageRouter",
    "IPCMessageType",
    "OutputHandler",
]

# Lazy imports to avoid circular dependencies
def __getattr__(name: str) -> object:
    """Lazy import module components."""
    if name in ("Settings", "load_settings"):
        from .config import Settings, load_settings
        return {"Settings": Settings, "load_settings": load_settings}[name]
    elif name in ("AuthManager", "SessionContext"):
        from .oauth.manager import AuthManager, SessionContext
        return {"AuthManager": AuthManager, "SessionContext": SessionContext}[name]
    elif name in ("StreamAPI", "StreamInfo", "StreamCategory"):
        from .stream_api import StreamAPI, StreamCategory, StreamInfo
        return {"StreamAPI": StreamAPI, "StreamInfo": StreamInfo, "StreamCategory": StreamCategory}[name]
    elif name in ("MessageRouter", "IPCMessageType"):
        from .ipc import IPCMessageType, MessageRouter
        return {"MessageRouter": MessageRouter, "IPCMessageType": IPCMessageType}[name]
    elif name == "OutputHandler":
        from .output import OutputHandler
        return OutputHandler
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
