"""nodriver-backed browser session and token-endpoint capture."""

from .network import TokenResponse, TokenResponseCapture
from .session import NAVIGATING, BrowserSession, SessionHost

__all__ = [
    "NAVIGATING",
    "BrowserSession",
    "SessionHost",
    "TokenResponse",
    "TokenResponseCapture",
]
