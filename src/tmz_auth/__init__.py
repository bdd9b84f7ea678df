"""tmz-auth - harvest Teams access tokens from a real browser session."""

__version__ = "0.1.0"
