"""Harvester configuration via pydantic-settings."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings

from .harvest.scopes import ResourceScope
from .harvest.tokens import TokenPredicate, looks_like_real_token

APP_NAME = "tmz"


class AuthSettings(BaseSettings):
    entry_url: str = "https://teams.microsoft.com/v2"
    app_hosts: list[str] = ["teams.microsoft.com"]
    login_hosts: list[str] = ["login.microsoftonline.com", "login.live.com"]

    token_endpoint_marker: str = "/oauth2/v2.0/token"

    scopes: dict[str, str] = {
        "skype": "api.spaces.skype.com",
        "chat": "chatsvcagg.teams.microsoft.com",
        "graph": "graph.microsoft.com",
        "presence": "presence.teams.microsoft.com",
    }

    timeout_seconds: int = Field(300, gt=0)
    poll_interval_seconds: float = Field(2.0, gt=0)
    # Empirical: ticks on the app page without tokens before the cache is purged.
    stale_threshold: int = Field(5, gt=0)

    min_token_length: int = Field(100, ge=0)
    placeholder_tokens: list[str] = ["null", "undefined", "placeholder", "dummy"]

    profile_dir: str | None = None
    browser_args: list[str] = [
        "--disable-blink-features=AutomationControlled",
        "--window-size=1280,900",
        "--lang=en-US",
    ]

    model_config = {"env_prefix": "TMZ_AUTH_", "env_file": ".env", "extra": "ignore"}

    @property
    def resolved_profile_dir(self) -> Path:
        if self.profile_dir:
            return Path(self.profile_dir).expanduser()
        return default_profile_dir()

    def resource_scopes(self) -> tuple[ResourceScope, ...]:
        return tuple(
            ResourceScope(name=name, resource=resource)
            for name, resource in self.scopes.items()
        )

    def token_predicate(self) -> TokenPredicate:
        """Bind the configured length/placeholder rule into a predicate."""
        min_length = self.min_token_length
        placeholders = frozenset(p.lower() for p in self.placeholder_tokens)

        def _predicate(value: object) -> bool:
            return looks_like_real_token(
                value, min_length=min_length, placeholders=placeholders
            )

        return _predicate


def default_profile_dir() -> Path:
    """Resolve the browser profile: XDG_STATE_HOME, then ~/.local/state, then tmp."""
    xdg = os.environ.get("XDG_STATE_HOME")
    if xdg:
        return Path(xdg) / APP_NAME / "browser-profile"

    home = os.environ.get("HOME")
    if home:
        return Path(home) / ".local" / "state" / APP_NAME / "browser-profile"

    return Path(tempfile.gettempdir()) / f"{APP_NAME}-browser-profile"


settings = AuthSettings()
