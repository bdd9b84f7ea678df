"""Backend resource scopes that each need their own access token."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable


@dataclass(frozen=True)
class ResourceScope:
    """A backend service requiring its own token.

    ``name`` is the canonical key used in the output payload; ``resource``
    is the identifier that appears in token-cache keys, scope claims and
    MSAL ``target`` fields.
    """

    name: str
    resource: str

    def matches(self, text: str | None) -> bool:
        if not text:
            return False
        return self.resource.lower() in text.lower()


TEAMS_SCOPES: tuple[ResourceScope, ...] = (
    ResourceScope("skype", "api.spaces.skype.com"),
    ResourceScope("chat", "chatsvcagg.teams.microsoft.com"),
    ResourceScope("graph", "graph.microsoft.com"),
    ResourceScope("presence", "presence.teams.microsoft.com"),
)


def match_scope(text: str | None, scopes: Iterable[ResourceScope]) -> ResourceScope | None:
    """Return the first scope whose resource identifier occurs in ``text``."""
    for scope in scopes:
        if scope.matches(text):
            return scope
    return None
