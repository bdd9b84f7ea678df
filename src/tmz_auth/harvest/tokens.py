"""Token accumulation and the completeness check."""

from __future__ import annotations

from typing import Callable, Iterable, Mapping

from .scopes import TEAMS_SCOPES, ResourceScope

TokenPredicate = Callable[[object], bool]

MIN_TOKEN_LENGTH = 100
# Values MSAL and the Teams bootstrapper leave behind before a real token exists.
PLACEHOLDER_TOKENS = frozenset({"null", "undefined", "placeholder", "dummy"})


def looks_like_real_token(
    value: object,
    *,
    min_length: int = MIN_TOKEN_LENGTH,
    placeholders: Iterable[str] = PLACEHOLDER_TOKENS,
) -> bool:
    """Return True if ``value`` plausibly is an issued access token.

    Rejects non-strings, known placeholder values (case-insensitive) and
    anything not longer than ``min_length`` characters.
    """
    if not isinstance(value, str):
        return False
    stripped = value.strip()
    if not stripped:
        return False
    if stripped.lower() in {p.lower() for p in placeholders}:
        return False
    return len(stripped) > min_length


def is_complete(
    tokens: Mapping[str, str],
    scopes: Iterable[ResourceScope] = TEAMS_SCOPES,
    is_real: TokenPredicate = looks_like_real_token,
) -> bool:
    """True iff every scope has a token accepted by ``is_real``."""
    return all(is_real(tokens.get(scope.name)) for scope in scopes)


class TokenSet:
    """Tokens captured during one run, keyed by scope name.

    Merging is first-writer-wins: once a scope has a value, later strategy
    output for that scope is ignored. Values rejected by the predicate are
    never stored. The set only shrinks through :meth:`clear`.
    """

    def __init__(
        self,
        scopes: Iterable[ResourceScope] = TEAMS_SCOPES,
        is_real: TokenPredicate = looks_like_real_token,
    ):
        self.scopes = tuple(scopes)
        self.is_real = is_real
        self._values: dict[str, str] = {}

    def merge(self, partial: Mapping[str, str]) -> list[str]:
        """Merge strategy output and return the scope names newly captured."""
        known = {scope.name for scope in self.scopes}
        added: list[str] = []
        for name, value in partial.items():
            if name not in known or name in self._values:
                continue
            if not self.is_real(value):
                continue
            self._values[name] = value
            added.append(name)
        return added

    def is_complete(self) -> bool:
        return is_complete(self._values, self.scopes, self.is_real)

    def missing(self) -> list[str]:
        return [scope.name for scope in self.scopes if scope.name not in self._values]

    def clear(self) -> None:
        self._values.clear()

    def as_dict(self) -> dict[str, str]:
        return dict(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __contains__(self, name: object) -> bool:
        return name in self._values
