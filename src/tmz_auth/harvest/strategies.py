"""Extraction strategies: independent ways of reading tokens off a live page.

Each strategy is ``async (session, scopes, is_real) -> dict[scope_name, token]``
and is safe to call on every poll tick. A page that is mid-navigation (no
execution context) yields an empty result, never an exception.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable, Iterable, Sequence

from .scopes import ResourceScope, match_scope
from .tokens import TokenPredicate

logger = logging.getLogger(__name__)

Strategy = Callable[[Any, Sequence[ResourceScope], TokenPredicate], Awaitable[dict[str, str]]]

TOKEN_CACHE_MARKER = "accesstoken"
LEGACY_AUTHORITY = "login.windows.net"

_READ_STORAGE_JS = """
(() => {
    const marker = %s;
    const out = [];
    try {
        for (let i = 0; i < window.localStorage.length; i++) {
            const key = window.localStorage.key(i) || "";
            if (key.toLowerCase().includes(marker)) {
                out.push([key, window.localStorage.getItem(key)]);
            }
        }
    } catch (e) {
        /* storage unavailable on this origin */
    }
    return JSON.stringify(out);
})()
"""


async def read_storage_entries(session, marker: str) -> list[tuple[str, str]]:
    """Return ``(key, raw_value)`` pairs from localStorage whose key has ``marker``."""
    try:
        raw = await session.evaluate(_READ_STORAGE_JS % json.dumps(marker.lower()))
    except Exception as exc:
        logger.debug("Storage read skipped (page navigating?): %s", exc)
        return []

    if not isinstance(raw, str):
        return []
    try:
        pairs = json.loads(raw)
    except json.JSONDecodeError:
        return []

    entries: list[tuple[str, str]] = []
    for item in pairs if isinstance(pairs, list) else []:
        if (
            isinstance(item, list)
            and len(item) == 2
            and isinstance(item[0], str)
            and isinstance(item[1], str)
        ):
            entries.append((item[0], item[1]))
    return entries


def _decode(raw: str) -> dict | None:
    try:
        value = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return None
    return value if isinstance(value, dict) else None


def parse_token_cache(
    entries: Iterable[tuple[str, str]],
    scopes: Sequence[ResourceScope],
    is_real: TokenPredicate,
    *,
    legacy_authority: str = LEGACY_AUTHORITY,
) -> dict[str, str]:
    """Pick tokens out of current-format MSAL cache entries.

    Records are JSON objects carrying ``secret`` and ``target``, optionally
    wrapped as ``{"data": {...}}``. The scope is taken from ``target`` and
    falls back to the cache key. Keys under the legacy authority belong to
    :func:`parse_legacy_storage` and are skipped here.
    """
    found: dict[str, str] = {}
    legacy = legacy_authority.lower()
    for key, raw in entries:
        if legacy in key.lower():
            continue
        decoded = _decode(raw)
        if decoded is None:
            continue
        record = decoded.get("data") if isinstance(decoded.get("data"), dict) else decoded

        secret = record.get("secret")
        if not is_real(secret):
            continue

        target = record.get("target")
        scope = match_scope(target if isinstance(target, str) else None, scopes)
        if scope is None:
            scope = match_scope(key, scopes)
        if scope is not None and scope.name not in found:
            found[scope.name] = secret
    return found


def parse_legacy_storage(
    entries: Iterable[tuple[str, str]],
    scopes: Sequence[ResourceScope],
    is_real: TokenPredicate,
    *,
    authority: str = LEGACY_AUTHORITY,
) -> dict[str, str]:
    """Pick tokens out of legacy ``<...>-login.windows.net-accesstoken-<...>`` keys."""
    found: dict[str, str] = {}
    authority = authority.lower()
    for key, raw in entries:
        if authority not in key.lower():
            continue
        decoded = _decode(raw)
        if decoded is None:
            continue

        secret = decoded.get("secret")
        if not is_real(secret):
            continue

        scope = match_scope(key, scopes)
        if scope is not None and scope.name not in found:
            found[scope.name] = secret
    return found


async def from_network(
    session, scopes: Sequence[ResourceScope], is_real: TokenPredicate
) -> dict[str, str]:
    """Tokens the page's token-endpoint responses delivered since the last tick."""
    known = {scope.name for scope in scopes}
    try:
        captured = session.captured_tokens()
    except Exception as exc:
        logger.debug("Network capture unavailable: %s", exc)
        return {}
    return {
        name: token
        for name, token in captured.items()
        if name in known and is_real(token)
    }


async def from_token_cache(
    session, scopes: Sequence[ResourceScope], is_real: TokenPredicate
) -> dict[str, str]:
    entries = await read_storage_entries(session, TOKEN_CACHE_MARKER)
    return parse_token_cache(entries, scopes, is_real)


async def from_legacy_storage(
    session, scopes: Sequence[ResourceScope], is_real: TokenPredicate
) -> dict[str, str]:
    entries = await read_storage_entries(session, TOKEN_CACHE_MARKER)
    return parse_legacy_storage(entries, scopes, is_real)


DEFAULT_STRATEGIES: tuple[Strategy, ...] = (
    from_network,
    from_token_cache,
    from_legacy_storage,
)
