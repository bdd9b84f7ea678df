"""Staleness recovery: purge cached credentials and force reauthentication."""

from __future__ import annotations

import json
import logging

logger = logging.getLogger(__name__)

# Browser-storage keys holding cached credentials or MSAL's own cache indexes.
CREDENTIAL_KEY_PATTERNS: tuple[str, ...] = (
    "accesstoken",
    "idtoken",
    "refreshtoken",
    "^msal\\.token\\.keys",
    "^msal\\.account\\.keys",
)

_PURGE_JS = """
(() => {
    const patterns = %s.map((p) => new RegExp(p, "i"));
    let removed = 0;
    for (const store of [window.localStorage, window.sessionStorage]) {
        const keys = [];
        for (let i = 0; i < store.length; i++) {
            keys.push(store.key(i));
        }
        for (const key of keys) {
            if (key && patterns.some((p) => p.test(key))) {
                store.removeItem(key);
                removed += 1;
            }
        }
    }
    return removed;
})()
"""


async def purge_cached_credentials(session, patterns: tuple[str, ...] = CREDENTIAL_KEY_PATTERNS) -> int:
    """Remove matching local/session storage entries. Returns how many went."""
    try:
        removed = await session.evaluate(_PURGE_JS % json.dumps(list(patterns)))
    except Exception as exc:
        logger.warning("Credential purge failed (page navigating?): %s", exc)
        return 0
    try:
        return int(removed or 0)
    except (TypeError, ValueError):
        return 0


async def recover(session) -> int:
    """Purge cached credentials, drop captured responses and reload the page."""
    removed = await purge_cached_credentials(session)
    session.reset_capture()
    await session.reload()
    return removed
