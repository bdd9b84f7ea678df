"""Persistent-profile browser session for token harvesting."""

from __future__ import annotations

import asyncio
import logging
import shutil
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Iterable, Mapping

import nodriver as uc

from ..errors import SessionLaunchError
from ..harvest.scopes import TEAMS_SCOPES, ResourceScope
from .network import TokenResponseCapture

logger = logging.getLogger(__name__)

# Returned by current_url() while the page has no stable execution context.
NAVIGATING = "navigating"

READY_STATES = frozenset({"interactive", "complete"})


class BrowserSession:
    """One live page bound to a persistent profile.

    Owned by :class:`SessionHost`; the acquisition controller only borrows it.
    Every observation method degrades to "nothing seen" instead of raising
    while the page is between documents.
    """

    def __init__(
        self,
        browser,
        page,
        *,
        profile_dir: Path,
        capture: TokenResponseCapture | None = None,
    ):
        self.browser = browser
        self.page = page
        self.profile_dir = profile_dir
        self.capture = capture
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def open(self, url: str, timeout: float = 15.0) -> bool:
        """Navigate to ``url`` and wait for a minimally interactive document.

        SSO redirects keep background connections open, so this never waits
        for network idle. Returns False if navigation failed.
        """
        logger.info("Navigating to: %s", url)
        try:
            await self.page.get(url)
        except Exception as exc:
            logger.warning("Navigation to %s failed: %s", url, exc)
            return False
        return await self._wait_until_interactive(timeout)

    async def _wait_until_interactive(self, timeout: float) -> bool:
        for _ in range(max(1, int(timeout * 4))):
            try:
                ready_state = await self.page.evaluate("document.readyState")
                if ready_state in READY_STATES:
                    return True
            except Exception:
                pass  # Context destroyed mid-redirect; keep waiting
            await asyncio.sleep(0.25)
        return False

    async def current_url(self) -> str:
        try:
            url = self._unwrap_eval_value(await self.page.evaluate("window.location.href"))
        except Exception:
            return NAVIGATING
        if not isinstance(url, str) or not url:
            return NAVIGATING
        return url

    async def evaluate(self, js_code: str) -> Any:
        """Execute JavaScript and return its unwrapped result.

        Raises whatever the page raises; callers decide whether that matters.
        """
        value = await self.page.evaluate(js_code)
        return self._unwrap_eval_value(value)

    async def reload(self) -> bool:
        try:
            await self.page.reload()
        except Exception as exc:
            logger.warning("Reload failed: %s", exc)
            return False
        return await self._wait_until_interactive(15.0)

    def captured_tokens(self) -> dict[str, str]:
        if self.capture is None:
            return {}
        return self.capture.snapshot()

    def expiry_hint(self, emitted: Mapping[str, str] | None = None) -> int | None:
        if self.capture is None:
            return None
        return self.capture.expiry_hint(emitted)

    def reset_capture(self) -> None:
        if self.capture is not None:
            self.capture.clear()

    async def close(self) -> None:
        """Stop the browser. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        if self.browser is None:
            return
        try:
            self.browser.stop()
            logger.info("Browser stopped")
        except Exception as exc:
            logger.warning("Browser did not stop cleanly: %s", exc)

    @staticmethod
    def _unwrap_eval_value(value: Any) -> Any:
        """Best-effort normalization of nodriver's evaluate return values.

        nodriver returns primitives as Python values, but represents:
        - Arrays as lists of {"type": ..., "value": ...} items
        - Objects as lists of [key, {"type": ..., "value": ...}] pairs
        """
        if isinstance(value, dict):
            if value.get("type") in {"null", "undefined"} and "value" not in value:
                return None
            if "type" in value and "value" in value and len(value) <= 4:
                return BrowserSession._unwrap_eval_value(value.get("value"))
            return {k: BrowserSession._unwrap_eval_value(v) for k, v in value.items()}

        if isinstance(value, list):
            if value and all(
                isinstance(item, (list, tuple))
                and len(item) == 2
                and isinstance(item[0], str)
                for item in value
            ):
                return {item[0]: BrowserSession._unwrap_eval_value(item[1]) for item in value}
            return [BrowserSession._unwrap_eval_value(item) for item in value]

        return value


class SessionHost:
    """Launches (or reuses) the persistent browser profile.

    Usage:
        host = SessionHost(scopes=TEAMS_SCOPES)
        async with host.acquire(profile_dir, headless=True, force_fresh=False) as session:
            await session.open("https://teams.microsoft.com/v2")
            print(await session.current_url())
    """

    def __init__(
        self,
        *,
        scopes: Iterable[ResourceScope] = TEAMS_SCOPES,
        browser_args: Iterable[str] = (),
        token_endpoint_marker: str = "/oauth2/v2.0/token",
        launch_attempts: int = 3,
    ):
        self.scopes = tuple(scopes)
        self.browser_args = list(browser_args)
        self.token_endpoint_marker = token_endpoint_marker
        self.launch_attempts = max(1, launch_attempts)

    @staticmethod
    def purge_profile(profile_dir: Path) -> bool:
        """Delete the on-disk profile. Failure is logged, never raised."""
        if not profile_dir.exists():
            return True
        try:
            shutil.rmtree(profile_dir)
            logger.info("Removed browser profile: %s", profile_dir)
            return True
        except OSError as exc:
            logger.warning("Could not remove browser profile %s: %s", profile_dir, exc)
            return False

    @asynccontextmanager
    async def acquire(
        self,
        profile_dir: Path,
        *,
        headless: bool,
        force_fresh: bool = False,
    ) -> AsyncIterator[BrowserSession]:
        """Yield a live session; the browser is stopped on every exit path."""
        profile_dir = Path(profile_dir)
        if force_fresh:
            self.purge_profile(profile_dir)

        try:
            profile_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise SessionLaunchError(
                f"Cannot create profile directory: {exc}", str(profile_dir)
            ) from exc

        session = await self._launch(profile_dir, headless)
        try:
            yield session
        finally:
            await session.close()

    async def _launch(self, profile_dir: Path, headless: bool) -> BrowserSession:
        # nodriver can race Chrome startup and fail its initial connection
        # attempt; retry a few times before giving up.
        browser = None
        last_exc: Exception | None = None
        for attempt in range(1, self.launch_attempts + 1):
            config = uc.Config()
            config.sandbox = False  # Adds --no-sandbox when False.
            config.user_data_dir = str(profile_dir)
            config.headless = headless
            for arg in self.browser_args:
                config.add_argument(arg)

            try:
                browser = await uc.start(config=config)
                break
            except Exception as exc:
                last_exc = exc
                if "Failed to connect to browser" not in str(exc):
                    break
                logger.debug("Browser launch attempt %d failed: %s", attempt, exc)
                await asyncio.sleep(min(2.0, 0.5 * attempt))

        if browser is None:
            raise SessionLaunchError(
                f"Failed to start browser: {last_exc}", str(profile_dir)
            ) from last_exc

        session = BrowserSession(browser, None, profile_dir=profile_dir)
        try:
            session.page = await browser.get("about:blank")
            session.capture = TokenResponseCapture(
                session.page,
                scopes=self.scopes,
                endpoint_marker=self.token_endpoint_marker,
            )
            await session.capture.enable()
        except Exception as exc:
            await session.close()
            raise SessionLaunchError(
                f"Browser started but no page is available: {exc}", str(profile_dir)
            ) from exc

        logger.info(
            "Browser started (%s) with profile: %s",
            "headless" if headless else "interactive",
            profile_dir,
        )
        return session
