"""Shared test fixtures for the tmz-auth test suite.

No real browser is started anywhere: the controller and strategies are
driven through the fakes below.
"""

from __future__ import annotations

import json
import re
from contextlib import asynccontextmanager
from pathlib import Path

import pytest

from tmz_auth.harvest import ResourceScope

APP_URL = "https://teams.microsoft.com/v2/"
LOGIN_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/authorize?client_id=x"
NAVIGATING = "navigating"


def make_token(tag: str) -> str:
    """A value that passes the default real-token rule (longer than 100 chars)."""
    return f"eyJ0eXAiOiJKV1QiLCJhbGciOiJSUzI1NiJ9.{tag}." + "x" * 120


# Four scopes named after their roles in the end-to-end scenario.
ABCD_SCOPES = (
    ResourceScope(name="A", resource="a.example.com"),
    ResourceScope(name="B", resource="b.example.com"),
    ResourceScope(name="C", resource="c.example.com"),
    ResourceScope(name="D", resource="d.example.com"),
)


# ============================================================================
# Fakes
# ============================================================================


class FakeSession:
    """Stands in for BrowserSession.

    ``urls`` is a script: each current_url() call consumes one entry and the
    last entry repeats. ``storage`` emulates localStorage for the storage
    strategies and the recovery purge.
    """

    def __init__(self, urls=None, *, storage=None, network=None, expires_in=None):
        self.urls = list(urls or [APP_URL])
        self.storage: dict[str, str] = dict(storage or {})
        self.network: dict[str, str] = dict(network or {})
        self.expires_in = expires_in
        self.evaluate_error: Exception | None = None

        self.opened: list[str] = []
        self.url_reads = 0
        self.reloads = 0
        self.capture_resets = 0
        self.close_calls = 0
        self.hint_requests: list = []

    async def open(self, url: str, timeout: float = 15.0) -> bool:
        self.opened.append(url)
        return True

    async def current_url(self) -> str:
        self.url_reads += 1
        if len(self.urls) > 1:
            return self.urls.pop(0)
        return self.urls[0] if self.urls else NAVIGATING

    async def evaluate(self, js_code: str):
        if self.evaluate_error is not None:
            raise self.evaluate_error
        if "removeItem" in js_code:
            return self._purge(js_code)
        return json.dumps(
            [[k, v] for k, v in self.storage.items() if "accesstoken" in k.lower()]
        )

    def _purge(self, js_code: str) -> int:
        patterns_json = re.search(r"const patterns = (\[.*?\])\.map", js_code).group(1)
        patterns = [re.compile(p, re.I) for p in json.loads(patterns_json)]
        doomed = [k for k in self.storage if any(p.search(k) for p in patterns)]
        for key in doomed:
            del self.storage[key]
        return len(doomed)

    async def reload(self) -> bool:
        self.reloads += 1
        return True

    def captured_tokens(self) -> dict[str, str]:
        return dict(self.network)

    def expiry_hint(self, emitted=None):
        self.hint_requests.append(emitted)
        return self.expires_in

    def reset_capture(self) -> None:
        self.capture_resets += 1
        self.network.clear()

    async def close(self) -> None:
        self.close_calls += 1


class FakeHost:
    """Stands in for SessionHost; records every acquire call."""

    def __init__(self, session: FakeSession):
        self.session = session
        self.acquired: list[tuple[Path, bool, bool]] = []

    @asynccontextmanager
    async def acquire(self, profile_dir, *, headless, force_fresh=False):
        self.acquired.append((Path(profile_dir), headless, force_fresh))
        try:
            yield self.session
        finally:
            await self.session.close()


class FakeClock:
    """Monotonic clock that only moves when the controller sleeps."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay


class RecordingSink:
    def __init__(self):
        self.messages: list[str] = []

    def emit(self, message: str) -> None:
        self.messages.append(message)


class ScriptedStrategy:
    """Returns one scripted result per tick, then nothing; counts calls."""

    def __init__(self, *per_tick: dict, name: str = "scripted"):
        self.per_tick = list(per_tick)
        self.calls = 0
        self.__name__ = name

    async def __call__(self, session, scopes, is_real):
        self.calls += 1
        if self.per_tick:
            return self.per_tick.pop(0)
        return {}


class CountingRecovery:
    def __init__(self, removed: int = 3):
        self.removed = removed
        self.calls = 0

    async def __call__(self, session) -> int:
        self.calls += 1
        session.reset_capture()
        await session.reload()
        return self.removed


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def profile_dir(tmp_path):
    return tmp_path / "browser-profile"


@pytest.fixture
def cli_runner():
    """Create a Typer CLI test runner."""
    from typer.testing import CliRunner
    return CliRunner()
