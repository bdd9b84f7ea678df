"""Acquisition controller: the poll loop as an explicit state machine.

States::

    LAUNCHING -> POLLING <-> RECOVERING
                    |
                    +-> SUCCEEDED | TIMED_OUT | SESSION_EXPIRED_HEADLESS

:func:`next_state` is the pure transition for one poll tick;
:class:`AcquisitionController` performs the I/O around it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Iterable, Union
from urllib.parse import urlparse

from .diagnostics import DiagnosticSink, LoggingSink
from .recovery import recover
from .scopes import TEAMS_SCOPES, ResourceScope
from .strategies import DEFAULT_STRATEGIES, Strategy
from .tokens import TokenPredicate, TokenSet, looks_like_real_token

logger = logging.getLogger(__name__)

TEAMS_APP_HOSTS = ("teams.microsoft.com",)
ENTRA_LOGIN_HOSTS = ("login.microsoftonline.com", "login.live.com")


class State(Enum):
    LAUNCHING = "launching"
    POLLING = "polling"
    RECOVERING = "recovering"
    SUCCEEDED = "succeeded"
    TIMED_OUT = "timed_out"
    SESSION_EXPIRED_HEADLESS = "session_expired_headless"

    @property
    def is_terminal(self) -> bool:
        return self in (State.SUCCEEDED, State.TIMED_OUT, State.SESSION_EXPIRED_HEADLESS)


class Location(Enum):
    APP = "app"
    LOGIN = "login"
    OTHER = "other"


def _host_matches(host: str, candidates: Iterable[str]) -> bool:
    return any(host == c or host.endswith("." + c) for c in candidates)


def classify_url(
    url: str | None,
    app_hosts: Iterable[str] = TEAMS_APP_HOSTS,
    login_hosts: Iterable[str] = ENTRA_LOGIN_HOSTS,
) -> Location:
    """Decide whether ``url`` is the signed-in app, the identity provider, or neither."""
    if not url:
        return Location.OTHER
    try:
        host = (urlparse(url).hostname or "").lower()
    except ValueError:
        return Location.OTHER
    if not host:
        return Location.OTHER
    if _host_matches(host, login_hosts):
        return Location.LOGIN
    if _host_matches(host, app_hosts):
        return Location.APP
    return Location.OTHER


@dataclass(frozen=True)
class RunConfig:
    """Immutable per-run settings, fixed before the run starts."""

    timeout: float = 300.0
    headless: bool = False
    force_fresh: bool = False
    poll_interval: float = 2.0
    stale_threshold: int = 5

    def __post_init__(self):
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        if self.stale_threshold < 1:
            raise ValueError("stale_threshold must be at least 1")


@dataclass(frozen=True)
class Tick:
    """What one poll tick observed."""

    location: Location
    complete: bool
    deadline_reached: bool


@dataclass(frozen=True)
class RunStatus:
    state: State = State.LAUNCHING
    stall_ticks: int = 0
    recovery_fired: bool = False


def start_polling(status: RunStatus) -> RunStatus:
    """LAUNCHING always moves to POLLING; a failed navigation is just empty state."""
    if status.state is not State.LAUNCHING:
        raise ValueError(f"cannot start polling from {status.state.value}")
    return replace(status, state=State.POLLING)


def finish_recovery(status: RunStatus) -> RunStatus:
    if status.state is not State.RECOVERING:
        raise ValueError(f"cannot finish recovery from {status.state.value}")
    return RunStatus(state=State.POLLING, stall_ticks=0, recovery_fired=True)


def next_state(
    status: RunStatus,
    tick: Tick,
    *,
    headless: bool,
    stale_threshold: int,
) -> RunStatus:
    """Apply one poll tick.

    Order matters: completeness wins over everything, so a run that becomes
    complete on the tick that would otherwise time out or trigger recovery
    succeeds.
    """
    if status.state is not State.POLLING:
        raise ValueError(f"ticks only apply while polling, not {status.state.value}")

    if tick.complete:
        return replace(status, state=State.SUCCEEDED)

    stall = status.stall_ticks
    if tick.location is Location.LOGIN:
        # A headless browser cannot answer an interactive challenge.
        if status.recovery_fired and headless:
            return replace(status, state=State.SESSION_EXPIRED_HEADLESS)
        stall = 0
    elif tick.location is Location.APP:
        stall += 1

    if tick.deadline_reached:
        return replace(status, state=State.TIMED_OUT, stall_ticks=stall)

    if stall >= stale_threshold:
        if not status.recovery_fired:
            return replace(status, state=State.RECOVERING, stall_ticks=stall)
        if headless:
            return replace(status, state=State.SESSION_EXPIRED_HEADLESS, stall_ticks=stall)
        stall = 0

    return replace(status, stall_ticks=stall)


@dataclass(frozen=True)
class Succeeded:
    tokens: dict[str, str] = field(default_factory=dict)
    expires_in: int | None = None

    def to_payload(self) -> dict:
        return {"tokens": dict(self.tokens), "expires_in": self.expires_in}


@dataclass(frozen=True)
class TimedOut:
    interrupted: bool = False


@dataclass(frozen=True)
class SessionExpiredHeadless:
    pass


AcquisitionOutcome = Union[Succeeded, TimedOut, SessionExpiredHeadless]


class AcquisitionController:
    """Drive one token acquisition run to a single terminal outcome.

    The session host, strategies, recovery action, clock and sleep are all
    injectable so the state machine can be exercised without a browser.

    Usage:
        controller = AcquisitionController(
            SessionHost(scopes=TEAMS_SCOPES),
            RunConfig(timeout=300, headless=False),
            profile_dir=Path("~/.local/state/tmz/browser-profile").expanduser(),
        )
        outcome = await controller.run()
    """

    def __init__(
        self,
        host,
        config: RunConfig,
        *,
        profile_dir: Path,
        entry_url: str = "https://teams.microsoft.com/v2",
        app_hosts: Iterable[str] = TEAMS_APP_HOSTS,
        login_hosts: Iterable[str] = ENTRA_LOGIN_HOSTS,
        scopes: Iterable[ResourceScope] = TEAMS_SCOPES,
        is_real: TokenPredicate = looks_like_real_token,
        strategies: Iterable[Strategy] = DEFAULT_STRATEGIES,
        recover_session: Callable[[object], Awaitable[int]] = recover,
        sink: DiagnosticSink | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        interrupt: asyncio.Event | None = None,
    ):
        self.host = host
        self.config = config
        self.profile_dir = Path(profile_dir)
        self.entry_url = entry_url
        self.app_hosts = tuple(app_hosts)
        self.login_hosts = tuple(login_hosts)
        self.scopes = tuple(scopes)
        self.is_real = is_real
        self.strategies = tuple(strategies)
        self.recover_session = recover_session
        self.sink = sink or LoggingSink()
        self._clock = clock
        self._sleep = sleep
        self.interrupt = interrupt

        self.status = RunStatus()
        self.outcome: AcquisitionOutcome | None = None
        self._deadline = 0.0

    async def run(self) -> AcquisitionOutcome:
        """Run to completion. The session is closed on every exit path."""
        if self.outcome is not None or self.status.state is not State.LAUNCHING:
            raise RuntimeError("an acquisition controller runs only once")

        self._deadline = self._clock() + float(self.config.timeout)
        mode = "headless" if self.config.headless else "interactive"
        self.sink.emit(f"Launching browser ({mode}) with profile {self.profile_dir}")

        async with self.host.acquire(
            self.profile_dir,
            headless=self.config.headless,
            force_fresh=self.config.force_fresh,
        ) as session:
            await self._open_entry(session)
            self.status = start_polling(self.status)
            self.sink.emit("Waiting for authentication to complete...")
            outcome = await self._poll(session)

        self.outcome = outcome
        return outcome

    async def _open_entry(self, session) -> None:
        remaining = max(0.0, self._deadline - self._clock())
        try:
            await asyncio.wait_for(session.open(self.entry_url), timeout=remaining)
        except asyncio.TimeoutError:
            logger.debug("Entry navigation still in flight; polling anyway")
        except Exception as exc:
            # SSO redirects may still land; treat as empty state.
            logger.debug("Entry navigation failed: %s", exc)

    async def _poll(self, session) -> AcquisitionOutcome:
        tokens = TokenSet(self.scopes, self.is_real)
        last_location: Location | None = None

        while True:
            if self.status.state is State.RECOVERING:
                self.sink.emit(
                    f"Session looks signed in but yielded no tokens after "
                    f"{self.status.stall_ticks} checks; purging cached credentials"
                )
                removed = await self._recover(session)
                tokens.clear()
                self.status = finish_recovery(self.status)
                if removed is None:
                    self.sink.emit("Recovery cut short; reload still in flight")
                else:
                    self.sink.emit(f"Removed {removed} cached credential entries; reloading")
                continue

            if await self._wait_tick():
                self.sink.emit("Interrupted; stopping")
                return TimedOut(interrupted=True)

            location = classify_url(
                await session.current_url(), self.app_hosts, self.login_hosts
            )
            if location is not last_location:
                self._narrate_location(location)
                last_location = location

            fast_fail = (
                location is Location.LOGIN
                and self.status.recovery_fired
                and self.config.headless
            )
            if not fast_fail:
                await self._run_strategies(session, tokens)

            tick = Tick(
                location=location,
                complete=tokens.is_complete(),
                deadline_reached=self._clock() >= self._deadline,
            )
            self.status = next_state(
                self.status,
                tick,
                headless=self.config.headless,
                stale_threshold=self.config.stale_threshold,
            )

            if self.status.state is State.SUCCEEDED:
                self.sink.emit("All required tokens extracted successfully.")
                emitted = tokens.as_dict()
                return Succeeded(tokens=emitted, expires_in=session.expiry_hint(emitted))
            if self.status.state is State.TIMED_OUT:
                self.sink.emit(
                    f"Timed out waiting for authentication; missing: {', '.join(tokens.missing())}"
                )
                return TimedOut()
            if self.status.state is State.SESSION_EXPIRED_HEADLESS:
                self.sink.emit(
                    "Session expired and cannot be renewed headless; run an interactive login"
                )
                return SessionExpiredHeadless()

    def _narrate_location(self, location: Location) -> None:
        if location is Location.LOGIN:
            self.sink.emit("On sign-in page; complete the login in the browser window")
        elif location is Location.APP:
            self.sink.emit("On the app; waiting for tokens to populate...")

    async def _recover(self, session) -> int | None:
        """Run the recovery action, bounded by the deadline and the interrupt.

        Returns the purge count, or None if the action was cut short.
        Errors raised by the action propagate.
        """
        remaining = max(0.0, self._deadline - self._clock())
        work = asyncio.ensure_future(
            asyncio.wait_for(self.recover_session(session), timeout=remaining)
        )
        waiters = {work}
        if self.interrupt is not None:
            waiters.add(asyncio.ensure_future(self.interrupt.wait()))
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in waiters:
                if not task.done():
                    task.cancel()

        if not work.done():
            await asyncio.gather(work, return_exceptions=True)
            logger.debug("Recovery interrupted")
            return None
        try:
            return work.result()
        except asyncio.TimeoutError:
            logger.debug("Recovery still running at the deadline")
            return None

    async def _wait_tick(self) -> bool:
        """Sleep one poll interval, cut short by the deadline. True if interrupted."""
        delay = min(
            float(self.config.poll_interval),
            max(0.0, self._deadline - self._clock()),
        )
        if self.interrupt is None:
            await self._sleep(delay)
            return False
        if self.interrupt.is_set():
            return True

        sleeper = asyncio.ensure_future(self._sleep(delay))
        waiter = asyncio.ensure_future(self.interrupt.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, waiter):
                if not task.done():
                    task.cancel()
        return self.interrupt.is_set()

    async def _run_strategies(self, session, tokens: TokenSet) -> None:
        # Sequential: strategies must not race each other on the same page.
        for strategy in self.strategies:
            try:
                partial = await strategy(session, self.scopes, self.is_real)
            except Exception as exc:
                name = getattr(strategy, "__name__", repr(strategy))
                logger.debug("Strategy %s saw nothing this tick: %s", name, exc)
                continue
            added = tokens.merge(partial or {})
            if added:
                self.sink.emit(
                    f"Captured {', '.join(added)} ({len(tokens)}/{len(self.scopes)})"
                )
